"""Prompt templates for the booking agent and the extraction fallback."""

from __future__ import annotations

from datetime import datetime

from booking_agent.models import ResourceSnapshot

SYSTEM_PROMPT_TEMPLATE = """You are the front-desk assistant for a dental practice. You book, reschedule and cancel appointments by calling the practice-management tools.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The current time is **{current_time}** (practice local time).
Use this to resolve relative dates like "tomorrow" or "next Tuesday". Dates you send to tools use YYYY-MM-DD and appointment times use "YYYY-MM-DD HH:MM:SS".

## What Is Already Known
{state_summary}

## Practice Resources
{resources}

## Rules
- Only use values the patient actually gave you or that a tool returned. Never invent names, phone numbers, birthdates, PatNum or AptNum values.
- If a tool result says `MUST_ASK_USER`, ask the patient for exactly the listed information and do not call another tool to work around it.
- If a tool result reports a conflict or a retryable error, offer the suggested alternatives or a different time.
- Existing patients: look them up with GetMultiplePatients before creating anything. Only call CreatePatient for a confirmed new patient.
- Before booking, present the available slots and let the patient choose one. Book only the slot the patient chose.
- Never say an appointment is booked, rescheduled or cancelled unless the corresponding tool call in this conversation succeeded.
- Keep replies short and friendly; the patient may be on the phone or texting.
"""

EXTRACTION_PROMPT_TEMPLATE = """Extract booking details from this dental-office conversation.

Today's date is {current_date} ({current_day_of_week}). The current year is {current_year}.
Resolve relative dates ("tomorrow", "next Friday") against today's date. Appointment dates must be today or later. Birthdates must be in the past.

Information still needed: {missing}

Conversation:
{conversation}

Reply with ONLY a JSON object of this exact shape (use null for anything not stated):
{{
  "patient": {{
    "first_name": string|null,
    "last_name": string|null,
    "phone": string|null,
    "birthdate": "YYYY-MM-DD"|null,
    "is_new_patient": boolean|null
  }},
  "appointment": {{
    "appointment_type": string|null,
    "preferred_date": "YYYY-MM-DD"|null,
    "preferred_time": "morning"|"afternoon"|"evening"|"HH:MM"|null
  }},
  "intent": "book"|"reschedule"|"cancel"|"check"|"unknown",
  "confidence": number between 0 and 1
}}

Only include values the patient explicitly said. Do not guess."""


def format_resources(snapshot: ResourceSnapshot | None) -> str:
    if snapshot is None:
        return "Resource list unavailable."
    providers = ", ".join(
        f"{p.name} (ProvNum {p.id})" for p in snapshot.providers if p.is_available
    ) or "none listed"
    rooms = ", ".join(
        f"{r.name} (Op {r.id})" for r in snapshot.rooms if r.is_available
    ) or "none listed"
    lines = [f"Providers: {providers}", f"Rooms: {rooms}"]
    if snapshot.is_fallback:
        lines.append("(Live resource data is temporarily unavailable.)")
    return "\n".join(lines)


def get_system_prompt(
    state_summary: str,
    snapshot: ResourceSnapshot | None = None,
    now: datetime | None = None,
) -> str:
    """Build the system prompt with today's date, known state and resources."""
    now = now or datetime.now()
    return SYSTEM_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%B %d, %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
        state_summary=state_summary or "Nothing yet.",
        resources=format_resources(snapshot),
    )


def get_extraction_prompt(conversation: str, missing: list[str], now: datetime) -> str:
    return EXTRACTION_PROMPT_TEMPLATE.format(
        current_date=now.strftime("%Y-%m-%d"),
        current_day_of_week=now.strftime("%A"),
        current_year=now.year,
        missing=", ".join(missing) if missing else "none",
        conversation=conversation,
    )
