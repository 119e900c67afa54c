"""Truthfulness guard for the model's final answer.

The model sometimes announces "you're all set!" without ever calling the
booking tool.  Before a final answer leaves the loop we look for success
language, compare it with the session's tool history, and either let it
through, repair the situation (see ``BookingOrchestrator``), or strip the
claim and ask the patient to confirm a slot.

This module holds the pure parts: claim detection, slot parsing and
matching, and rewriting the reply.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any

from booking_agent.extraction.patterns import extract_date_preference, parse_clock_time
from booking_agent.models import SelectedSlot, Session
from booking_agent.tools.registry import ToolName


class ClaimKind(str, Enum):
    BOOK = "book"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    # "you're all set" and friends: backed by any successful mutation
    GENERIC = "generic"


_CLAIM_PATTERNS: list[tuple[ClaimKind, re.Pattern[str]]] = [
    (ClaimKind.CANCEL, re.compile(
        r"\b(?:has been|have been|is now|is|was|successfully)\s+(?:cancell?ed|broken)\b"
        r"|\bi(?:'ve| have)\s+cancell?ed\b",
        re.I,
    )),
    (ClaimKind.RESCHEDULE, re.compile(
        r"\b(?:has been|have been|is now|successfully)\s+(?:rescheduled|moved)\b"
        r"|\bi(?:'ve| have)\s+(?:rescheduled|moved)\b",
        re.I,
    )),
    (ClaimKind.BOOK, re.compile(
        r"\bi(?:'ve| have)\s+(?:booked|scheduled|confirmed)\b"
        r"|\b(?:appointment|booking)\s+(?:is|has been)\s+(?:now\s+)?(?:confirmed|booked|scheduled|complete)\b"
        r"|\b(?:is|are|been|now)\s+(?:booked|confirmed)\b"
        r"|\bsuccessfully\s+(?:booked|scheduled)\b"
        r"|\bbooked!",
        re.I,
    )),
    (ClaimKind.GENERIC, re.compile(r"\byou(?:'re| are)\s+all\s+set\b", re.I)),
]

_SUPPORTING_TOOLS: dict[ClaimKind, frozenset[str]] = {
    ClaimKind.BOOK: frozenset({ToolName.CREATE_APPOINTMENT.value}),
    ClaimKind.RESCHEDULE: frozenset({ToolName.UPDATE_APPOINTMENT.value}),
    ClaimKind.CANCEL: frozenset({ToolName.CANCEL_APPOINTMENT.value}),
    ClaimKind.GENERIC: frozenset({
        ToolName.CREATE_APPOINTMENT.value,
        ToolName.UPDATE_APPOINTMENT.value,
        ToolName.CANCEL_APPOINTMENT.value,
    }),
}

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


# ── Claims ───────────────────────────────────────────────────────────


def detect_claims(text: str) -> set[ClaimKind]:
    return {kind for kind, pattern in _CLAIM_PATTERNS if pattern.search(text)}


def unsupported_claims(text: str, session: Session) -> set[ClaimKind]:
    """Claims in ``text`` with no successful matching tool call this session."""
    succeeded = {r.tool_name for r in session.tool_calls if r.succeeded}
    return {kind for kind in detect_claims(text) if not succeeded & _SUPPORTING_TOOLS[kind]}


def strip_claims(text: str) -> str:
    """Drop every sentence that contains success language."""
    kept = [
        sentence for sentence in _SENTENCE_SPLIT_RE.split(text.strip())
        if sentence and not detect_claims(sentence)
    ]
    return " ".join(kept).strip()


# ── Slots ────────────────────────────────────────────────────────────


def parse_slot(raw: dict[str, Any]) -> SelectedSlot | None:
    """Map one availability record (``DateTimeStart``/``ProvNum``/``OpNum``)."""
    try:
        start = datetime.fromisoformat(str(raw["DateTimeStart"]))
        provider = int(raw["ProvNum"])
        room = int(raw.get("OpNum", raw.get("Op")))
    except (KeyError, TypeError, ValueError):
        return None
    return SelectedSlot(
        start=start, provider_id=provider, room_id=room, provider_name=raw.get("ProviderName"),
    )


def parse_slots(raw_slots: list[dict[str, Any]]) -> list[SelectedSlot]:
    return [slot for slot in (parse_slot(s) for s in raw_slots) if slot is not None]


_ORDINAL_RE = re.compile(
    r"\b(?:the\s+)?(first|1st|second|2nd|third|3rd|last)\s+(?:one|option|slot|choice)\b"
    r"|\bthe\s+(first|1st|second|2nd|third|3rd|last)\b",
    re.I,
)
_ORDINAL_INDEX = {
    "first": 0, "1st": 0, "second": 1, "2nd": 1, "third": 2, "3rd": 2, "last": -1,
}


def _unique(slots: list[SelectedSlot]) -> SelectedSlot | None:
    distinct = {(s.start, s.provider_id, s.room_id): s for s in slots}
    return next(iter(distinct.values())) if len(distinct) == 1 else None


def match_slot(
    utterance: str, slots: list[SelectedSlot], reference: date,
) -> SelectedSlot | None:
    """Return the single presented slot the utterance picks, else ``None``.

    Ordinals ("the second one") index the presented list.  Otherwise a
    clock time narrows by hour and minute ("2pm" prefers 14:00), then a
    mentioned day or provider narrows further.  Anything still ambiguous
    is no match.
    """
    if not slots:
        return None

    ordinal = _ORDINAL_RE.search(utterance)
    if ordinal:
        index = _ORDINAL_INDEX[(ordinal.group(1) or ordinal.group(2)).lower()]
        if -len(slots) <= index < len(slots):
            return slots[index]
        return None

    clock = parse_clock_time(utterance)
    if clock is None:
        return None
    hour, minute = clock
    candidates = [s for s in slots if s.start.hour == hour]
    if minute is not None:
        candidates = [s for s in candidates if s.start.minute == minute]
    else:
        on_the_hour = [s for s in candidates if s.start.minute == 0]
        candidates = on_the_hour or candidates

    day = extract_date_preference(utterance, reference)
    if day is not None:
        candidates = [s for s in candidates if s.start.date().isoformat() == day]

    lowered = utterance.lower()
    named = [
        s for s in candidates
        if s.provider_name and s.provider_name.split()[-1].lower() in lowered
    ]
    if named:
        candidates = named

    return _unique(candidates)


def describe_slot(slot: SelectedSlot) -> str:
    hour = slot.start.strftime("%I").lstrip("0")
    text = f"{slot.start.strftime('%A, %B')} {slot.start.day} at {hour}:{slot.start.strftime('%M %p')}"
    if slot.provider_name:
        text += f" with {slot.provider_name}"
    return text


# ── Rewriting ────────────────────────────────────────────────────────


def confirmation_request(kinds: set[ClaimKind], slots: list[SelectedSlot], limit: int = 3) -> str:
    if kinds == {ClaimKind.CANCEL}:
        return (
            "Before I finalize anything, could you confirm that you want me to go ahead "
            "and cancel your appointment?"
        )
    question = "Before I finalize anything, could you confirm exactly which time you'd like?"
    if slots:
        options = "; ".join(describe_slot(s) for s in slots[:limit])
        question += f" The open times I have are: {options}."
    return question


def correct_reply(text: str, kinds: set[ClaimKind], slots: list[SelectedSlot]) -> str:
    """Strip false claims from ``text`` and append a confirmation question."""
    remainder = strip_claims(text)
    question = confirmation_request(kinds, slots)
    return f"{remainder} {question}".strip() if remainder else question
