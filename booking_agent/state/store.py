"""Authoritative, session-keyed conversation state.

``ConversationStore`` is the only writer of ``Session`` objects.  It is
mutated from three places:

  * user messages (deterministic extraction, ``ingest_user_message``);
  * the semantic fallback (``update(..., fill_only=True)``);
  * the orchestration loop (``record_tool_call`` and slot selection).

Rules enforced here:

  * ``update`` merges field by field.  ``None`` means "nothing found" and
    never clears a known value.
  * A completed session only accepts audit appends (messages and tool
    records); its fields no longer change.
  * ``missing_required`` and ``stage`` are recomputed after every mutation;
    stage only moves forward.

All methods are synchronous and never await, so no store-wide lock is
needed.  ``turn()`` is the per-session serialization point: one turn at a
time per session, and sessions with a running turn are never evicted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from booking_agent.config import APPOINTMENT_FALLBACK_TO_FIRST, SESSION_IDLE_TIMEOUT_SECONDS
from booking_agent.extraction.patterns import extract_entities
from booking_agent.models import (
    AppointmentIntent,
    Channel,
    Intent,
    Message,
    PatientRecord,
    Role,
    SelectedSlot,
    Session,
    Stage,
    ToolCallRecord,
)

logger = logging.getLogger(__name__)

_CHANNEL_PREFIXES = (
    (("voice_", "call_"), Channel.VOICE),
    (("sms_", "whatsapp_"), Channel.SMS),
    (("web_",), Channel.WEB),
    (("chat_",), Channel.CHAT),
)


def detect_channel(session_id: str) -> Channel:
    """Infer the channel from the adapter's session id prefix."""
    lowered = session_id.lower()
    for prefixes, channel in _CHANNEL_PREFIXES:
        if lowered.startswith(prefixes):
            return channel
    return Channel.CHAT


class SessionNotFoundError(KeyError):
    pass


class ConversationStore:
    def __init__(
        self,
        *,
        idle_timeout_seconds: float | None = None,
        appointment_fallback_to_first: bool | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._idle_timeout = timedelta(
            seconds=SESSION_IDLE_TIMEOUT_SECONDS
            if idle_timeout_seconds is None else idle_timeout_seconds
        )
        self._fallback_to_first = (
            APPOINTMENT_FALLBACK_TO_FIRST
            if appointment_fallback_to_first is None else appointment_fallback_to_first
        )
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._turn_locks: dict[str, asyncio.Lock] = {}
        self._active: set[str] = set()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def now(self) -> datetime:
        return self._clock()

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def get_or_create(self, session_id: str, channel: Channel | None = None) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            now = self._clock()
            session = Session(
                session_id=session_id,
                channel=channel or detect_channel(session_id),
                created_at=now,
                updated_at=now,
            )
            self._recompute(session)
            self._sessions[session_id] = session
            logger.info("Created session %s (channel=%s)", session_id, session.channel.value)
        return session

    # ── Mutation ─────────────────────────────────────────────────────

    def update(self, session_id: str, patch: dict[str, Any], *, fill_only: bool = False) -> Session:
        """Merge ``patch`` into the session field by field.

        ``patch`` may carry ``patient`` / ``appointment`` sub-dicts plus
        top-level ``intent``.  With ``fill_only`` a value is written only
        where the session has none yet.
        """
        session = self.get_or_create(session_id)
        if session.stage is Stage.COMPLETED:
            logger.debug("Session %s is completed; ignoring patch %s", session_id, patch)
            return session

        unknown = set(patch) - {"patient", "appointment", "intent"}
        if unknown:
            raise ValueError(f"Unknown session fields in patch: {sorted(unknown)}")

        if patch.get("patient"):
            session.patient = _merge(session.patient, patch["patient"], fill_only)
        if patch.get("appointment"):
            session.appointment = _merge(session.appointment, patch["appointment"], fill_only)
        intent = patch.get("intent")
        if intent is not None and Intent(intent) is not Intent.UNKNOWN:
            if not (fill_only and session.intent is not Intent.UNKNOWN):
                session.intent = Intent(intent)

        self._touch(session)
        return session

    def append_message(self, session_id: str, role: Role, text: str) -> Message:
        session = self.get_or_create(session_id)
        message = Message(role=role, text=text, timestamp=self._clock())
        session.messages.append(message)
        session.updated_at = message.timestamp
        return message

    def ingest_user_message(self, session_id: str, text: str) -> dict[str, Any]:
        """Append a user message and merge what the pattern extractors find.

        Returns the extracted patch (useful for logging and tests).
        """
        self.append_message(session_id, Role.USER, text)
        patch = extract_entities(text, self._clock().date())
        if patch:
            self.update(session_id, patch)
            logger.debug("Session %s extracted %s", session_id, patch)
        return patch

    def select_slot(self, session_id: str, slot: SelectedSlot) -> Session:
        session = self.get_or_create(session_id)
        if session.stage is Stage.COMPLETED:
            return session
        session.appointment = session.appointment.model_copy(update={"selected_slot": slot})
        self._touch(session)
        logger.info("Session %s selected slot %s", session_id, slot.api_datetime)
        return session

    def record_tool_call(
        self,
        session_id: str,
        tool_name: str,
        parameters: dict[str, Any],
        *,
        result: Any = None,
        error: dict[str, Any] | None = None,
        auto_filled: list[str] | tuple[str, ...] = (),
        supplied: list[str] | tuple[str, ...] = (),
    ) -> ToolCallRecord:
        """Append a tool record and fold a successful result into state."""
        session = self.get_or_create(session_id)
        record = ToolCallRecord(
            timestamp=self._clock(),
            tool_name=tool_name,
            parameters=dict(parameters),
            result=result if error is None else None,
            error=error,
            auto_filled=list(auto_filled),
            supplied=list(supplied),
        )
        session.tool_calls.append(record)
        if error is None and session.stage is not Stage.COMPLETED:
            self._fold_result(session, tool_name, parameters, result)
        self._touch(session)
        return record

    # ── Tool result folding ──────────────────────────────────────────

    def _fold_result(
        self, session: Session, tool_name: str, parameters: dict[str, Any], result: Any,
    ) -> None:
        result = unwrap_result(result)
        if tool_name == "GetMultiplePatients":
            if isinstance(result, list) and result and isinstance(result[0], dict):
                match = result[0]
                session.patient = _merge(session.patient, {
                    "patient_id": match.get("PatNum"),
                    "first_name": match.get("FName") or None,
                    "last_name": match.get("LName") or None,
                }, fill_only=False)
                if len(result) > 1:
                    logger.info(
                        "Session %s: %d patients matched, using PatNum=%s",
                        session.session_id, len(result), match.get("PatNum"),
                    )

        elif tool_name == "CreatePatient":
            if isinstance(result, dict) and result.get("PatNum") is not None:
                session.patient = _merge(session.patient, {
                    "patient_id": result["PatNum"], "is_new_patient": True,
                }, fill_only=False)

        elif tool_name == "GetAppointments":
            apt_num = self._pick_existing_appointment(session, result)
            if apt_num is not None:
                session.appointment = _merge(
                    session.appointment, {"existing_appointment_id": apt_num}, fill_only=False,
                )

        elif tool_name in ("CreateAppointment", "UpdateAppointment", "BreakAppointment"):
            apt_num = None
            if isinstance(result, dict):
                apt_num = result.get("AptNum")
            if apt_num is None:
                apt_num = parameters.get("AptNum")
            if apt_num is not None:
                session.appointment = _merge(
                    session.appointment, {"existing_appointment_id": apt_num}, fill_only=False,
                )
            session.stage = Stage.COMPLETED
            logger.info(
                "Session %s completed via %s (AptNum=%s)", session.session_id, tool_name, apt_num,
            )

    def _pick_existing_appointment(self, session: Session, result: Any) -> int | None:
        if not isinstance(result, list):
            return None
        appointments = [a for a in result if isinstance(a, dict) and a.get("AptNum") is not None]
        for appointment in appointments:
            if str(appointment.get("AptStatus", "")).lower() == "scheduled":
                return int(appointment["AptNum"])
        if appointments and self._fallback_to_first:
            logger.warning(
                "Session %s: no Scheduled appointment; falling back to AptNum=%s (status=%s)",
                session.session_id, appointments[0]["AptNum"], appointments[0].get("AptStatus"),
            )
            return int(appointments[0]["AptNum"])
        if appointments:
            logger.info(
                "Session %s: %d appointments listed, none Scheduled; no target selected",
                session.session_id, len(appointments),
            )
        return None

    # ── Derived fields ───────────────────────────────────────────────

    def _touch(self, session: Session) -> None:
        session.updated_at = self._clock()
        self._recompute(session)

    def _recompute(self, session: Session) -> None:
        session.missing_required = compute_missing_required(session)
        if session.stage is not Stage.COMPLETED:
            derived = _derive_stage(session)
            if derived.rank > session.stage.rank:
                session.stage = derived

    # ── Turn serialization & eviction ────────────────────────────────

    @asynccontextmanager
    async def turn(self, session_id: str) -> AsyncIterator[Session]:
        """Hold the session's turn lock while one message is processed."""
        lock = self._turn_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            self._active.add(session_id)
            try:
                yield self.get_or_create(session_id)
            finally:
                self._active.discard(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def evict_idle(self, now: datetime | None = None) -> list[str]:
        """Drop sessions idle longer than the timeout; returns evicted ids."""
        now = now or self._clock()
        evicted = []
        for session_id, session in list(self._sessions.items()):
            if session_id in self._active:
                continue
            lock = self._turn_locks.get(session_id)
            if lock is not None and lock.locked():
                continue
            if now - session.updated_at > self._idle_timeout:
                del self._sessions[session_id]
                self._turn_locks.pop(session_id, None)
                evicted.append(session_id)
        if evicted:
            logger.info("Evicted %d idle sessions", len(evicted))
        return evicted

    # ── Read models ──────────────────────────────────────────────────

    def presented_slots(self, session_id: str) -> list[dict[str, Any]]:
        """Slots from the most recent successful availability lookup."""
        session = self.get(session_id)
        if session is None:
            return []
        for record in reversed(session.tool_calls):
            if record.tool_name == "GetAvailableSlots" and record.succeeded:
                slots = unwrap_result(record.result)
                if isinstance(slots, list):
                    return [s for s in slots if isinstance(s, dict)]
                return []
        return []

    def summary(self, session_id: str) -> str:
        return summarize(self.require(session_id))

    def export(self, session_id: str) -> dict[str, Any]:
        """Flat, JSON-serializable record of one session."""
        session = self.require(session_id)
        record: dict[str, Any] = {
            "session_id": session.session_id,
            "channel": session.channel.value,
            "intent": session.intent.value,
            "stage": session.stage.value,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
            "missing_required": list(session.missing_required),
            "outcome": self._outcome(session),
        }
        for field, value in session.patient.model_dump(mode="json").items():
            record[f"patient_{field}"] = value
        appointment = session.appointment.model_dump(mode="json", exclude={"selected_slot"})
        for field, value in appointment.items():
            record[f"appointment_{field}"] = value
        slot = session.appointment.selected_slot
        record["selected_slot_start"] = slot.api_datetime if slot else None
        record["selected_slot_provider_id"] = slot.provider_id if slot else None
        record["selected_slot_room_id"] = slot.room_id if slot else None
        record["messages"] = [m.model_dump(mode="json") for m in session.messages]
        record["tool_calls"] = [t.model_dump(mode="json") for t in session.tool_calls]
        return record

    def _outcome(self, session: Session) -> str:
        if session.stage is Stage.COMPLETED:
            return "completed"
        if self._clock() - session.updated_at > self._idle_timeout:
            return "abandoned"
        return "in_progress"


# ── Pure helpers ─────────────────────────────────────────────────────


def unwrap_result(result: Any) -> Any:
    """Strip a ``{"success": ..., "data": ...}`` envelope if the backend used one."""
    if isinstance(result, dict) and "data" in result and len(result) <= 2:
        return result["data"]
    return result


def _merge(model, changes: dict[str, Any], fill_only: bool):
    """Return ``model`` with non-``None`` ``changes`` applied (validated)."""
    fields = type(model).model_fields
    unknown = set(changes) - set(fields)
    if unknown:
        raise ValueError(f"Unknown {type(model).__name__} fields: {sorted(unknown)}")

    current = model.model_dump()
    for field, value in changes.items():
        if value is None:
            continue
        if fill_only and current.get(field) is not None:
            continue
        current[field] = value
    return type(model).model_validate(current)


def compute_missing_required(session: Session) -> list[str]:
    patient: PatientRecord = session.patient
    appointment: AppointmentIntent = session.appointment
    missing: list[str] = []

    if patient.patient_id is None and patient.first_name is None and patient.phone is None:
        missing.append("patient_name_or_phone")

    if session.intent is Intent.BOOK:
        if appointment.appointment_type is None:
            missing.append("appointment_type")
        if appointment.preferred_date is None and appointment.selected_slot is None:
            missing.append("preferred_date")
        if appointment.preferred_time is None and appointment.selected_slot is None:
            missing.append("preferred_time")
        if patient.is_new_patient and patient.patient_id is None:
            if patient.birthdate is None:
                missing.append("birthdate")
            if patient.phone is None:
                missing.append("phone")

    elif session.intent in (Intent.RESCHEDULE, Intent.CANCEL):
        if appointment.existing_appointment_id is None and patient.patient_id is None:
            missing.append("patient_identification")

    return missing


def _derive_stage(session: Session) -> Stage:
    patient = session.patient
    if session.appointment.selected_slot is not None:
        return Stage.CONFIRMING
    if any(r.tool_name == "GetAvailableSlots" and r.succeeded for r in session.tool_calls):
        return Stage.CHECKING_SLOTS
    if patient.patient_id is not None:
        return Stage.GATHERING
    known_identity = any(
        v is not None for v in (patient.first_name, patient.last_name, patient.phone)
    )
    if known_identity or session.intent is not Intent.UNKNOWN:
        return Stage.IDENTIFYING
    return Stage.GREETING


def summarize(session: Session) -> str:
    """Compact, model-facing summary of what is already known."""
    patient = session.patient
    appointment = session.appointment
    lines = [f"Intent: {session.intent.value}", f"Stage: {session.stage.value}"]

    name = " ".join(p for p in (patient.first_name, patient.last_name) if p)
    if name:
        lines.append(f"Patient name: {name}")
    if patient.phone:
        lines.append(f"Phone: {patient.phone}")
    if patient.birthdate:
        lines.append(f"Birthdate: {patient.birthdate}")
    if patient.patient_id is not None:
        lines.append(f"PatNum: {patient.patient_id}")
    if patient.is_new_patient:
        lines.append("New patient: yes")
    if appointment.appointment_type:
        lines.append(f"Appointment type: {appointment.appointment_type}")
    if appointment.preferred_date:
        lines.append(f"Preferred date: {appointment.preferred_date}")
    if appointment.preferred_time:
        lines.append(f"Preferred time: {appointment.preferred_time}")
    if appointment.selected_slot:
        slot = appointment.selected_slot
        lines.append(
            f"Selected slot: {slot.api_datetime} (ProvNum {slot.provider_id}, Op {slot.room_id})"
        )
    if appointment.existing_appointment_id is not None:
        lines.append(f"Existing AptNum: {appointment.existing_appointment_id}")
    if session.missing_required:
        lines.append(f"Still needed: {', '.join(session.missing_required)}")
    return "\n".join(lines)
