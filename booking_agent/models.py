"""Pydantic models shared across the booking core.

Two families live here:

* **Conversation state** (``Session`` and its parts).  These are mutable
  and owned by ``ConversationStore``; nothing else should assign to them
  directly.  Optional fields use ``None`` for "unknown", never ``""``.
* **Resource snapshot** (``ResourceSnapshot`` and its parts).  These are
  frozen values; a refresh produces a new snapshot instead of editing one.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

API_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# ── Enums ────────────────────────────────────────────────────────────


class Intent(str, Enum):
    BOOK = "book"
    RESCHEDULE = "reschedule"
    CANCEL = "cancel"
    CHECK = "check"
    UNKNOWN = "unknown"


class Stage(str, Enum):
    """Conversation progress.  Declaration order is the progression order."""

    GREETING = "greeting"
    IDENTIFYING = "identifying"
    GATHERING = "gathering"
    CHECKING_SLOTS = "checking_slots"
    CONFIRMING = "confirming"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return list(Stage).index(self)


class Channel(str, Enum):
    VOICE = "voice"
    SMS = "sms"
    CHAT = "chat"
    WEB = "web"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# ── Conversation state ───────────────────────────────────────────────


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    text: str
    timestamp: datetime


class PatientRecord(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = Field(default=None, description="Digits only")
    birthdate: str | None = Field(default=None, description="ISO date YYYY-MM-DD")
    patient_id: int | None = None
    is_new_patient: bool | None = None


class SelectedSlot(BaseModel):
    """A concrete slot the user explicitly picked from presented options."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    provider_id: int
    room_id: int
    provider_name: str | None = None

    @property
    def api_datetime(self) -> str:
        return self.start.strftime(API_DATETIME_FORMAT)


class AppointmentIntent(BaseModel):
    appointment_type: str | None = None
    preferred_date: str | None = Field(default=None, description="ISO date YYYY-MM-DD")
    preferred_time: str | None = Field(
        default=None, description="morning/afternoon/evening or HH:MM",
    )
    selected_slot: SelectedSlot | None = None
    existing_appointment_id: int | None = None


class ToolCallRecord(BaseModel):
    """Append-only log entry for one tool call (executed or refused)."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: dict[str, Any] | None = None
    auto_filled: list[str] = Field(default_factory=list)
    supplied: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class Session(BaseModel):
    session_id: str
    channel: Channel = Channel.CHAT
    created_at: datetime
    updated_at: datetime
    intent: Intent = Intent.UNKNOWN
    stage: Stage = Stage.GREETING
    patient: PatientRecord = Field(default_factory=PatientRecord)
    appointment: AppointmentIntent = Field(default_factory=AppointmentIntent)
    missing_required: list[str] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)

    def last_user_message(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == Role.USER:
                return message
        return None


# ── Resource snapshot ────────────────────────────────────────────────


class Provider(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    abbreviation: str | None = None
    is_available: bool = True


class Room(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    abbreviation: str | None = None
    is_hygiene: bool = False
    is_available: bool = True


class OccupiedSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    duration_minutes: int
    appointment_id: int | None = None
    provider_id: int | None = None
    room_id: int | None = None
    patient_id: int | None = None
    status: str | None = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)


class ResourceSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    providers: tuple[Provider, ...] = ()
    rooms: tuple[Room, ...] = ()
    occupied: tuple[OccupiedSlot, ...] = ()
    fetched_at: datetime
    expires_at: datetime
    is_fallback: bool = False

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at

    def provider_name(self, provider_id: int | None) -> str | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider.name
        return None

    def without_appointment(self, appointment_id: int | None) -> ResourceSnapshot:
        """Return a copy that ignores one appointment (the one being moved)."""
        if appointment_id is None:
            return self
        kept = tuple(s for s in self.occupied if s.appointment_id != appointment_id)
        return self.model_copy(update={"occupied": kept})
