"""Conflict detection for a candidate booking against a resource snapshot.

Pure and synchronous: given the same snapshot and candidate the result is
always the same.  Intervals are half-open (``[start, end)``), so an
appointment ending at 14:30 does not collide with one starting at 14:30.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict

from booking_agent.config import (
    ALLOW_DOUBLE_BOOKING,
    CONFLICT_CHECK_ENABLED,
    CONFLICT_WINDOW_MINUTES,
)
from booking_agent.models import OccupiedSlot, ResourceSnapshot

logger = logging.getLogger(__name__)


class ConflictKind(str, Enum):
    PATIENT = "patient"
    ROOM = "room"
    PROVIDER = "provider"


class ConflictPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = CONFLICT_CHECK_ENABLED
    window_minutes: int = CONFLICT_WINDOW_MINUTES
    check_patient: bool = True
    check_room: bool = True
    check_provider: bool = True
    # Conflicts are still reported, they just stop blocking the booking
    allow_double_booking: bool = ALLOW_DOUBLE_BOOKING


class Conflict(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ConflictKind
    reason: str
    appointment_id: int | None = None


class ConflictReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_conflict: bool
    conflicts: tuple[Conflict, ...] = ()
    suggestions: tuple[str, ...] = ()
    alternative_room_id: int | None = None
    alternative_provider_id: int | None = None

    @property
    def reasons(self) -> list[str]:
        return [c.reason for c in self.conflicts]

    @property
    def kinds(self) -> set[ConflictKind]:
        return {c.kind for c in self.conflicts}


def _overlaps(start: datetime, end: datetime, slot: OccupiedSlot) -> bool:
    return start < slot.end and end > slot.start


def _fmt(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M")


def _free_room(
    snapshot: ResourceSnapshot, exclude: int, start: datetime, end: datetime,
) -> tuple[int, str] | None:
    for room in snapshot.rooms:
        if not room.is_available or room.id == exclude:
            continue
        if not any(s.room_id == room.id and _overlaps(start, end, s) for s in snapshot.occupied):
            return room.id, room.name
    return None


def _free_provider(
    snapshot: ResourceSnapshot, exclude: int, start: datetime, end: datetime,
) -> tuple[int, str] | None:
    for provider in snapshot.providers:
        if not provider.is_available or provider.id == exclude:
            continue
        if not any(
            s.provider_id == provider.id and _overlaps(start, end, s) for s in snapshot.occupied
        ):
            return provider.id, provider.name
    return None


def detect_conflicts(
    snapshot: ResourceSnapshot,
    candidate_start: datetime,
    candidate_provider: int,
    candidate_room: int,
    candidate_patient: int | None = None,
    *,
    policy: ConflictPolicy | None = None,
) -> ConflictReport:
    """Check a candidate booking against every occupied slot in ``snapshot``.

    For each overlapping slot three independent checks run, in order:
    the same patient (double booking), the same room, the same provider.
    Each match adds its own reason; room and provider matches also look
    for an alternative that is free across the candidate interval.
    """
    policy = policy or ConflictPolicy()
    if not policy.enabled:
        return ConflictReport(has_conflict=False)

    candidate_end = candidate_start + timedelta(minutes=policy.window_minutes)
    conflicts: list[Conflict] = []
    suggestions: list[str] = []
    alt_room: tuple[int, str] | None = None
    alt_provider: tuple[int, str] | None = None

    for slot in snapshot.occupied:
        if not _overlaps(candidate_start, candidate_end, slot):
            continue
        when = f"{_fmt(slot.start)}-{slot.end.strftime('%H:%M')}"

        if policy.check_patient and candidate_patient is not None and (
            slot.patient_id == candidate_patient
        ):
            conflicts.append(Conflict(
                kind=ConflictKind.PATIENT,
                reason=f"Patient {candidate_patient} already has an appointment at {when}",
                appointment_id=slot.appointment_id,
            ))
            suggestions.append("Reschedule the existing appointment or choose a different time")

        if policy.check_room and slot.room_id == candidate_room:
            conflicts.append(Conflict(
                kind=ConflictKind.ROOM,
                reason=f"Room {candidate_room} is occupied at {when}",
                appointment_id=slot.appointment_id,
            ))
            if alt_room is None:
                alt_room = _free_room(snapshot, candidate_room, candidate_start, candidate_end)
                if alt_room is not None:
                    suggestions.append(
                        f"Room {alt_room[0]} ({alt_room[1]}) is free at this time",
                    )

        if policy.check_provider and slot.provider_id == candidate_provider:
            conflicts.append(Conflict(
                kind=ConflictKind.PROVIDER,
                reason=f"Provider {candidate_provider} is busy at {when}",
                appointment_id=slot.appointment_id,
            ))
            if alt_provider is None:
                alt_provider = _free_provider(
                    snapshot, candidate_provider, candidate_start, candidate_end,
                )
                if alt_provider is not None:
                    suggestions.append(
                        f"{alt_provider[1]} (provider {alt_provider[0]}) is free at this time",
                    )

    has_conflict = bool(conflicts) and not policy.allow_double_booking
    if conflicts:
        logger.debug(
            "Conflicts for %s provider=%s room=%s: %s",
            _fmt(candidate_start), candidate_provider, candidate_room,
            [c.reason for c in conflicts],
        )
    return ConflictReport(
        has_conflict=has_conflict,
        conflicts=tuple(conflicts),
        suggestions=tuple(suggestions),
        alternative_room_id=alt_room[0] if alt_room else None,
        alternative_provider_id=alt_provider[0] if alt_provider else None,
    )
