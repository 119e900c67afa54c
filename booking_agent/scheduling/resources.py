"""Read-through, time-bounded cache of schedulable resources.

The cache owns one ``ResourceSnapshot`` value (providers, rooms and the
time ranges already occupied over the look-ahead window).  Callers only
ever see whole snapshots: a refresh fans out three backend calls in
parallel, waits for all of them, and swaps in a new snapshot.

When a refresh fails the cache degrades instead of raising:

  1. the last good snapshot, if it expired less than
     ``stale_grace_seconds`` ago;
  2. otherwise a single-provider / single-room fallback snapshot whose
     short TTL makes the next call try the backend again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from booking_agent.config import (
    DEFAULT_APPOINTMENT_MINUTES,
    RESOURCE_CACHE_TTL_SECONDS,
    RESOURCE_FALLBACK_TTL_SECONDS,
    RESOURCE_LOOKAHEAD_DAYS,
    RESOURCE_STALE_GRACE_SECONDS,
)
from booking_agent.models import OccupiedSlot, Provider, ResourceSnapshot, Room
from booking_agent.services.booking_client import ToolExecutor
from booking_agent.state.store import unwrap_result

logger = logging.getLogger(__name__)

MINUTES_PER_PATTERN_BLOCK = 5

# Appointment statuses that do not hold a chair
_NON_OCCUPYING_STATUSES = frozenset({"Broken", "UnschedList", "Planned"})


# ── Backend record mapping ───────────────────────────────────────────


def _truthy(value: Any) -> bool:
    return value is True or value == 1 or value == "1" or value == "true"


def format_provider_name(raw: dict[str, Any]) -> str:
    first = (raw.get("FName") or "").strip()
    last = (raw.get("LName") or "").strip()
    if first and last:
        return f"{first} {last}"
    if last:
        return last
    if raw.get("Abbr"):
        return str(raw["Abbr"])
    return f"Provider {raw.get('ProvNum')}"


def pattern_duration(pattern: str | None, default_minutes: int) -> int:
    """Appointment length from a time pattern; each ``X`` is a 5 minute block."""
    if not pattern:
        return default_minutes
    blocks = pattern.count("X")
    return blocks * MINUTES_PER_PATTERN_BLOCK if blocks else default_minutes


def map_provider(raw: dict[str, Any]) -> Provider:
    return Provider(
        id=int(raw["ProvNum"]),
        name=format_provider_name(raw),
        abbreviation=raw.get("Abbr") or None,
        is_available=not _truthy(raw.get("IsHidden")) and not _truthy(raw.get("IsSecondary")),
    )


def map_room(raw: dict[str, Any]) -> Room:
    op_num = int(raw["OperatoryNum"])
    return Room(
        id=op_num,
        name=raw.get("OpName") or f"Op {op_num}",
        abbreviation=raw.get("Abbrev") or f"Op{op_num}",
        is_hygiene=_truthy(raw.get("IsHygiene")),
        is_available=not _truthy(raw.get("IsHidden")),
    )


def _optional_int(value: Any) -> int | None:
    if value in (None, "", 0, "0"):
        return None
    return int(value)


def map_occupied(raw: dict[str, Any], default_minutes: int) -> OccupiedSlot | None:
    """Map one appointment record, or ``None`` if it holds no time."""
    if raw.get("AptStatus") in _NON_OCCUPYING_STATUSES:
        return None
    try:
        start = datetime.fromisoformat(str(raw["AptDateTime"]))
    except (KeyError, ValueError):
        logger.debug("Skipping appointment with unparseable time: %r", raw.get("AptDateTime"))
        return None
    return OccupiedSlot(
        start=start,
        duration_minutes=pattern_duration(raw.get("Pattern"), default_minutes),
        appointment_id=_optional_int(raw.get("AptNum")),
        provider_id=_optional_int(raw.get("ProvNum")),
        room_id=_optional_int(raw.get("Op")),
        patient_id=_optional_int(raw.get("PatNum")),
        status=raw.get("AptStatus"),
    )


def _as_list(payload: Any) -> list[dict[str, Any]]:
    return [item for item in payload if isinstance(item, dict)] if isinstance(payload, list) else []


def fallback_snapshot(now: datetime, ttl_seconds: float) -> ResourceSnapshot:
    return ResourceSnapshot(
        providers=(Provider(id=1, name="Default Provider", abbreviation="DOC"),),
        rooms=(Room(id=1, name="Op 1", abbreviation="Op1"),),
        occupied=(),
        fetched_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
        is_fallback=True,
    )


# ── Cache ────────────────────────────────────────────────────────────


class ResourceContextCache:
    """Owns the current ``ResourceSnapshot``; the only way in is ``get()``.

    Concurrent callers that find the snapshot expired share one refresh:
    the first takes the refresh lock, the rest wait on it and then reuse
    the snapshot it produced.
    """

    def __init__(
        self,
        executor: ToolExecutor,
        *,
        ttl_seconds: float | None = None,
        lookahead_days: int | None = None,
        fallback_ttl_seconds: float | None = None,
        stale_grace_seconds: float | None = None,
        default_duration_minutes: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._executor = executor
        self._ttl = RESOURCE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._lookahead_days = (
            RESOURCE_LOOKAHEAD_DAYS if lookahead_days is None else lookahead_days
        )
        self._fallback_ttl = (
            RESOURCE_FALLBACK_TTL_SECONDS if fallback_ttl_seconds is None else fallback_ttl_seconds
        )
        self._stale_grace = (
            RESOURCE_STALE_GRACE_SECONDS if stale_grace_seconds is None else stale_grace_seconds
        )
        self._default_minutes = default_duration_minutes or DEFAULT_APPOINTMENT_MINUTES
        self._clock = clock
        self._snapshot: ResourceSnapshot | None = None
        self._last_good: ResourceSnapshot | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def current(self) -> ResourceSnapshot | None:
        """The cached snapshot without triggering a refresh (may be stale)."""
        return self._snapshot

    async def get(self) -> ResourceSnapshot:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.is_fresh(self._clock()):
            return snapshot

        async with self._refresh_lock:
            snapshot = self._snapshot
            if snapshot is not None and snapshot.is_fresh(self._clock()):
                return snapshot
            self._snapshot = await self._refresh()
            return self._snapshot

    def invalidate(self) -> None:
        """Force the next ``get()`` to refresh (called after a booking write)."""
        if self._snapshot is not None:
            logger.debug("Resource snapshot invalidated")
        self._snapshot = None

    # ── Refresh ──────────────────────────────────────────────────────

    async def _refresh(self) -> ResourceSnapshot:
        now = self._clock()
        start = now.date()
        end = start + timedelta(days=self._lookahead_days)

        results = await asyncio.gather(
            self._executor.execute("GetProviders", {}),
            self._executor.execute("GetOperatories", {}),
            self._executor.execute(
                "GetAppointments",
                {"DateStart": start.isoformat(), "DateEnd": end.isoformat()},
            ),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning(
                "Resource refresh failed (%d of 3 fetches): %s",
                len(failures), "; ".join(type(f).__name__ for f in failures),
            )
            return self._degraded(now)

        providers_raw, rooms_raw, appointments_raw = (unwrap_result(r) for r in results)
        try:
            snapshot = ResourceSnapshot(
                providers=tuple(map_provider(p) for p in _as_list(providers_raw)),
                rooms=tuple(map_room(r) for r in _as_list(rooms_raw)),
                occupied=tuple(
                    slot
                    for slot in (
                        map_occupied(a, self._default_minutes)
                        for a in _as_list(appointments_raw)
                    )
                    if slot is not None
                ),
                fetched_at=now,
                expires_at=now + timedelta(seconds=self._ttl),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Resource refresh returned malformed records: %s", exc)
            return self._degraded(now)

        self._last_good = snapshot
        logger.info(
            "Resource snapshot refreshed: %d providers, %d rooms, %d occupied slots",
            len(snapshot.providers), len(snapshot.rooms), len(snapshot.occupied),
        )
        return snapshot

    def _degraded(self, now: datetime) -> ResourceSnapshot:
        last = self._last_good
        if last is not None and now < last.expires_at + timedelta(seconds=self._stale_grace):
            logger.info("Serving stale resource snapshot fetched at %s", last.fetched_at)
            return last.model_copy(
                update={"expires_at": now + timedelta(seconds=self._fallback_ttl)},
            )
        logger.warning("No usable resource snapshot; using single-provider fallback")
        return fallback_snapshot(now, self._fallback_ttl)
