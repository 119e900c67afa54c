"""Tests for conflict detection against a resource snapshot."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from booking_agent.models import OccupiedSlot, Provider, ResourceSnapshot, Room
from booking_agent.scheduling.conflicts import ConflictKind, ConflictPolicy, detect_conflicts

POLICY = ConflictPolicy(enabled=True, window_minutes=30, allow_double_booking=False)
BASE = datetime(2025, 10, 30, 14, 0)


def _snapshot(*occupied: OccupiedSlot, rooms=(1, 2), providers=(1, 2)) -> ResourceSnapshot:
    return ResourceSnapshot(
        providers=tuple(Provider(id=p, name=f"Dr. {p}") for p in providers),
        rooms=tuple(Room(id=r, name=f"Op {r}") for r in rooms),
        occupied=occupied,
        fetched_at=BASE,
        expires_at=BASE + timedelta(minutes=5),
    )


def _slot(start=BASE, minutes=30, *, room=1, provider=1, patient=None, apt=100) -> OccupiedSlot:
    return OccupiedSlot(
        start=start, duration_minutes=minutes,
        appointment_id=apt, provider_id=provider, room_id=room, patient_id=patient,
    )


class TestOverlap:
    def test_room_conflict_inside_existing_slot(self):
        snapshot = _snapshot(_slot(provider=9))
        report = detect_conflicts(snapshot, datetime(2025, 10, 30, 14, 15), 2, 1, policy=POLICY)
        assert report.has_conflict is True
        assert report.kinds == {ConflictKind.ROOM}
        assert "Room 1" in report.reasons[0]

    def test_candidate_at_slot_end_does_not_conflict(self):
        snapshot = _snapshot(_slot())
        report = detect_conflicts(snapshot, datetime(2025, 10, 30, 14, 30), 1, 1, policy=POLICY)
        assert report.has_conflict is False
        assert report.conflicts == ()

    def test_candidate_ending_at_slot_start_does_not_conflict(self):
        snapshot = _snapshot(_slot())
        report = detect_conflicts(snapshot, datetime(2025, 10, 30, 13, 30), 1, 1, policy=POLICY)
        assert report.has_conflict is False

    def test_one_minute_overlap_conflicts(self):
        snapshot = _snapshot(_slot())
        report = detect_conflicts(snapshot, datetime(2025, 10, 30, 14, 29), 1, 1, policy=POLICY)
        assert report.has_conflict is True

    def test_slot_duration_drives_end(self):
        snapshot = _snapshot(_slot(minutes=60))
        report = detect_conflicts(snapshot, datetime(2025, 10, 30, 14, 45), 2, 1, policy=POLICY)
        assert report.has_conflict is True


class TestConflictClasses:
    def test_all_three_classes_fire_for_one_slot(self):
        snapshot = _snapshot(_slot(patient=42))
        report = detect_conflicts(snapshot, BASE, 1, 1, 42, policy=POLICY)
        assert [c.kind for c in report.conflicts] == [
            ConflictKind.PATIENT, ConflictKind.ROOM, ConflictKind.PROVIDER,
        ]
        assert len(report.reasons) == 3

    def test_patient_double_booking_in_another_room(self):
        snapshot = _snapshot(_slot(room=2, provider=2, patient=42))
        report = detect_conflicts(snapshot, BASE, 1, 1, 42, policy=POLICY)
        assert report.kinds == {ConflictKind.PATIENT}
        assert report.has_conflict is True

    def test_different_room_and_provider_is_free(self):
        snapshot = _snapshot(_slot(room=2, provider=2))
        report = detect_conflicts(snapshot, BASE, 1, 1, policy=POLICY)
        assert report.has_conflict is False

    @pytest.mark.parametrize("room,provider", [(1, 2), (2, 1)])
    def test_symmetric_under_id_swap(self, room, provider):
        original = detect_conflicts(
            _snapshot(_slot(room=room, provider=provider)), BASE, provider, room, policy=POLICY,
        )
        swapped = detect_conflicts(
            _snapshot(_slot(room=provider, provider=room)), BASE, room, provider, policy=POLICY,
        )
        assert original.kinds == swapped.kinds == {ConflictKind.ROOM, ConflictKind.PROVIDER}


class TestSuggestions:
    def test_free_room_suggested(self):
        snapshot = _snapshot(_slot(provider=9))
        report = detect_conflicts(snapshot, BASE, 1, 1, policy=POLICY)
        assert report.alternative_room_id == 2
        assert "Room 2 (Op 2) is free at this time" in report.suggestions

    def test_free_provider_suggested(self):
        snapshot = _snapshot(_slot(room=9))
        report = detect_conflicts(snapshot, BASE, 1, 1, policy=POLICY)
        assert report.alternative_provider_id == 2
        assert "Dr. 2 (provider 2) is free at this time" in report.suggestions

    def test_no_alternative_when_everything_busy(self):
        snapshot = _snapshot(
            _slot(room=1, provider=1, apt=1), _slot(room=2, provider=2, apt=2),
        )
        report = detect_conflicts(snapshot, BASE, 1, 1, policy=POLICY)
        assert report.alternative_room_id is None
        assert report.alternative_provider_id is None
        assert report.has_conflict is True


class TestPolicy:
    def test_disabled_policy_reports_nothing(self):
        snapshot = _snapshot(_slot())
        report = detect_conflicts(
            snapshot, BASE, 1, 1, policy=ConflictPolicy(enabled=False),
        )
        assert report.has_conflict is False
        assert report.conflicts == ()

    def test_allow_double_booking_reports_without_blocking(self):
        snapshot = _snapshot(_slot())
        report = detect_conflicts(
            snapshot, BASE, 1, 1,
            policy=ConflictPolicy(enabled=True, allow_double_booking=True),
        )
        assert report.has_conflict is False
        assert report.conflicts

    def test_room_check_can_be_switched_off(self):
        snapshot = _snapshot(_slot(provider=9))
        report = detect_conflicts(
            snapshot, BASE, 1, 1, policy=ConflictPolicy(enabled=True, check_room=False),
        )
        assert report.has_conflict is False
