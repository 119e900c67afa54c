"""Tests for the truthfulness guard helpers."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from booking_agent.models import Session, ToolCallRecord
from booking_agent.tools.guard import (
    ClaimKind,
    correct_reply,
    detect_claims,
    match_slot,
    parse_slots,
    strip_claims,
    unsupported_claims,
)

NOW = datetime(2026, 3, 2, 9, 0)
TODAY = date(2026, 3, 2)

RAW_SLOTS = [
    {"DateTimeStart": "2026-03-03 09:00:00", "ProvNum": 1, "OpNum": 1, "ProviderName": "Sarah Chen"},
    {"DateTimeStart": "2026-03-03 14:00:00", "ProvNum": 1, "OpNum": 1, "ProviderName": "Sarah Chen"},
    {"DateTimeStart": "2026-03-03 14:30:00", "ProvNum": 2, "OpNum": 2, "ProviderName": "Omar Patel"},
    {"DateTimeStart": "2026-03-04 14:00:00", "ProvNum": 2, "OpNum": 2, "ProviderName": "Omar Patel"},
]


def _session(*records: ToolCallRecord) -> Session:
    return Session(session_id="s1", created_at=NOW, updated_at=NOW, tool_calls=list(records))


def _record(tool: str, *, ok: bool = True) -> ToolCallRecord:
    return ToolCallRecord(
        timestamp=NOW, tool_name=tool, result={"AptNum": 1} if ok else None,
        error=None if ok else {"error": True},
    )


class TestClaims:
    @pytest.mark.parametrize("text,kind", [
        ("You're all set, booked!", ClaimKind.BOOK),
        ("I've booked you in for Tuesday.", ClaimKind.BOOK),
        ("Your appointment is confirmed for 2pm.", ClaimKind.BOOK),
        ("Your appointment has been rescheduled.", ClaimKind.RESCHEDULE),
        ("Your appointment has been cancelled.", ClaimKind.CANCEL),
        ("You're all set!", ClaimKind.GENERIC),
    ])
    def test_detects_success_language(self, text, kind):
        assert kind in detect_claims(text)

    @pytest.mark.parametrize("text", [
        "Would you like me to book the 2pm slot?",
        "I can reschedule that for you once you pick a time.",
        "Here are the available times.",
    ])
    def test_questions_and_offers_are_not_claims(self, text):
        assert detect_claims(text) == set()

    def test_claim_without_tool_call_is_unsupported(self):
        assert unsupported_claims("You're all set, booked!", _session()) == {
            ClaimKind.BOOK, ClaimKind.GENERIC,
        }

    def test_failed_call_does_not_support_claim(self):
        session = _session(_record("CreateAppointment", ok=False))
        assert unsupported_claims("I've booked you in.", session) == {ClaimKind.BOOK}

    def test_successful_call_supports_claim(self):
        session = _session(_record("CreateAppointment"))
        assert unsupported_claims("You're all set, booked!", session) == set()

    def test_cancel_does_not_support_booking_claim(self):
        session = _session(_record("BreakAppointment"))
        assert unsupported_claims("I've booked you in.", session) == {ClaimKind.BOOK}


class TestStripping:
    def test_claim_sentence_removed(self):
        text = "Great news. I've booked you in for 2pm. See you soon!"
        assert strip_claims(text) == "Great news. See you soon!"

    def test_correct_reply_asks_for_confirmation(self):
        slots = parse_slots(RAW_SLOTS)
        reply = correct_reply("You're all set, booked!", {ClaimKind.BOOK, ClaimKind.GENERIC}, slots)
        assert "booked" not in reply.lower()
        assert "all set" not in reply.lower()
        assert "confirm exactly which time" in reply
        assert "Tuesday, March 3 at 9:00 AM with Sarah Chen" in reply

    def test_cancel_confirmation(self):
        reply = correct_reply("It has been cancelled.", {ClaimKind.CANCEL}, [])
        assert "cancel your appointment" in reply
        assert not detect_claims(reply)


class TestMatchSlot:
    def setup_method(self):
        self.slots = parse_slots(RAW_SLOTS)

    def test_parse_skips_malformed(self):
        assert len(parse_slots(RAW_SLOTS + [{"DateTimeStart": "soon"}])) == 4

    def test_ordinal(self):
        assert match_slot("the first one please", self.slots, TODAY) == self.slots[0]
        assert match_slot("I'll take the last option", self.slots, TODAY) == self.slots[-1]

    def test_exact_time_and_day(self):
        chosen = match_slot("2:30 tomorrow works", self.slots, TODAY)
        assert chosen == self.slots[2]

    def test_hour_prefers_on_the_hour_but_needs_day(self):
        # 2pm exists on two days
        assert match_slot("2pm please", self.slots, TODAY) is None
        assert match_slot("2pm on Wednesday", self.slots, TODAY) == self.slots[3]

    def test_provider_name_disambiguates(self):
        assert match_slot("2pm with Dr. Patel", self.slots, TODAY) == self.slots[3]

    def test_no_time_no_match(self):
        assert match_slot("yes that sounds good", self.slots, TODAY) is None

    def test_unknown_time(self):
        assert match_slot("how about 11am", self.slots, TODAY) is None
