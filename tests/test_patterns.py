"""Tests for the deterministic entity extractors."""

from __future__ import annotations

from datetime import date

import pytest

from booking_agent.extraction.patterns import (
    extract_appointment_type,
    extract_birthdate,
    extract_date_preference,
    extract_entities,
    extract_intent,
    extract_name,
    extract_phone,
    extract_time_preference,
    parse_clock_time,
)
from booking_agent.models import Intent

# Monday
REFERENCE = date(2026, 3, 2)


class TestNameExtraction:
    def test_full_name(self):
        name = extract_name("my name is John Smith, 619-555-1234")
        assert name.first_name == "John"
        assert name.last_name == "Smith"

    def test_lowercase_name_is_capitalized(self):
        name = extract_name("my name is jane doe")
        assert (name.first_name, name.last_name) == ("Jane", "Doe")

    def test_single_name(self):
        name = extract_name("you can call me Bob")
        assert name.first_name == "Bob"
        assert name.last_name is None

    def test_im_requires_capitalized_name(self):
        assert extract_name("i'm looking for an appointment") is None
        assert extract_name("i'm just checking") is None

    def test_im_with_capitalized_name(self):
        name = extract_name("Hi, I'm Maria Lopez")
        assert (name.first_name, name.last_name) == ("Maria", "Lopez")

    def test_no_name(self):
        assert extract_name("I need a cleaning tomorrow") is None


class TestPhoneExtraction:
    @pytest.mark.parametrize("text", [
        "619-555-1234",
        "(619) 555-1234",
        "619.555.1234",
        "my number is 6195551234",
        "+1 619 555 1234",
    ])
    def test_formats(self, text):
        assert extract_phone(text) == "6195551234"

    def test_too_short(self):
        assert extract_phone("call 555-1234") is None

    def test_idempotent(self):
        text = "reach me at (619) 555-1234 please"
        assert extract_phone(text) == extract_phone(text)


class TestBirthdateExtraction:
    def test_iso(self):
        assert extract_birthdate("born 1985-03-14", REFERENCE) == "1985-03-14"

    def test_us_slash(self):
        assert extract_birthdate("DOB 3/14/1985", REFERENCE) == "1985-03-14"

    def test_two_digit_year_pivot(self):
        assert extract_birthdate("3/14/85", REFERENCE) == "1985-03-14"
        assert extract_birthdate("3/14/05", REFERENCE) == "2005-03-14"

    def test_month_name(self):
        assert extract_birthdate("March 14th, 1985", REFERENCE) == "1985-03-14"
        assert extract_birthdate("14 of March 1985", REFERENCE) == "1985-03-14"

    def test_future_date_is_not_a_birthdate(self):
        assert extract_birthdate("2030-01-01", REFERENCE) is None

    def test_invalid_calendar_date(self):
        assert extract_birthdate("2/30/1985", REFERENCE) is None


class TestAppointmentType:
    @pytest.mark.parametrize("text,expected", [
        ("I need a cleaning", "cleaning"),
        ("time for my check-up", "checkup"),
        ("I think I have a cavity", "filling"),
        ("my crown fell off", "crown"),
        ("bad toothache", "emergency"),
        ("I need two fillings", "filling"),
        ("can you pull out my tooth", "extraction"),
        ("exams are overdue", "checkup"),
    ])
    def test_keywords(self, text, expected):
        assert extract_appointment_type(text) == expected

    def test_nothing_found(self):
        assert extract_appointment_type("hello there") is None

    @pytest.mark.parametrize("text", [
        "can you pull up my file",
        "I have to fill out the form",
        "for example next week",
        "is the crowning ceremony today",
    ])
    def test_words_containing_keywords_do_not_match(self, text):
        assert extract_appointment_type(text) is None


class TestDatePreference:
    def test_tomorrow_and_today(self):
        assert extract_date_preference("tomorrow please", REFERENCE) == "2026-03-03"
        assert extract_date_preference("today if possible", REFERENCE) == "2026-03-02"
        assert extract_date_preference("the day after tomorrow", REFERENCE) == "2026-03-04"

    def test_weekday(self):
        assert extract_date_preference("on Wednesday", REFERENCE) == "2026-03-04"

    def test_same_weekday_means_next_week(self):
        assert extract_date_preference("monday works", REFERENCE) == "2026-03-09"

    def test_this_weekday_today(self):
        assert extract_date_preference("this monday", REFERENCE) == "2026-03-02"

    def test_next_weekday_skips_a_week(self):
        assert extract_date_preference("next wednesday", REFERENCE) == "2026-03-11"

    def test_month_day_rolls_to_next_year(self):
        assert extract_date_preference("January 5th", REFERENCE) == "2027-01-05"
        assert extract_date_preference("March 10", REFERENCE) == "2026-03-10"

    def test_numeric(self):
        assert extract_date_preference("3/20", REFERENCE) == "2026-03-20"

    def test_explicit_past_year_rejected(self):
        assert extract_date_preference("3/20/2020", REFERENCE) is None

    def test_nothing_found(self):
        assert extract_date_preference("whenever", REFERENCE) is None


class TestTimePreference:
    def test_meridiem(self):
        assert extract_time_preference("at 2pm") == "14:00"
        assert extract_time_preference("10:30 am") == "10:30"
        assert extract_time_preference("12 pm") == "12:00"

    def test_bare_afternoon_hour(self):
        assert extract_time_preference("how about 3:00") == "15:00"

    def test_periods(self):
        assert extract_time_preference("sometime in the morning") == "morning"
        assert extract_time_preference("around noon") == "12:00"

    def test_hour_only_reports_no_minute(self):
        assert parse_clock_time("2pm works") == (14, None)
        assert parse_clock_time("at 9") == (9, None)


class TestIntent:
    @pytest.mark.parametrize("text,expected", [
        ("I want to book a cleaning", Intent.BOOK),
        ("I need to reschedule my appointment", Intent.RESCHEDULE),
        ("please cancel my appointment", Intent.CANCEL),
        ("when is my appointment?", Intent.CHECK),
        ("I'd like a checkup", Intent.UNKNOWN),
        ("hello", Intent.UNKNOWN),
    ])
    def test_first_match_wins(self, text, expected):
        assert extract_intent(text) == expected


class TestExtractEntities:
    def test_name_and_phone(self):
        patch = extract_entities("my name is John Smith, 619-555-1234", REFERENCE)
        assert patch["patient"] == {
            "first_name": "John", "last_name": "Smith", "phone": "6195551234",
        }
        assert "appointment" not in patch
        assert "intent" not in patch

    def test_booking_request(self):
        patch = extract_entities("I'd like to book a cleaning tomorrow at 2pm", REFERENCE)
        assert patch["intent"] is Intent.BOOK
        assert patch["appointment"] == {
            "appointment_type": "cleaning",
            "preferred_date": "2026-03-03",
            "preferred_time": "14:00",
        }

    def test_new_patient_flag(self):
        patch = extract_entities("I'm a new patient", REFERENCE)
        assert patch["patient"]["is_new_patient"] is True

    def test_empty_text(self):
        assert extract_entities("ok", REFERENCE) == {}

    def test_idempotent(self):
        text = "This is Ana Ruiz, 858 555 0000, born 1990-07-04, need a filling Friday morning"
        assert extract_entities(text, REFERENCE) == extract_entities(text, REFERENCE)
