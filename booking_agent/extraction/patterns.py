"""Deterministic entity extraction from a single user utterance.

Each ``extract_*`` function is a prioritized list of independent regex
matchers and returns ``None`` when nothing matches; none of them ever
returns an empty string.  ``extract_entities`` runs the whole family and
builds a patch containing only the fields that were found, which is what
``ConversationStore.update`` expects.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Any, NamedTuple

from booking_agent.models import Intent


class ExtractedName(NamedTuple):
    first_name: str
    last_name: str | None = None


# ── Shared tables ────────────────────────────────────────────────────

_MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

_WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}

# Words that follow "I'm" / "this is" but are not names
_NOT_NAMES = frozenset({
    "a", "about", "after", "also", "am", "an", "and", "any", "available", "back",
    "booking", "busy", "calling", "checking", "currently", "do", "fine", "for",
    "free", "from", "going", "good", "great", "having", "hoping", "i", "in",
    "interested", "just", "looking", "me", "my", "new", "not", "now", "ok",
    "okay", "on", "only", "patient", "really", "ready", "regarding", "running",
    "scheduled", "so", "sorry", "still", "sure", "the", "thinking", "to",
    "trying", "unable", "very", "wanting", "wondering", "yes", "your",
})

_NAME = r"([A-Za-z][A-Za-z'\-]*)"

# (pattern, requires_capitalized) in priority order
_FULL_NAME_PATTERNS = [
    (re.compile(rf"\bmy name is\s+{_NAME}\s+{_NAME}", re.I), False),
    (re.compile(rf"\bname'?s\s+{_NAME}\s+{_NAME}", re.I), False),
    (re.compile(rf"\bi'?m\s+{_NAME}\s+{_NAME}", re.I), True),
    (re.compile(rf"\bthis is\s+{_NAME}\s+{_NAME}", re.I), True),
    (re.compile(rf"\bname is\s+{_NAME}\s+{_NAME}", re.I), False),
    (re.compile(rf"\bi am\s+{_NAME}\s+{_NAME}", re.I), True),
    (re.compile(rf"^\s*{_NAME}\s+{_NAME}\s+here\b", re.I), False),
]
_SINGLE_NAME_PATTERNS = [
    (re.compile(rf"\bmy name is\s+{_NAME}", re.I), False),
    (re.compile(rf"\bcall me\s+{_NAME}", re.I), False),
    (re.compile(rf"\bi'?m\s+{_NAME}", re.I), True),
    (re.compile(rf"\bthis is\s+{_NAME}", re.I), True),
    (re.compile(rf"\bi am\s+{_NAME}", re.I), True),
]


# ── Name ─────────────────────────────────────────────────────────────


def _valid_name(token: str, require_capital: bool) -> bool:
    if token.lower() in _NOT_NAMES or len(token) < 2:
        return False
    return token[0].isupper() or not require_capital


def _normalize_name(token: str) -> str:
    return token.capitalize() if token.islower() else token


def extract_name(text: str) -> ExtractedName | None:
    for pattern, needs_capital in _FULL_NAME_PATTERNS:
        match = pattern.search(text)
        if match and all(_valid_name(t, needs_capital) for t in match.groups()):
            first, last = match.groups()
            return ExtractedName(_normalize_name(first), _normalize_name(last))

    for pattern, needs_capital in _SINGLE_NAME_PATTERNS:
        match = pattern.search(text)
        if match and _valid_name(match.group(1), needs_capital):
            return ExtractedName(_normalize_name(match.group(1)))
    return None


# ── Phone ────────────────────────────────────────────────────────────

_PHONE_RE = re.compile(
    r"(?<!\d)(?:\+?1[\s.\-]?)?\(?(\d{3})\)?[\s.\-]?(\d{3})[\s.\-]?(\d{4})(?!\d)"
)


def extract_phone(text: str) -> str | None:
    """Return a 10-digit phone number (digits only) or ``None``."""
    match = _PHONE_RE.search(text)
    if match:
        return "".join(match.groups())

    digits = re.sub(r"\D", "", text)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) == 10 else None


# ── Birthdate ────────────────────────────────────────────────────────

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_DATE_RE = re.compile(r"\b(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})\b")
_US_SHORT_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{2})\b")
_MONTH_FIRST_RE = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.I,
)
_DAY_FIRST_RE = re.compile(
    rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?({_MONTH_ALT})\.?,?\s+(\d{{4}})\b", re.I,
)


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _expand_two_digit_year(yy: int) -> int:
    return 1900 + yy if yy >= 50 else 2000 + yy


def _birthdate_candidates(text: str):
    for m in _ISO_DATE_RE.finditer(text):
        yield _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    for m in _US_DATE_RE.finditer(text):
        yield _safe_date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    for m in _US_SHORT_DATE_RE.finditer(text):
        yield _safe_date(_expand_two_digit_year(int(m.group(3))), int(m.group(1)), int(m.group(2)))
    for m in _MONTH_FIRST_RE.finditer(text):
        yield _safe_date(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)))
    for m in _DAY_FIRST_RE.finditer(text):
        yield _safe_date(int(m.group(3)), _MONTHS[m.group(2).lower()], int(m.group(1)))


def extract_birthdate(text: str, today: date | None = None) -> str | None:
    """Return the first plausible birthdate as ``YYYY-MM-DD``.

    Dates in the future or before 1900 are not birthdates and are skipped.
    """
    today = today or date.today()
    for candidate in _birthdate_candidates(text):
        if candidate is not None and date(1900, 1, 1) <= candidate < today:
            return candidate.isoformat()
    return None


# ── Appointment type ─────────────────────────────────────────────────

_APPOINTMENT_TYPES = [
    (r"cleaning|clean(?:ed)?", "cleaning"),
    (r"check-?ups?|check up|exams?|examination", "checkup"),
    (r"fillings?|cavit(?:y|ies)", "filling"),
    (r"crowns?", "crown"),
    (r"root canals?", "root canal"),
    (r"extractions?|extract(?:ed)?|pull(?:ed)?(?: out)? (?:a |my |the |this )?(?:tooth|teeth)|(?:tooth|teeth) pulled", "extraction"),
    (r"whitening|whiten(?:ed)?", "whitening"),
    (r"emergency|toothache", "emergency"),
]
_TYPE_PATTERNS = [
    (re.compile(r"\b(?:" + keywords + r")\b", re.I), label)
    for keywords, label in _APPOINTMENT_TYPES
]


def extract_appointment_type(text: str) -> str | None:
    for pattern, label in _TYPE_PATTERNS:
        if pattern.search(text):
            return label
    return None


# ── Date preference ──────────────────────────────────────────────────

_NUMERIC_DAY_RE = re.compile(r"(?<![\d/])(\d{1,2})/(\d{1,2})(?:/(\d{2}|\d{4}))?(?![\d/])")
_MONTH_DAY_RE = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s+(\d{{4}}))?", re.I,
)
_DAY_OF_MONTH_RE = re.compile(
    rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+of\s+({_MONTH_ALT})\b(?:,?\s+(\d{{4}}))?", re.I,
)
_WEEKDAY_RE = re.compile(
    r"\b(?:(next|this|coming)\s+)?(" + "|".join(_WEEKDAYS) + r")\b", re.I,
)


def _future_date(reference: date, month: int, day: int, year: int | None) -> date | None:
    """Resolve month/day to a date on or after ``reference``.

    Without a year the date rolls into next year once it has passed; with
    an explicit past year it is not a scheduling preference at all.
    """
    if year is not None:
        resolved = _safe_date(year, month, day)
        return resolved if resolved is not None and resolved >= reference else None
    resolved = _safe_date(reference.year, month, day)
    if resolved is not None and resolved < reference:
        resolved = _safe_date(reference.year + 1, month, day)
    return resolved


def _weekday_date(reference: date, weekday: int, qualifier: str | None) -> date:
    days_ahead = (weekday - reference.weekday()) % 7
    if days_ahead == 0 and qualifier != "this":
        days_ahead = 7
    if qualifier == "next":
        days_ahead += 7 if days_ahead < 7 else 0
    return reference + timedelta(days=days_ahead)


def extract_date_preference(text: str, reference: date) -> str | None:
    """Resolve a requested appointment day relative to ``reference``."""
    for m in _NUMERIC_DAY_RE.finditer(text):
        year = m.group(3)
        if year is not None:
            year = _expand_two_digit_year(int(year)) if len(year) == 2 else int(year)
        resolved = _future_date(reference, int(m.group(1)), int(m.group(2)), year)
        if resolved:
            return resolved.isoformat()

    for m in _MONTH_DAY_RE.finditer(text):
        year = int(m.group(3)) if m.group(3) else None
        resolved = _future_date(reference, _MONTHS[m.group(1).lower()], int(m.group(2)), year)
        if resolved:
            return resolved.isoformat()

    for m in _DAY_OF_MONTH_RE.finditer(text):
        year = int(m.group(3)) if m.group(3) else None
        resolved = _future_date(reference, _MONTHS[m.group(2).lower()], int(m.group(1)), year)
        if resolved:
            return resolved.isoformat()

    lower = text.lower()
    if re.search(r"\bday after tomorrow\b", lower):
        return (reference + timedelta(days=2)).isoformat()
    if re.search(r"\btomorrow\b", lower):
        return (reference + timedelta(days=1)).isoformat()
    if re.search(r"\btoday\b", lower):
        return reference.isoformat()

    m = _WEEKDAY_RE.search(text)
    if m:
        qualifier = m.group(1).lower() if m.group(1) else None
        weekday = _WEEKDAYS[m.group(2).lower()]
        return _weekday_date(reference, weekday, qualifier).isoformat()
    return None


# ── Time preference ──────────────────────────────────────────────────

_MERIDIEM_TIME_RE = re.compile(
    r"\b(\d{1,2})(?::([0-5]\d))?\s*([ap])\.?\s?m\b\.?", re.I,
)
_CLOCK_TIME_RE = re.compile(r"(?<![\d/:])(\d{1,2}):([0-5]\d)(?![\d:])")
_AT_HOUR_RE = re.compile(r"\bat\s+(\d{1,2})(?:\s*o'?clock)?(?![\d:/])", re.I)
_PERIODS = ("morning", "afternoon", "evening")

# Office hours: a bare "3:00" means the afternoon
_ASSUME_PM_HOURS = range(1, 7)


def _clock(hour: int, minute: int) -> str | None:
    if 0 <= hour <= 23 and 0 <= minute <= 59:
        return f"{hour:02d}:{minute:02d}"
    return None


def parse_clock_time(text: str) -> tuple[int, int | None] | None:
    """Find an explicit clock time; returns ``(hour24, minute_or_None)``.

    ``minute`` is ``None`` when the utterance named only an hour
    ("2pm", "at 2"), which lets slot matching fall back to hour-only.
    """
    m = _MERIDIEM_TIME_RE.search(text)
    if m:
        hour = int(m.group(1))
        if not 1 <= hour <= 12:
            return None
        if m.group(3).lower() == "p" and hour != 12:
            hour += 12
        elif m.group(3).lower() == "a" and hour == 12:
            hour = 0
        return hour, int(m.group(2)) if m.group(2) else None

    m = _CLOCK_TIME_RE.search(text)
    if m:
        hour = int(m.group(1))
        if hour in _ASSUME_PM_HOURS:
            hour += 12
        return (hour, int(m.group(2))) if hour <= 23 else None

    m = _AT_HOUR_RE.search(text)
    if m:
        hour = int(m.group(1))
        if not 1 <= hour <= 12:
            return None
        if hour in _ASSUME_PM_HOURS:
            hour += 12
        return hour, None
    return None


def extract_time_preference(text: str) -> str | None:
    """Return ``HH:MM`` for an explicit time, else a named period."""
    parsed = parse_clock_time(text)
    if parsed is not None:
        hour, minute = parsed
        return _clock(hour, minute or 0)

    lower = text.lower()
    if re.search(r"\bnoon\b", lower):
        return "12:00"
    for period in _PERIODS:
        if period in lower:
            return period
    return None


# ── Intent ───────────────────────────────────────────────────────────

_INTENT_PATTERNS = [
    (Intent.RESCHEDULE, re.compile(r"\b(?:reschedul\w*|move|moving|change|push\s+back)\b", re.I)),
    (Intent.CANCEL, re.compile(r"\b(?:cancel\w*|can'?t make it)\b", re.I)),
    (Intent.CHECK, re.compile(
        r"\bcheck\b(?![-\s]?up)|\bwhen(?:'s| is)\b|\bwhat time\b|\bdo i have\b", re.I,
    )),
    (Intent.BOOK, re.compile(r"\b(?:book\w*|appointment|schedul\w*|come in)\b", re.I)),
]

_NEW_PATIENT_RE = re.compile(
    r"\b(?:new patient|i'?m new|i am new|first time|first visit|never been)\b", re.I,
)


def extract_intent(text: str) -> Intent:
    """Coarse intent; the first matching class wins."""
    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(text):
            return intent
    return Intent.UNKNOWN


def extract_new_patient(text: str) -> bool | None:
    return True if _NEW_PATIENT_RE.search(text) else None


# ── Combined pass ────────────────────────────────────────────────────


def extract_entities(text: str, reference: date) -> dict[str, Any]:
    """Run every extractor and return a state patch with only found fields.

    Shape: ``{"patient": {...}, "appointment": {...}, "intent": Intent}``;
    empty sections and an unknown intent are omitted.
    """
    patient: dict[str, Any] = {}
    appointment: dict[str, Any] = {}

    name = extract_name(text)
    if name is not None:
        patient["first_name"] = name.first_name
        if name.last_name is not None:
            patient["last_name"] = name.last_name

    phone = extract_phone(text)
    if phone is not None:
        patient["phone"] = phone

    birthdate = extract_birthdate(text, today=reference)
    if birthdate is not None:
        patient["birthdate"] = birthdate

    if extract_new_patient(text):
        patient["is_new_patient"] = True

    appointment_type = extract_appointment_type(text)
    if appointment_type is not None:
        appointment["appointment_type"] = appointment_type

    # A birthdate is never also the requested appointment day
    preferred_date = extract_date_preference(text, reference)
    if preferred_date is not None and preferred_date != birthdate:
        appointment["preferred_date"] = preferred_date

    preferred_time = extract_time_preference(text)
    if preferred_time is not None:
        appointment["preferred_time"] = preferred_time

    patch: dict[str, Any] = {}
    if patient:
        patch["patient"] = patient
    if appointment:
        patch["appointment"] = appointment
    intent = extract_intent(text)
    if intent is not Intent.UNKNOWN:
        patch["intent"] = intent
    return patch
