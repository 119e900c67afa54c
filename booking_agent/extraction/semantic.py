"""Model-based fallback extraction for fields the patterns could not find.

The orchestration loop calls ``SemanticExtractor.extract`` only when a
specific tool call is still missing required parameters after pattern
extraction and auto-fill.  Each call makes exactly one model request.

Output that is not JSON, or JSON that does not fit ``SemanticExtraction``,
becomes an empty zero-confidence extraction; the loop then asks the user.
Transport failures from the model boundary are not caught here.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import date, datetime
from typing import Any

from langchain_core.messages import HumanMessage
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from booking_agent.config import FALLBACK_MIN_CONFIDENCE
from booking_agent.extraction.patterns import extract_phone
from booking_agent.llm import build_fast_llm, content_text
from booking_agent.models import Intent, Message, Role
from booking_agent.prompts import get_extraction_prompt
from booking_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_PERIODS = {"morning", "afternoon", "evening"}


def _iso_date_or_none(value: Any) -> str | None:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)).isoformat()
    except ValueError:
        return None


class SemanticPatient(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    birthdate: str | None = None
    is_new_patient: bool | None = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("phone", mode="before")
    @classmethod
    def _digits_only(cls, value: Any) -> str | None:
        return extract_phone(str(value)) if value not in (None, "") else None

    @field_validator("birthdate", mode="before")
    @classmethod
    def _iso_birthdate(cls, value: Any) -> str | None:
        return _iso_date_or_none(value)


class SemanticAppointment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    appointment_type: str | None = None
    preferred_date: str | None = None
    preferred_time: str | None = None

    @field_validator("preferred_date", mode="before")
    @classmethod
    def _iso_preferred(cls, value: Any) -> str | None:
        return _iso_date_or_none(value)

    @field_validator("preferred_time", mode="before")
    @classmethod
    def _known_time(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        value = value.strip().lower()
        return value if value in _PERIODS or _TIME_RE.match(value) else None


class SemanticExtraction(BaseModel):
    """The fixed JSON shape the model is asked to return."""

    model_config = ConfigDict(extra="ignore")

    patient: SemanticPatient = Field(default_factory=SemanticPatient)
    appointment: SemanticAppointment = Field(default_factory=SemanticAppointment)
    intent: Intent = Intent.UNKNOWN
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @classmethod
    def empty(cls) -> SemanticExtraction:
        return cls()

    def to_patch(self, min_confidence: float = 0.0) -> dict[str, Any]:
        """State patch with only the found values, or ``{}`` below threshold."""
        if self.confidence <= 0 or self.confidence < min_confidence:
            return {}
        patch: dict[str, Any] = {}
        patient = self.patient.model_dump(exclude_none=True)
        appointment = self.appointment.model_dump(exclude_none=True)
        if patient:
            patch["patient"] = patient
        if appointment:
            patch["appointment"] = appointment
        if self.intent is not Intent.UNKNOWN:
            patch["intent"] = self.intent
        return patch


def parse_extraction(raw: str) -> SemanticExtraction:
    """Parse model output; anything unusable yields an empty extraction."""
    text = _FENCE_RE.sub("", raw.strip())
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end < start:
        logger.warning("Semantic extraction returned no JSON object")
        return SemanticExtraction.empty()
    try:
        return SemanticExtraction.model_validate(json.loads(text[start : end + 1]))
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.warning("Semantic extraction unparseable: %s", type(exc).__name__)
        return SemanticExtraction.empty()


def _render_conversation(messages: list[Message]) -> str:
    speaker = {Role.USER: "Patient", Role.ASSISTANT: "Assistant", Role.SYSTEM: "System"}
    return "\n".join(f"{speaker[m.role]}: {m.text}" for m in messages)


class SemanticExtractor:
    def __init__(self, llm=None, *, min_confidence: float | None = None):
        self._llm = llm or build_fast_llm()
        self.min_confidence = (
            FALLBACK_MIN_CONFIDENCE if min_confidence is None else min_confidence
        )

    async def extract(
        self,
        messages: list[Message],
        missing: list[str],
        now: datetime,
    ) -> SemanticExtraction:
        prompt = get_extraction_prompt(_render_conversation(messages), missing, now)
        t0 = time.perf_counter()
        try:
            response = await self._llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "semantic_extract",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "semantic_extract", latency_ms=elapsed)

        extraction = parse_extraction(content_text(response.content))
        logger.debug(
            "Semantic extraction for %s: confidence=%.2f (%.0fms)",
            missing, extraction.confidence, elapsed,
        )
        return extraction
