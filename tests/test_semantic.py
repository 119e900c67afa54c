"""Tests for the model-based fallback extractor."""

from __future__ import annotations

from datetime import datetime

import pytest
from langchain_core.messages import AIMessage

from booking_agent.extraction.semantic import SemanticExtractor, parse_extraction
from booking_agent.models import Intent, Message, Role

NOW = datetime(2026, 3, 2, 9, 0)


class TestParseExtraction:
    def test_valid_json(self):
        extraction = parse_extraction(
            '{"patient": {"first_name": "Ana", "phone": "(858) 555-0000"},'
            ' "appointment": {"preferred_date": "2026-03-05", "preferred_time": "Morning"},'
            ' "intent": "book", "confidence": 0.9}'
        )
        assert extraction.patient.first_name == "Ana"
        assert extraction.patient.phone == "8585550000"
        assert extraction.appointment.preferred_time == "morning"
        assert extraction.intent is Intent.BOOK
        assert extraction.confidence == 0.9

    def test_code_fence_is_stripped(self):
        extraction = parse_extraction('```json\n{"confidence": 0.7, "intent": "cancel"}\n```')
        assert extraction.intent is Intent.CANCEL

    def test_not_json_is_empty(self):
        extraction = parse_extraction("Sorry, I can't help with that.")
        assert extraction.confidence == 0.0
        assert extraction.to_patch() == {}

    def test_schema_mismatch_is_empty(self):
        extraction = parse_extraction('{"confidence": 7, "intent": "book"}')
        assert extraction.confidence == 0.0
        assert extraction.intent is Intent.UNKNOWN

    def test_bad_values_are_dropped(self):
        extraction = parse_extraction(
            '{"patient": {"birthdate": "sometime", "first_name": "  "},'
            ' "appointment": {"preferred_time": "25:99"}, "confidence": 0.8}'
        )
        assert extraction.patient.birthdate is None
        assert extraction.patient.first_name is None
        assert extraction.appointment.preferred_time is None


class TestToPatch:
    def test_only_found_values(self):
        extraction = parse_extraction(
            '{"patient": {"last_name": "Ruiz"}, "intent": "unknown", "confidence": 0.8}'
        )
        assert extraction.to_patch(0.5) == {"patient": {"last_name": "Ruiz"}}

    def test_below_threshold_is_empty(self):
        extraction = parse_extraction('{"patient": {"last_name": "Ruiz"}, "confidence": 0.3}')
        assert extraction.to_patch(0.5) == {}


class TestSemanticExtractor:
    @pytest.mark.asyncio
    async def test_one_request_with_current_date(self, scripted_llm):
        llm = scripted_llm([AIMessage(content='{"patient": {"last_name": "Ruiz"}, "confidence": 0.9}')])
        extractor = SemanticExtractor(llm, min_confidence=0.5)
        messages = [Message(role=Role.USER, text="it's Ruiz, R-U-I-Z", timestamp=NOW)]

        extraction = await extractor.extract(messages, ["LName"], NOW)

        assert extraction.patient.last_name == "Ruiz"
        assert len(llm.prompts) == 1
        prompt = llm.prompts[0][0].content
        assert "2026-03-02" in prompt
        assert "LName" in prompt
        assert "R-U-I-Z" in prompt

    @pytest.mark.asyncio
    async def test_unparseable_output_degrades(self, scripted_llm):
        extractor = SemanticExtractor(scripted_llm([AIMessage(content="no idea")]))
        extraction = await extractor.extract([], ["LName"], NOW)
        assert extraction.to_patch() == {}

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, scripted_llm):
        extractor = SemanticExtractor(scripted_llm([ConnectionError("boom")]))
        with pytest.raises(ConnectionError):
            await extractor.extract([], ["LName"], NOW)
