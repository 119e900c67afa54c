"""Shared test fixtures for the booking agent test suite."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")


# Monday
FIXED_NOW = datetime(2026, 3, 2, 9, 0)

PROVIDERS = [
    {"ProvNum": 1, "FName": "Sarah", "LName": "Chen", "Abbr": "SC"},
    {"ProvNum": 2, "FName": "Omar", "LName": "Patel", "Abbr": "OP"},
]
OPERATORIES = [
    {"OperatoryNum": 1, "OpName": "Op 1", "Abbrev": "Op1"},
    {"OperatoryNum": 2, "OpName": "Hygiene 2", "Abbrev": "Hyg2", "IsHygiene": 1},
]


class FakeExecutor:
    """In-memory stand-in for the booking backend.

    ``responses`` maps a function name to a value, an exception instance
    (raised), or a callable taking the parameters.
    """

    def __init__(self, responses: dict[str, Any] | None = None):
        self.responses: dict[str, Any] = {
            "GetProviders": PROVIDERS,
            "GetOperatories": OPERATORIES,
            "GetAppointments": [],
        }
        self.responses.update(responses or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def execute(self, function_name: str, parameters: dict[str, Any]) -> Any:
        self.calls.append((function_name, dict(parameters)))
        response = self.responses.get(function_name, {"ok": True})
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(parameters)
        return response

    def called(self, function_name: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == function_name]


class ScriptedLLM:
    """Async chat model double that replays a fixed list of responses."""

    def __init__(self, responses: list):
        self._responses = list(responses)
        self.prompts: list[list] = []

    async def ainvoke(self, messages, *args, **kwargs):
        self.prompts.append(list(messages))
        if not self._responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def scripted_llm():
    """Factory: ``scripted_llm([AIMessage(...), ...])``."""
    return ScriptedLLM
