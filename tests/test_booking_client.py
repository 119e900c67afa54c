"""Tests for the booking API client and the retry helper."""

from __future__ import annotations

import json

import httpx
import pytest

from booking_agent.services.booking_client import BookingAPIClient, BookingAPIError
from booking_agent.services.retry import RetryExhaustedError, retry_with_backoff


def _client(handler) -> BookingAPIClient:
    return BookingAPIClient(
        "http://booking.test", "secret",
        path="/api/booking",
        initial_backoff=0,
        transport=httpx.MockTransport(handler),
    )


class TestRequestShape:
    @pytest.mark.asyncio
    async def test_posts_function_name_and_parameters(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"PatNum": 17}])

        client = _client(handler)
        result = await client.execute("GetMultiplePatients", {"LName": "Smith"})
        await client.aclose()

        assert result == [{"PatNum": 17}]
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/booking"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content) == {
            "functionName": "GetMultiplePatients",
            "parameters": {"LName": "Smith"},
        }


class TestRetries:
    @pytest.mark.asyncio
    async def test_5xx_retried_then_succeeds(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503, json={"message": "busy"})
            return httpx.Response(200, json={"AptNum": 9})

        client = _client(handler)
        assert await client.execute("CreateAppointment", {}) == {"AptNum": 9}
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_5xx_exhausted_is_retryable_error(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(500, json={"message": "db down"})

        client = _client(handler)
        with pytest.raises(BookingAPIError) as exc_info:
            await client.execute("GetAvailableSlots", {})
        assert len(attempts) == 3
        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeout_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json=[])

        client = _client(handler)
        assert await client.execute("GetProviders", {}) == []
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_dropped_connection_retried_then_retryable_error(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ReadError("connection reset", request=request)

        client = _client(handler)
        with pytest.raises(BookingAPIError) as exc_info:
            await client.execute("GetAppointments", {"PatNum": 17})
        assert len(attempts) == 3
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_unreadable_body_is_booking_error_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(200, text="<html>gateway</html>")

        client = _client(handler)
        with pytest.raises(BookingAPIError) as exc_info:
            await client.execute("CreateAppointment", {"PatNum": 17})
        assert len(attempts) == 1
        assert "gateway" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(
                409, json={"message": "Operatory in use", "hint": "Try a different room"},
            )

        client = _client(handler)
        with pytest.raises(BookingAPIError) as exc_info:
            await client.execute("CreateAppointment", {})
        assert len(attempts) == 1
        assert exc_info.value.hint == "Try a different room"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_validation_body_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(
                200, json={"error": True, "validationError": True, "message": "bad phone"},
            )

        client = _client(handler)
        with pytest.raises(BookingAPIError) as exc_info:
            await client.execute("CreatePatient", {})
        assert len(attempts) == 1
        assert exc_info.value.validation is True


class TestRetryHelper:
    @pytest.mark.asyncio
    async def test_backoff_doubles_and_stops(self):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        async def always_fails():
            raise ConnectionError("nope")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_with_backoff(
                always_fails, retry_on=lambda e: True,
                max_attempts=4, initial_backoff=1.0, sleep=fake_sleep,
            )
        assert delays == [1.0, 2.0, 4.0]
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, ConnectionError)

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        calls = 0

        async def fails():
            nonlocal calls
            calls += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_with_backoff(fails, retry_on=lambda e: False)
        assert calls == 1
