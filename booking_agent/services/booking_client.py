"""Async HTTP client for the practice-management booking API.

Every operation is a single ``POST`` of ``{"functionName", "parameters"}``
to one endpoint; the backend dispatches on ``functionName``.  The client
is the orchestration loop's *tool executor*: it knows nothing about
sessions or conversation state, only how to call the backend and how to
classify its failures.

Failure classes:
  * transport errors (timeouts, refused connections) and 5xx responses are
    retried with exponential backoff, then surface as a retryable
    ``BookingAPIError``;
  * 4xx responses and bodies flagged ``validationError`` are raised
    immediately and are never retried.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Protocol

import httpx

from booking_agent.config import BOOKING_API_BASE_URL, BOOKING_API_KEY, BOOKING_API_PATH
from booking_agent.services.metrics import metrics
from booking_agent.services.retry import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0


class BookingAPIError(Exception):
    """Raised when a booking API call fails.

    ``hint`` carries the backend's remediation text (if any) so it can be
    shown to the model; ``validation`` marks failures that need new input
    rather than another attempt.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        hint: str | None = None,
        validation: bool = False,
    ):
        self.status_code = status_code
        self.hint = hint
        self.validation = validation
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        if self.validation:
            return False
        return self.status_code is None or self.status_code >= 500


class ToolExecutor(Protocol):
    """Anything that can run a named backend function."""

    async def execute(self, function_name: str, parameters: dict[str, Any]) -> Any: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, BookingAPIError) and exc.retryable


class BookingAPIClient:
    """Thin async wrapper around the booking endpoint with automatic retries."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        path: str | None = None,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Content-Type": "application/json"}
        token = api_key or BOOKING_API_KEY
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._path = path or BOOKING_API_PATH
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff
        self._client = httpx.AsyncClient(
            base_url=base_url or BOOKING_API_BASE_URL,
            headers=headers,
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _post_once(self, function_name: str, parameters: dict[str, Any]) -> Any:
        response = await self._client.post(
            self._path,
            json={"functionName": function_name, "parameters": parameters},
        )
        if response.status_code >= 400:
            body = _safe_json(response)
            raise BookingAPIError(
                f"{function_name} returned {response.status_code}: {_error_text(body, response)}",
                status_code=response.status_code,
                hint=body.get("hint") if isinstance(body, dict) else None,
                validation=bool(isinstance(body, dict) and body.get("validationError")),
            )

        try:
            data = response.json()
        except ValueError as exc:
            # The call may already have taken effect; never retried
            logger.warning(
                "Booking API %s returned a non-JSON body (status %s): %.200s",
                function_name, response.status_code, response.text,
            )
            raise BookingAPIError(
                f"{function_name} returned an unreadable response",
                status_code=response.status_code,
            ) from exc
        # The backend reports validation failures with a 200 and an error body
        if isinstance(data, dict) and data.get("error") is True:
            raise BookingAPIError(
                f"{function_name} rejected: {data.get('message', 'unknown error')}",
                status_code=response.status_code,
                hint=data.get("hint"),
                validation=bool(data.get("validationError")),
            )
        return data

    # ── Public API ───────────────────────────────────────────────────

    async def execute(self, function_name: str, parameters: dict[str, Any]) -> Any:
        """Run one backend function and return its decoded JSON result.

        Raises:
            BookingAPIError: the backend rejected the call, or every retry
                of a transient failure was exhausted.
        """
        t0 = time.perf_counter()
        try:
            result = await retry_with_backoff(
                lambda: self._post_once(function_name, parameters),
                retry_on=_is_transient,
                max_attempts=self._max_retries,
                initial_backoff=self._initial_backoff,
                label=f"Booking API {function_name}",
            )
        except RetryExhaustedError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "booking_api", function_name,
                error_type=type(exc.last_error).__name__, latency_ms=elapsed,
            )
            status = getattr(exc.last_error, "status_code", None)
            raise BookingAPIError(
                f"Booking API {function_name} failed after {exc.attempts} attempts: "
                f"{exc.last_error}",
                status_code=status,
            ) from exc
        except BookingAPIError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "booking_api", function_name,
                error_type="validation" if exc.validation else f"http_{exc.status_code}",
                latency_ms=elapsed,
            )
            raise

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("booking_api", function_name, latency_ms=elapsed)
        logger.debug("Booking API %s ok (%.0fms)", function_name, elapsed)
        return result


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _error_text(body: Any, response: httpx.Response) -> str:
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:200]


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: BookingAPIClient | None = None
_client_lock = threading.Lock()


def get_booking_client() -> BookingAPIClient:
    """Return a module-level BookingAPIClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = BookingAPIClient()
    return _client
