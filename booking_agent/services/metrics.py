"""CloudWatch custom metrics emitter with background batching.

Two kinds of data points are published:

* **External calls** (``record_success`` / ``record_failure``): count,
  latency and error type for every call to the model (``anthropic``) and
  the booking backend (``booking_api``).
* **Loop events** (``increment``): counters for things the orchestration
  loop decides on its own, such as a refused tool call, a rejected
  conflicting booking, a suppressed duplicate mutation, a corrected
  success claim, or an exhausted turn.

Metrics are buffered in memory.  When ``METRICS_ENABLED=true`` a daemon
thread flushes them every ``FLUSH_INTERVAL_SECONDS``; otherwise they are
only logged at DEBUG level and dropped on flush.

Usage
-----
>>> from booking_agent.services.metrics import metrics
>>> metrics.record_success("booking_api", "GetAvailableSlots", latency_ms=84.2)
>>> metrics.increment("GuardCorrection", outcome="stripped")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "BookingAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dims(**dimensions: str) -> list[dict[str, str]]:
    return [{"Name": name, "Value": str(value)} for name, value in dimensions.items()]


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, *, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful external call."""
        self._put("ExternalCall/Count", 1, "Count", Service=service, Status="success")
        self._put(
            "ExternalCall/Latency", latency_ms, "Milliseconds",
            Service=service, Operation=operation,
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed external call."""
        self._put("ExternalCall/Count", 1, "Count", Service=service, Status="failure")
        self._put(
            "ExternalCall/Errors", 1, "Count", Service=service, ErrorType=error_type,
        )
        if latency_ms > 0:
            self._put(
                "ExternalCall/Latency", latency_ms, "Milliseconds",
                Service=service, Operation=operation,
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def increment(self, event: str, **dimensions: str) -> None:
        """Count one orchestration-loop event, e.g. ``increment("ToolRefused", tool=...)``."""
        self._put(f"Loop/{event}", 1, "Count", **dimensions)
        logger.debug("Metric: loop %s %s", event, dimensions)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _put(self, name: str, value: float, unit: str, **dimensions: str) -> None:
        datum = {
            "MetricName": name,
            "Dimensions": _dims(**dimensions),
            "Timestamp": datetime.now(UTC),
            "Value": value,
            "Unit": unit,
        }
        with self._lock:
            self._buffer.append(datum)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
