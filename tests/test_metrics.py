"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from booking_agent.services.metrics import MetricsClient


def _dim_map(datum: dict) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in datum["Dimensions"]}


class TestMetricsRecording:
    """Verify that the record helpers buffer the right data."""

    def test_record_success_appends_count_and_latency(self):
        client = MetricsClient(enabled=False)
        client.record_success("booking_api", "GetAvailableSlots", latency_ms=84.2)
        assert client.pending == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalCall/Count", "ExternalCall/Latency"}

    def test_record_failure_without_latency(self):
        client = MetricsClient(enabled=False)
        client.record_failure("anthropic", "llm_invoke", error_type="timeout")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalCall/Count", "ExternalCall/Errors"}

    def test_record_failure_with_latency(self):
        client = MetricsClient(enabled=False)
        client.record_failure("booking_api", "CreateAppointment", error_type="http_503", latency_ms=500.0)
        assert client.pending == 3

    def test_failure_dimensions_include_error_type(self):
        client = MetricsClient(enabled=False)
        client.record_failure("booking_api", "CreatePatient", error_type="validation")
        error_metric = next(m for m in client._buffer if m["MetricName"] == "ExternalCall/Errors")
        assert _dim_map(error_metric) == {"Service": "booking_api", "ErrorType": "validation"}

    def test_loop_event_counter(self):
        client = MetricsClient(enabled=False)
        client.increment("ToolRefused", Tool="CreateAppointment")
        datum = client._buffer[0]
        assert datum["MetricName"] == "Loop/ToolRefused"
        assert datum["Value"] == 1
        assert _dim_map(datum) == {"Tool": "CreateAppointment"}


class TestMetricsFlush:
    def test_env_var_controls_default(self):
        with patch.dict("os.environ", {"METRICS_ENABLED": "false"}):
            assert MetricsClient()._enabled is False

    def test_flush_when_disabled_sends_nothing_and_clears(self):
        client = MetricsClient(enabled=False)
        client.increment("IterationLimit")
        assert client.flush() == 0
        assert client.pending == 0

    def test_flush_when_enabled_calls_put_metric_data(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("booking_api", "GetProviders", latency_ms=10.0)
        assert client.flush() == 2
        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == "BookingAgent"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.increment("GuardCorrection", Outcome="stripped")
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        assert MetricsClient(enabled=False).flush() == 0
