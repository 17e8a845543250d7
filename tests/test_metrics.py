"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from booking_agent.services.metrics import NAMESPACE, MetricsClient


def _dims(datum: dict) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in datum["Dimensions"]}


class TestExternalApiMetrics:
    def test_record_success_appends_count_and_latency(self):
        client = MetricsClient(enabled=False)
        client.record_success("nexhealth", "GET /appointment_slots", latency_ms=123.4)
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_without_latency_skips_latency_point(self):
        client = MetricsClient(enabled=False)
        client.record_failure("anthropic", "match_intent", error_type="APITimeoutError")
        names = [m["MetricName"] for m in client._buffer]
        assert sorted(names) == ["ExternalAPI/ErrorCount", "ExternalAPI/RequestCount"]

    def test_failure_dimensions_include_error_type(self):
        client = MetricsClient(enabled=False)
        client.record_failure("nexhealth", "POST /appointment_slot_holds", error_type="SlotConflictError", latency_ms=80)
        error_metric = next(m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount")
        assert _dims(error_metric) == {"Service": "nexhealth", "ErrorType": "SlotConflictError"}
        assert len(client._buffer) == 3


class TestToolCallMetrics:
    def test_record_tool_call_tags_tool_and_outcome(self):
        client = MetricsClient(enabled=False)
        client.record_tool_call("hold_slot", outcome="CONFLICT", latency_ms=410.0)

        count = next(m for m in client._buffer if m["MetricName"] == "ToolCall/Count")
        latency = next(m for m in client._buffer if m["MetricName"] == "ToolCall/Latency")
        assert _dims(count) == {"Tool": "hold_slot", "Outcome": "CONFLICT"}
        assert _dims(latency) == {"Tool": "hold_slot"}
        assert latency["Unit"] == "Milliseconds"
        assert latency["Value"] == 410.0


class TestMetricsFlush:
    def test_enabled_flag_defaults_to_environment(self):
        with patch.dict("os.environ", {"METRICS_ENABLED": "false"}):
            assert MetricsClient().enabled is False

    def test_flush_when_disabled_drops_buffer_without_boto3(self):
        client = MetricsClient(enabled=False)
        client._cw_client = MagicMock()
        client.record_tool_call("select_slot", outcome="success", latency_ms=5.0)

        assert client.flush() == 0
        assert client._buffer == []
        client._cw_client.put_metric_data.assert_not_called()

    def test_flush_when_enabled_calls_put_metric_data(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("nexhealth", "GET /patients", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE == "DentalVoiceBooking"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_swallows_cloudwatch_errors(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_tool_call("confirm_booking", outcome="success", latency_ms=1.0)

        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        client = MetricsClient(enabled=False)
        assert client.flush() == 0
