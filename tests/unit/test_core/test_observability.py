"""
Unit tests for virtual_csuite.core.observability module.

Tests redaction, the metrics collector, the telemetry sinks and the
isolation of telemetry failures from the caller.
"""

import json
import logging

import httpx
import pytest

from virtual_csuite.core.context import sync_request_context
from virtual_csuite.core.observability import (
    AnalyticsEvent,
    LoggingTelemetry,
    MetricsCollector,
    NullTelemetry,
    PostHogTelemetry,
    UnitRecord,
    redact_sensitive_data,
    safe_record_unit,
    safe_track_event,
)

from tests.fakes import FailingTelemetry, RecordingTelemetry

METRICS_LOGGER = "virtual_csuite.core.observability.metrics"


def unit(label="CFO", success=True):
    return UnitRecord(
        label=label,
        duration_ms=1200,
        attempts=2,
        success=success,
        requester_id="user-1",
        properties={"request_id": "req_1"},
    )


# =============================================================================
# Redaction
# =============================================================================


class TestRedactSensitiveData:
    def test_sensitive_keys(self):
        redacted = redact_sensitive_data({"api_key": "vk-1", "role": "CFO"})
        assert redacted == {"api_key": "[REDACTED:API_KEY]", "role": "CFO"}

    def test_patterns_in_strings(self):
        text = "Authorization failed for Bearer abc.def.ghi from owner@example.com"
        redacted = redact_sensitive_data(text)
        assert "abc.def.ghi" not in redacted
        assert "owner@example.com" not in redacted
        assert "[REDACTED:BEARER_TOKEN]" in redacted
        assert "[REDACTED:EMAIL]" in redacted

    def test_nested_structures(self):
        data = {"outer": [{"password": "hunter22"}, ("token=x",)]}
        redacted = redact_sensitive_data(data)
        assert redacted["outer"][0] == {"password": "[REDACTED:PASSWORD]"}
        assert isinstance(redacted["outer"][1], tuple)

    def test_input_not_modified(self):
        data = {"secret": "s"}
        redact_sensitive_data(data)
        assert data == {"secret": "s"}

    def test_max_depth(self):
        assert redact_sensitive_data({"a": 1}, max_depth=0) == "[MAX_DEPTH_EXCEEDED]"


# =============================================================================
# Metrics
# =============================================================================


class TestMetricsCollector:
    def test_emits_structured_record(self, caplog):
        collector = MetricsCollector(prefix="test")
        with caplog.at_level(logging.INFO, logger=METRICS_LOGGER):
            collector.timer("ai.unit.duration_ms", 42, {"unit": "CFO"})

        (record,) = [r for r in caplog.records if r.name == METRICS_LOGGER]
        assert record.getMessage() == "METRIC: test.ai.unit.duration_ms"
        assert record.metric["type"] == "timer"
        assert record.metric["value"] == 42
        assert record.metric["labels"] == {"unit": "CFO"}

    def test_counter_defaults_to_one(self, caplog):
        with caplog.at_level(logging.INFO, logger=METRICS_LOGGER):
            MetricsCollector().counter("event.chat_completed")
        (record,) = [r for r in caplog.records if r.name == METRICS_LOGGER]
        assert record.metric["value"] == 1
        assert record.metric["type"] == "counter"


# =============================================================================
# Sinks
# =============================================================================


class TestLoggingTelemetry:
    def test_record_unit(self, caplog):
        sink = LoggingTelemetry(MetricsCollector())
        with caplog.at_level(logging.INFO, logger=METRICS_LOGGER):
            sink.record_unit(unit(success=False))

        metrics = [r.metric for r in caplog.records if r.name == METRICS_LOGGER]
        assert [m["name"] for m in metrics] == [
            "ai.unit.duration_ms",
            "ai.unit.attempts",
            "ai.unit.completed",
        ]
        assert metrics[0]["labels"] == {"unit": "CFO", "status": "failure"}

    def test_track_event(self, caplog):
        sink = LoggingTelemetry(MetricsCollector())
        with caplog.at_level(logging.INFO, logger=METRICS_LOGGER):
            sink.track_event(AnalyticsEvent.CHAT_COMPLETED, "user-1", {"streamed": True})

        (record,) = [r for r in caplog.records if r.name == METRICS_LOGGER]
        assert record.metric["name"] == "event.chat_completed"


class TestNullTelemetry:
    def test_discards(self):
        sink = NullTelemetry()
        assert sink.record_unit(unit()) is None
        assert sink.track_event("anything", "user-1") is None


class TestPostHogTelemetry:
    """Test the PostHog sink against a mock transport."""

    @pytest.mark.asyncio
    async def test_capture_payload(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"status": 1})

        sink = PostHogTelemetry(
            "phc_test", "https://ph.example.com/", transport=httpx.MockTransport(handler)
        )
        sink.track_event(
            AnalyticsEvent.CFO_ANALYSIS_COMPLETED,
            "user-1",
            {"duration_ms": 900, "api_key": "vk-should-not-leak"},
        )
        await sink.aclose()

        (request,) = captured
        assert str(request.url) == "https://ph.example.com/capture/"
        body = json.loads(request.content)
        assert body["api_key"] == "phc_test"
        assert body["event"] == "cfo_analysis_completed"
        assert body["distinct_id"] == "user-1"
        assert body["properties"]["duration_ms"] == 900
        assert body["properties"]["api_key"] == "[REDACTED:API_KEY]"

    @pytest.mark.asyncio
    async def test_record_unit_event(self):
        captured = []

        def handler(request):
            captured.append(json.loads(request.content))
            return httpx.Response(200)

        sink = PostHogTelemetry("phc_test", transport=httpx.MockTransport(handler))
        sink.record_unit(unit())
        await sink.aclose()

        (body,) = captured
        assert body["event"] == "ai_performance"
        assert body["properties"]["executive"] == "CFO"
        assert body["properties"]["attempts"] == 2
        assert body["properties"]["request_id"] == "req_1"

    @pytest.mark.asyncio
    async def test_transport_failure_is_logged(self, caplog):
        def handler(request):
            raise httpx.ConnectError("down")

        sink = PostHogTelemetry("phc_test", transport=httpx.MockTransport(handler))
        with caplog.at_level(logging.ERROR, logger="virtual_csuite.core.observability"):
            sink.track_event("chat_completed", "user-1")
            await sink.aclose()

        assert any("Failed to capture PostHog event" in r.getMessage() for r in caplog.records)

    def test_without_event_loop_drops(self):
        sink = PostHogTelemetry("phc_test")
        sink.track_event("chat_completed", "user-1")
        assert sink._pending == set()


# =============================================================================
# Isolation
# =============================================================================


class TestSafeReporting:
    """Telemetry never raises into the caller."""

    def test_failing_sink(self):
        safe_record_unit(FailingTelemetry(), unit())
        safe_track_event(FailingTelemetry(), AnalyticsEvent.CHAT_FAILED)

    def test_no_sink(self):
        safe_record_unit(None, unit())
        safe_track_event(None, AnalyticsEvent.CHAT_FAILED)

    def test_event_picks_up_request_context(self):
        sink = RecordingTelemetry()
        with sync_request_context(correlation_id="req_ctx", requester_id="user-9"):
            safe_track_event(sink, AnalyticsEvent.CHAT_COMPLETED, {"streamed": False})

        ((event, requester, properties),) = sink.events
        assert event == AnalyticsEvent.CHAT_COMPLETED
        assert requester == "user-9"
        assert properties == {"streamed": False, "request_id": "req_ctx"}

    def test_explicit_values_win(self):
        sink = RecordingTelemetry()
        with sync_request_context(correlation_id="req_ctx", requester_id="user-9"):
            safe_track_event(
                sink, "custom", {"request_id": "req_given"}, requester_id="user-1"
            )

        ((_, requester, properties),) = sink.events
        assert requester == "user-1"
        assert properties["request_id"] == "req_given"
