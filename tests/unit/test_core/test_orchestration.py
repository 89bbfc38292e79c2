"""
Unit tests for virtual_csuite.core.orchestration module.

The backend is a ScriptedProvider keyed by prompt template, so every test
states exactly what each executive answers.
"""

import asyncio

import pytest

from virtual_csuite.core.errors import LLMError, TransientBackendError
from virtual_csuite.core.llm_provider import ChatMessage
from virtual_csuite.core.orchestration import AIOrchestrationService
from virtual_csuite.core.reports import (
    InMemoryReportStore,
    InMemoryResultStore,
    report_key,
)
from virtual_csuite.core.scatter_gather import AnalysisRequest, BatchAnalysisError
from virtual_csuite.core.stream_relay import GENERIC_ERROR, GENERIC_ERROR_MESSAGE

from tests.fakes import FailingTelemetry, FakeStream, sse_body

ROUTE_CFO = 'Sure! {"executives": ["CFO"], "reasoning": "money"}'
ROUTE_NOBODY = '{"executives": [], "reasoning": "small talk"}'


def unavailable():
    return TransientBackendError("API Error: 503", status_code=503)


@pytest.fixture
def service(provider, executor, telemetry):
    return AIOrchestrationService(provider, telemetry=telemetry, executor=executor)


@pytest.fixture
def request_():
    return AnalysisRequest(
        content="Q3 revenue 120k, costs 95k, churn 4%",
        correlation_id="req_test123",
        requester_id="user-1",
    )


def script_board(provider, cmo="CMO view"):
    provider.script("cfo_analysis", "CFO view")
    provider.script("cmo_analysis", cmo)
    provider.script("coo_analysis", "COO view")
    provider.script("ceo_synthesis", "CEO verdict")


async def collect(stream):
    return [event async for event in stream]


def types(events):
    return [event.type.value for event in events]


# =============================================================================
# Board analysis
# =============================================================================


class TestExecutiveAnalyses:
    """Test the concurrent CFO/CMO/COO batch."""

    @pytest.mark.asyncio
    async def test_all_succeed_first_attempt(self, service, provider, request_):
        script_board(provider)

        analyses = await service.execute_executive_analyses(request_)

        assert list(analyses) == ["CFO", "CMO", "COO"]
        assert analyses["CMO"].analysis == "CMO view"
        assert all(a.attempts == 1 for a in analyses.values())

    @pytest.mark.asyncio
    async def test_units_run_concurrently(self, service, provider, request_):
        """No analysis completes before all three have started."""
        started = []
        everyone_in = asyncio.Event()

        async def analyse(options):
            started.append(options)
            if len(started) == 3:
                everyone_in.set()
            await asyncio.wait_for(everyone_in.wait(), timeout=1)
            return "view"

        for template_id in ("cfo_analysis", "cmo_analysis", "coo_analysis"):
            provider.script(template_id, analyse)

        analyses = await service.execute_executive_analyses(request_)

        assert len(analyses) == 3

    @pytest.mark.asyncio
    async def test_document_reaches_every_executive(self, service, provider, request_):
        script_board(provider)

        await service.execute_executive_analyses(request_)

        for template_id in ("cfo_analysis", "cmo_analysis", "coo_analysis"):
            (call,) = provider.calls_for(template_id)
            assert request_.content in call.messages[-1].content
            assert call.temperature == 0.7
            assert call.max_tokens == 800

    @pytest.mark.asyncio
    async def test_one_failure_fails_batch(
        self, service, provider, request_, recording_sleep
    ):
        """A unit failing every attempt fails the batch after 3 attempts."""
        script_board(provider, cmo=unavailable())

        with pytest.raises(BatchAnalysisError) as exc_info:
            await service.execute_executive_analyses(request_)

        assert str(exc_info.value) == "analysis failed for: CMO"
        assert exc_info.value.failed_labels == ["CMO"]
        assert len(provider.calls_for("cmo_analysis")) == 3
        assert len(recording_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_records_one_unit_each(self, service, provider, request_, telemetry):
        script_board(provider, cmo=unavailable())

        with pytest.raises(BatchAnalysisError):
            await service.execute_executive_analyses(request_)

        by_label = {unit.label: unit for unit in telemetry.units}
        assert sorted(by_label) == ["CFO", "CMO", "COO"]
        assert by_label["CMO"].attempts == 3
        assert by_label["CMO"].success is False
        assert by_label["CFO"].attempts == 1


class TestOrchestrateAnalysis:
    """Test the full board analysis pipeline."""

    @pytest.mark.asyncio
    async def test_success(self, provider, executor, telemetry, request_):
        script_board(provider)
        results = InMemoryResultStore()
        reports = InMemoryReportStore()
        service = AIOrchestrationService(
            provider,
            telemetry=telemetry,
            executor=executor,
            result_store=results,
            report_store=reports,
        )

        result = await service.orchestrate_analysis(request_)

        assert result.success is True
        assert result.synthesis.synthesis == "CEO verdict"
        assert result.report_key == report_key("req_test123")
        assert reports.reports[result.report_key] == result.report
        assert results.for_request("req_test123") == {
            "CFO": "CFO view",
            "CMO": "CMO view",
            "COO": "COO view",
        }

    @pytest.mark.asyncio
    async def test_synthesis_sees_every_analysis(self, service, provider, request_):
        script_board(provider)

        await service.orchestrate_analysis(request_)

        (call,) = provider.calls_for("ceo_synthesis")
        prompt = call.messages[-1].content
        for view in ("CFO view", "CMO view", "COO view"):
            assert view in prompt

    @pytest.mark.asyncio
    async def test_report_puts_synthesis_first(self, service, provider, request_):
        script_board(provider)

        result = await service.orchestrate_analysis(request_)

        report = result.report
        assert report.index("CEO verdict") < report.index("## CFO Analysis")
        assert report.index("## CFO Analysis") < report.index("## CMO Analysis")
        assert "**Request ID:** req_test123" in report

    @pytest.mark.asyncio
    async def test_to_dict(self, service, provider, request_):
        script_board(provider)

        data = (await service.orchestrate_analysis(request_)).to_dict()

        assert data["success"] is True
        assert set(data) >= {"cfo", "cmo", "coo", "ceo", "totalDuration"}
        assert data["cfo"]["analysis"] == "CFO view"
        assert data["ceo"]["synthesis"] == "CEO verdict"
        assert "reportKey" not in data

    @pytest.mark.asyncio
    async def test_batch_failure_skips_synthesis(self, provider, executor, request_):
        """Partial results are discarded; nothing is stored or synthesised."""
        script_board(provider, cmo=unavailable())
        results = InMemoryResultStore()
        reports = InMemoryReportStore()
        service = AIOrchestrationService(
            provider, executor=executor, result_store=results, report_store=reports
        )

        result = await service.orchestrate_analysis(request_)

        assert result.success is False
        assert result.error == "analysis failed for: CMO"
        assert result.failed_labels == ["CMO"]
        assert result.executives == {}
        assert provider.calls_for("ceo_synthesis") == []
        assert results.records == []
        assert reports.reports == {}
        assert result.to_dict()["failedLabels"] == ["CMO"]

    @pytest.mark.asyncio
    async def test_synthesis_failure(self, service, provider, request_):
        script_board(provider)
        provider.script("ceo_synthesis", unavailable())

        result = await service.orchestrate_analysis(request_)

        assert result.success is False
        assert result.error.startswith("CEO synthesis failed")
        assert len(provider.calls_for("ceo_synthesis")) == 3

    @pytest.mark.asyncio
    async def test_synthesis_failure_message_is_sanitized(self, service, provider, request_):
        """The provider's response body stays in the log, not in the result."""
        script_board(provider)
        provider.script(
            "ceo_synthesis",
            TransientBackendError("Vultr API Error: 503 - trace 7f3a", status_code=503),
        )

        result = await service.orchestrate_analysis(request_)

        assert result.error == "CEO synthesis failed: AI provider request failed with status 503"
        assert "7f3a" not in result.to_dict()["error"]

    @pytest.mark.asyncio
    async def test_tracks_analytics(self, service, provider, request_, telemetry):
        script_board(provider)

        await service.orchestrate_analysis(request_)

        assert telemetry.event_names() == [
            "cfo_analysis_completed",
            "cmo_analysis_completed",
            "coo_analysis_completed",
            "ceo_synthesis_completed",
        ]
        assert {requester for _, requester, _ in telemetry.events} == {"user-1"}
        assert [unit.label for unit in telemetry.units][-1] == "CEO"

    @pytest.mark.asyncio
    async def test_telemetry_failure_is_isolated(self, provider, executor, request_):
        script_board(provider)
        service = AIOrchestrationService(
            provider, telemetry=FailingTelemetry(), executor=executor
        )

        result = await service.orchestrate_analysis(request_)

        assert result.success is True


# =============================================================================
# Blocking chat
# =============================================================================


class TestChat:
    """Test the blocking chat turn."""

    @pytest.mark.asyncio
    async def test_consults_then_replies(self, service, provider):
        provider.script("consultation_routing", ROUTE_CFO)
        provider.script("consultant_advice:CFO", "- Raise prices 5%")
        provider.script("ceo_chat_informed", "Raise prices a little.")

        result = await service.chat("Should I raise prices?")

        assert result.success is True
        assert result.reply == "Raise prices a little."
        assert result.consulted_executives == ["CFO"]
        assert result.consultation_duration_ms is not None
        (call,) = provider.calls_for("ceo_chat_informed")
        assert "Raise prices 5%" in call.messages[-1].content

    @pytest.mark.asyncio
    async def test_no_consultation(self, service, provider):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat", "Hello!")

        result = await service.chat("Hi")

        assert result.reply == "Hello!"
        assert result.consulted_executives == []
        assert result.consultation_duration_ms is None
        assert provider.calls_for("ceo_chat_informed") == []

    @pytest.mark.asyncio
    async def test_unparseable_routing_degrades(self, service, provider, telemetry):
        provider.script("consultation_routing", "I think the CFO should look at it")
        provider.script("ceo_chat", "Here is my view.")

        result = await service.chat("Cash is tight")

        assert result.success is True
        assert result.consulted_executives == []
        routed = [p for e, _, p in telemetry.events if e.value == "consultation_routed"]
        assert routed[0]["degraded"] is True

    @pytest.mark.asyncio
    async def test_history_is_forwarded(self, service, provider):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat", "Yes.")
        history = [
            ChatMessage(role="user", content="We sell candles"),
            ChatMessage(role="assistant", content="Noted."),
        ]

        await service.chat("Any ideas?", history)

        (call,) = provider.calls_for("ceo_chat")
        assert [m.content for m in call.messages[1:3]] == ["We sell candles", "Noted."]

    @pytest.mark.asyncio
    async def test_failed_consultant_is_dropped(self, service, provider):
        provider.script(
            "consultation_routing",
            '{"executives": ["CFO", "CMO"], "reasoning": "pricing and demand"}',
        )
        provider.script("consultant_advice:CFO", "- Check margins")
        provider.script("consultant_advice:CMO", LLMError("bad request", status_code=400))
        provider.script("ceo_chat_informed", "Check your margins.")

        result = await service.chat("Price change?")

        assert result.consulted_executives == ["CFO"]
        (call,) = provider.calls_for("ceo_chat_informed")
        assert "### CMO" not in call.messages[-1].content

    @pytest.mark.asyncio
    async def test_falls_back_to_plain_reply(self, service, provider):
        provider.script("consultation_routing", ROUTE_CFO)
        provider.script("consultant_advice:CFO", "- Cut costs")
        provider.script("ceo_chat_informed", unavailable())
        provider.script("ceo_chat", "Plain answer.")

        result = await service.chat("Help")

        assert result.success is True
        assert result.reply == "Plain answer."
        assert result.attempts == 4

    @pytest.mark.asyncio
    async def test_every_stage_fails(self, service, provider, telemetry):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat", unavailable())

        result = await service.chat("Help")

        assert result.success is False
        assert result.reply == GENERIC_ERROR_MESSAGE
        assert "chat_failed" in telemetry.event_names()
        assert "503" not in result.reply


# =============================================================================
# Streaming chat
# =============================================================================


class TestStreamChat:
    """Test the streamed chat turn."""

    @pytest.mark.asyncio
    async def test_event_order(self, service, provider):
        provider.script("consultation_routing", ROUTE_CFO)
        provider.script("consultant_advice:CFO", "- Cut costs")
        provider.script(
            "ceo_chat_informed:stream", FakeStream([sse_body(["Cut ", "costs."])])
        )

        events = await collect(service.stream_chat("Margins?"))

        assert types(events) == [
            "decision",
            "consultation",
            "synthesis_start",
            "synthesis_chunk",
            "synthesis_chunk",
            "synthesis_complete",
            "complete",
        ]
        assert events[0].data["consultedExecutives"] == ["CFO"]
        assert events[0].data["reasoning"] == "money"
        assert events[1].data["role"] == "CFO"
        assert events[5].data == {"reply": "Cut costs."}
        assert events[6].data["consultedExecutives"] == ["CFO"]
        assert events[6].data["success"] is True

    @pytest.mark.asyncio
    async def test_primary_stream_fails_fallback_streams(self, service, provider):
        """The informed stream fails to open; the plain stream takes over."""
        provider.script("consultation_routing", ROUTE_CFO)
        provider.script("consultant_advice:CFO", "- Cut costs")
        provider.script("ceo_chat_informed:stream", unavailable())
        provider.script("ceo_chat:stream", FakeStream([sse_body(["Hello", " there"])]))

        events = await collect(service.stream_chat("Margins?"))
        synthesis = [t for t in types(events) if t.startswith("synthesis") or t == "error"]

        assert synthesis[0] == "synthesis_start"
        assert synthesis.count("synthesis_chunk") >= 1
        assert synthesis.count("synthesis_complete") == 1
        assert "error" not in synthesis
        assert types(events)[-1] == "complete"
        assert events[-1].data["attempts"] == 4

    @pytest.mark.asyncio
    async def test_without_advice_streams_plain(self, service, provider):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat:stream", FakeStream([{"response": "Hi!"}]))

        events = await collect(service.stream_chat("Hello"))

        assert types(events) == [
            "decision",
            "synthesis_start",
            "synthesis_chunk",
            "synthesis_complete",
            "complete",
        ]
        assert provider.calls_for("ceo_chat_informed") == []

    @pytest.mark.asyncio
    async def test_blocking_fallback(self, service, provider):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat:stream", LLMError("bad request", status_code=400))
        provider.script("ceo_chat", "Blocking answer.")

        events = await collect(service.stream_chat("Hello"))

        assert types(events) == [
            "decision",
            "synthesis_start",
            "synthesis_complete",
            "complete",
        ]
        assert events[2].data == {"reply": "Blocking answer."}

    @pytest.mark.asyncio
    async def test_every_stage_fails(self, service, provider, telemetry):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat:stream", LLMError("upstream said no", status_code=400))
        provider.script("ceo_chat", LLMError("upstream said no", status_code=400))

        events = await collect(service.stream_chat("Hello"))

        assert types(events) == ["decision", "synthesis_start", "error"]
        assert events[-1].data["error"] == GENERIC_ERROR
        assert "upstream" not in str(events[-1].data)
        assert "chat_failed" in telemetry.event_names()

    @pytest.mark.asyncio
    async def test_abandoned_stream_cancels_turn(self, service, provider, telemetry):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat:stream", FakeStream([sse_body(["never"])]))

        stream = service.stream_chat("Hello")
        first = await stream.__anext__()
        await stream.aclose()

        assert first.type.value == "decision"
        names = telemetry.event_names()
        assert "chat_completed" not in names
        assert "chat_failed" not in names

    @pytest.mark.asyncio
    async def test_history_is_forwarded(self, service, provider):
        provider.script("consultation_routing", ROUTE_NOBODY)
        provider.script("ceo_chat:stream", FakeStream(["ok"]))
        history = [ChatMessage(role="user", content="We sell candles")]

        await collect(service.stream_chat("Ideas?", history))

        (call,) = provider.calls_for("ceo_chat")
        assert call.stream is True
        assert call.messages[1].content == "We sell candles"
