"""
AI orchestration service.

Two pipelines share one backend adapter, one retry policy and one telemetry
sink:

Board analysis (``orchestrate_analysis``)
    CFO, CMO and COO analyse the document concurrently; if any of them fails
    after retries the whole batch fails. Otherwise the CEO synthesises the
    three analyses and the markdown board report is stored.

Chat (``chat`` / ``stream_chat``)
    A routing call picks which executives to consult; the selected ones are
    consulted concurrently (failures are dropped); the CEO replies, either
    as one blocking call or streamed through the fallback ladder of
    :class:`~virtual_csuite.core.stream_relay.StreamRelay`.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from virtual_csuite.core.context import generate_correlation_id, request_context
from virtual_csuite.core.errors import LLMError
from virtual_csuite.core.llm_config import DEFAULT_MODEL
from virtual_csuite.core.llm_provider import ChatMessage, ChatOptions, LLMProvider
from virtual_csuite.core.observability import (
    AnalyticsEvent,
    TelemetrySink,
    UnitRecord,
    safe_record_unit,
    safe_track_event,
)
from virtual_csuite.core.prompts import get_prompt
from virtual_csuite.core.reports import (
    ReportStore,
    ResultStore,
    format_final_report,
    report_key,
)
from virtual_csuite.core.resilience import (
    DEFAULT_RETRY_POLICY,
    RetryExecutor,
    RetryPolicy,
)
from virtual_csuite.core.responses import sanitize_error_message
from virtual_csuite.core.routing import (
    EXECUTIVE_FOCUS,
    ConsultationRouter,
    Executive,
    RoutingDecision,
)
from virtual_csuite.core.scatter_gather import (
    AnalysisRequest,
    BatchAnalysisError,
    LabeledOperation,
    ScatterGatherCoordinator,
    UnitResult,
)
from virtual_csuite.core.stream_relay import (
    GENERIC_ERROR_MESSAGE,
    EventChannel,
    EventType,
    StreamEvent,
    StreamRelay,
    StreamStage,
    run_with_channel,
)

logger = logging.getLogger(__name__)

ANALYSIS_TEMPERATURE = 0.7
ANALYSIS_MAX_TOKENS = 800
SYNTHESIS_TEMPERATURE = 0.8
SYNTHESIS_MAX_TOKENS = 1000
CONSULTATION_TEMPERATURE = 0.7
CONSULTATION_MAX_TOKENS = 400
CHAT_TEMPERATURE = 0.7
CHAT_MAX_TOKENS = 1000

ANALYSIS_TEMPLATES: Dict[Executive, str] = {
    Executive.CFO: "cfo_analysis",
    Executive.CMO: "cmo_analysis",
    Executive.COO: "coo_analysis",
}

ANALYSIS_EVENTS: Dict[Executive, AnalyticsEvent] = {
    Executive.CFO: AnalyticsEvent.CFO_ANALYSIS_COMPLETED,
    Executive.CMO: AnalyticsEvent.CMO_ANALYSIS_COMPLETED,
    Executive.COO: AnalyticsEvent.COO_ANALYSIS_COMPLETED,
}


class SynthesisError(Exception):
    """The CEO synthesis call failed after retries."""


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class ExecutiveAnalysis:
    role: str
    analysis: str
    duration_ms: int
    attempts: int
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "analysis": self.analysis,
            "duration": self.duration_ms,
            "attempts": self.attempts,
            "success": self.success,
        }


@dataclass(frozen=True)
class CEOSynthesis:
    synthesis: str
    duration_ms: int
    attempts: int
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "synthesis": self.synthesis,
            "duration": self.duration_ms,
            "attempts": self.attempts,
            "success": self.success,
        }


@dataclass
class OrchestrationResult:
    """Outcome of a board analysis. Failures are reported, not raised."""

    success: bool
    total_duration_ms: int
    executives: Dict[str, ExecutiveAnalysis] = field(default_factory=dict)
    synthesis: Optional[CEOSynthesis] = None
    report: Optional[str] = None
    report_key: Optional[str] = None
    error: Optional[str] = None
    failed_labels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "totalDuration": self.total_duration_ms,
        }
        for label, analysis in self.executives.items():
            result[label.lower()] = analysis.to_dict()
        if self.synthesis is not None:
            result["ceo"] = self.synthesis.to_dict()
        if self.report_key:
            result["reportKey"] = self.report_key
        if self.error:
            result["error"] = self.error
        if self.failed_labels:
            result["failedLabels"] = list(self.failed_labels)
        return result


@dataclass(frozen=True)
class ConsultationAdvice:
    role: str
    advice: str
    duration_ms: int
    attempts: int
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "advice": self.advice,
            "duration": self.duration_ms,
            "success": self.success,
        }


@dataclass
class ChatResult:
    """Blocking chat reply."""

    reply: str
    consulted_executives: List[str]
    total_duration_ms: int
    attempts: int
    success: bool
    consultation_duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "reply": self.reply,
            "consultedExecutives": list(self.consulted_executives),
            "totalDurationMs": self.total_duration_ms,
            "attempts": self.attempts,
            "success": self.success,
        }
        if self.consultation_duration_ms is not None:
            result["consultationDurationMs"] = self.consultation_duration_ms
        return result


class _AttemptCounter:
    def __init__(self) -> None:
        self.attempts = 0


def _format_advice(consultations: Sequence[ConsultationAdvice]) -> str:
    return "\n\n".join(
        f"### {c.role}\n{c.advice.strip()}" for c in consultations if c.success
    )


# =============================================================================
# Service
# =============================================================================


class AIOrchestrationService:
    """Runs the board analysis and chat pipelines against one backend.

    Args:
        provider: Backend adapter shared by every call
        policy: Retry policy for every backend call
        telemetry: Side-channel sink; never blocks or fails the pipelines
        model: Model identifier for every call
        result_store: Optional sink for individual executive analyses
        report_store: Optional object store for the final report
        collection_id: Optional RAG collection passed on every call
    """

    def __init__(
        self,
        provider: LLMProvider,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        telemetry: Optional[TelemetrySink] = None,
        model: str = DEFAULT_MODEL,
        result_store: Optional[ResultStore] = None,
        report_store: Optional[ReportStore] = None,
        *,
        executor: Optional[RetryExecutor] = None,
        collection_id: Optional[str] = None,
    ):
        self.provider = provider
        self.policy = policy
        self.telemetry = telemetry
        self.model = model
        self.result_store = result_store
        self.report_store = report_store
        self.collection_id = collection_id
        self.executor = executor or RetryExecutor(policy)
        self.coordinator = ScatterGatherCoordinator(self.executor, telemetry)
        self.router = ConsultationRouter(provider, self.executor, model)

    def _options(
        self,
        messages: List[ChatMessage],
        temperature: float,
        max_tokens: int,
        stream: bool = False,
    ) -> ChatOptions:
        return ChatOptions(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            stream=stream,
            collection_id=self.collection_id,
        )

    def _completion(self, options: ChatOptions):
        async def call() -> str:
            response = await self.provider.chat(options)
            return response.content

        return call

    # -------------------------------------------------------------------------
    # Board analysis
    # -------------------------------------------------------------------------

    async def execute_executive_analyses(
        self, request: AnalysisRequest
    ) -> Dict[str, ExecutiveAnalysis]:
        """Run CFO, CMO and COO concurrently under the all-or-nothing contract.

        Raises:
            BatchAnalysisError: If any executive failed after retries
        """
        operations = [
            LabeledOperation(
                executive.value,
                self._completion(
                    self._options(
                        get_prompt(template_id).to_messages({"content": request.content}),
                        ANALYSIS_TEMPERATURE,
                        ANALYSIS_MAX_TOKENS,
                    )
                ),
            )
            for executive, template_id in ANALYSIS_TEMPLATES.items()
        ]

        outcome = await self.coordinator.gather(operations, request)

        for unit in outcome.units:
            safe_track_event(
                self.telemetry,
                ANALYSIS_EVENTS[Executive(unit.label)],
                {
                    "request_id": request.correlation_id,
                    "duration_ms": unit.elapsed_ms,
                    "success": unit.succeeded,
                },
                requester_id=request.requester_id,
            )

        outcome.raise_for_failures()

        return {
            unit.label: ExecutiveAnalysis(
                role=unit.label,
                analysis=unit.payload or "",
                duration_ms=unit.elapsed_ms,
                attempts=unit.attempts_made,
            )
            for unit in outcome.units
        }

    async def execute_ceo_synthesis(
        self, request: AnalysisRequest, analyses: Mapping[str, str]
    ) -> CEOSynthesis:
        """Synthesise the executive analyses into the CEO's verdict.

        Raises:
            SynthesisError: If the call failed after retries
        """
        messages = get_prompt("ceo_synthesis").to_messages(
            {
                "cfo_analysis": analyses.get(Executive.CFO.value, ""),
                "cmo_analysis": analyses.get(Executive.CMO.value, ""),
                "coo_analysis": analyses.get(Executive.COO.value, ""),
            }
        )
        result = await self.executor.execute(
            self._completion(
                self._options(messages, SYNTHESIS_TEMPERATURE, SYNTHESIS_MAX_TOKENS)
            ),
            "CEO Synthesis",
        )

        safe_record_unit(
            self.telemetry,
            UnitRecord(
                label="CEO",
                duration_ms=result.total_duration_ms,
                attempts=result.attempts,
                success=result.success,
                requester_id=request.requester_id,
                properties={"request_id": request.correlation_id},
            ),
        )
        safe_track_event(
            self.telemetry,
            AnalyticsEvent.CEO_SYNTHESIS_COMPLETED,
            {
                "request_id": request.correlation_id,
                "duration_ms": result.total_duration_ms,
                "success": result.success,
            },
            requester_id=request.requester_id,
        )

        if not result.success:
            logger.error(
                f"CEO synthesis failed after {result.attempts} attempts: {result.error}"
            )
            raise SynthesisError(
                f"CEO synthesis failed: {sanitize_error_message(result.error)}"
            ) from result.error

        return CEOSynthesis(
            synthesis=result.data or "",
            duration_ms=result.total_duration_ms,
            attempts=result.attempts,
        )

    async def orchestrate_analysis(self, request: AnalysisRequest) -> OrchestrationResult:
        """Run the full board analysis. Backend failures are reported in the result."""
        start = time.monotonic()

        async with request_context(
            correlation_id=request.correlation_id, requester_id=request.requester_id
        ):
            try:
                executives = await self.execute_executive_analyses(request)
                await self._store_results(request, executives)
                synthesis = await self.execute_ceo_synthesis(
                    request, {label: a.analysis for label, a in executives.items()}
                )
            except BatchAnalysisError as exc:
                logger.error(str(exc))
                return OrchestrationResult(
                    success=False,
                    total_duration_ms=_elapsed_ms(start),
                    error=str(exc),
                    failed_labels=exc.failed_labels,
                )
            except SynthesisError as exc:
                return OrchestrationResult(
                    success=False,
                    total_duration_ms=_elapsed_ms(start),
                    error=str(exc),
                )
            except LLMError as exc:
                logger.error(str(exc))
                return OrchestrationResult(
                    success=False,
                    total_duration_ms=_elapsed_ms(start),
                    error=sanitize_error_message(exc),
                )

            report = format_final_report(
                request.correlation_id,
                {label: a.analysis for label, a in executives.items()},
                synthesis.synthesis,
            )
            key = report_key(request.correlation_id)
            if self.report_store is not None:
                await self.report_store.put_report(key, report)

            total = _elapsed_ms(start)
            logger.info(f"Board analysis completed in {total}ms")
            return OrchestrationResult(
                success=True,
                total_duration_ms=total,
                executives=executives,
                synthesis=synthesis,
                report=report,
                report_key=key if self.report_store is not None else None,
            )

    async def _store_results(
        self, request: AnalysisRequest, executives: Mapping[str, ExecutiveAnalysis]
    ) -> None:
        if self.result_store is None:
            return
        timestamp = datetime.now(timezone.utc)
        for label, analysis in executives.items():
            await self.result_store.record_unit_result(
                request.correlation_id, label, analysis.analysis, timestamp
            )

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    async def _consult(
        self,
        decision: RoutingDecision,
        message: str,
        request: AnalysisRequest,
    ) -> List[ConsultationAdvice]:
        """Consult the selected executives concurrently; failures are kept but flagged."""
        if not decision.selected:
            return []

        template = get_prompt("consultant_advice")
        operations = [
            LabeledOperation(
                executive.value,
                self._completion(
                    self._options(
                        template.to_messages(
                            {
                                "role": executive.value,
                                "focus": EXECUTIVE_FOCUS[executive],
                                "message": message,
                            }
                        ),
                        CONSULTATION_TEMPERATURE,
                        CONSULTATION_MAX_TOKENS,
                    )
                ),
            )
            for executive in decision.selected
        ]
        outcome = await self.coordinator.gather(operations, request)
        if not outcome.all_succeeded:
            logger.warning(
                f"Continuing without advice from: {', '.join(outcome.failed_labels)}"
            )
        return [self._advice(unit) for unit in outcome.units]

    @staticmethod
    def _advice(unit: UnitResult[str]) -> ConsultationAdvice:
        return ConsultationAdvice(
            role=unit.label,
            advice=unit.payload or "",
            duration_ms=unit.elapsed_ms,
            attempts=unit.attempts_made,
            success=unit.succeeded,
        )

    def _reply_messages(
        self,
        message: str,
        history: Sequence[ChatMessage],
        consultations: Sequence[ConsultationAdvice],
    ) -> List[ChatMessage]:
        advice = _format_advice(consultations)
        if advice:
            return get_prompt("ceo_chat_informed").to_messages(
                {"advice": advice, "message": message}, history
            )
        return get_prompt("ceo_chat").to_messages({"message": message}, history)

    async def _route_and_consult(
        self,
        message: str,
        history: Sequence[ChatMessage],
        request: AnalysisRequest,
    ):
        decision = await self.router.decide(message, history)
        safe_track_event(
            self.telemetry,
            AnalyticsEvent.CONSULTATION_ROUTED,
            {
                "executives": decision.selected_labels,
                "degraded": decision.degraded,
                "duration_ms": decision.duration_ms,
            },
            requester_id=request.requester_id,
        )
        consult_start = time.monotonic()
        consultations = await self._consult(decision, message, request)
        consultation_ms = (
            decision.duration_ms + _elapsed_ms(consult_start) if consultations else None
        )
        return decision, consultations, consultation_ms

    def _track_chat(
        self,
        request: AnalysisRequest,
        success: bool,
        consulted: List[str],
        total_ms: int,
        streamed: bool,
    ) -> None:
        safe_track_event(
            self.telemetry,
            AnalyticsEvent.CHAT_COMPLETED if success else AnalyticsEvent.CHAT_FAILED,
            {
                "consulted_executives": consulted,
                "duration_ms": total_ms,
                "streamed": streamed,
            },
            requester_id=request.requester_id,
        )

    async def chat(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        *,
        requester_id: str = "anonymous",
        correlation_id: Optional[str] = None,
    ) -> ChatResult:
        """Blocking chat turn.

        Falls back from the consultation-informed reply to a plain reply;
        if both fail the result carries a generic apology and success=False.
        """
        start = time.monotonic()
        request = AnalysisRequest(
            content=message,
            correlation_id=correlation_id or generate_correlation_id("chat"),
            requester_id=requester_id,
        )

        async with request_context(
            correlation_id=request.correlation_id, requester_id=requester_id
        ):
            decision, consultations, consultation_ms = await self._route_and_consult(
                message, history, request
            )
            consulted = [c.role for c in consultations if c.success]

            candidates = [self._reply_messages(message, history, consultations)]
            if _format_advice(consultations):
                candidates.append(self._reply_messages(message, history, ()))

            attempts = 0
            reply: Optional[str] = None
            for messages in candidates:
                result = await self.executor.execute(
                    self._completion(
                        self._options(messages, CHAT_TEMPERATURE, CHAT_MAX_TOKENS)
                    ),
                    "CEO Chat",
                )
                attempts += result.attempts
                if result.success:
                    reply = result.data
                    break

            total = _elapsed_ms(start)
            success = reply is not None
            if not success:
                logger.error("Every chat reply stage failed")
            self._track_chat(request, success, consulted, total, streamed=False)
            return ChatResult(
                reply=reply if success else GENERIC_ERROR_MESSAGE,
                consulted_executives=consulted,
                consultation_duration_ms=consultation_ms,
                total_duration_ms=total,
                attempts=attempts,
                success=success,
            )

    def stream_chat(
        self,
        message: str,
        history: Sequence[ChatMessage] = (),
        *,
        requester_id: str = "anonymous",
        correlation_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streamed chat turn.

        Yields ``decision``, one ``consultation`` per consulted executive,
        ``synthesis_start``, ``synthesis_chunk`` events, then exactly one of
        ``synthesis_complete`` or ``error``; ``complete`` follows a
        successful synthesis. Abandoning the iterator cancels the turn.
        """
        request = AnalysisRequest(
            content=message,
            correlation_id=correlation_id or generate_correlation_id("chat"),
            requester_id=requester_id,
        )

        async def producer(channel: EventChannel) -> None:
            async with request_context(
                correlation_id=request.correlation_id, requester_id=requester_id
            ):
                await self._stream_turn(channel, message, history, request)

        return run_with_channel(producer)

    async def _stream_turn(
        self,
        channel: EventChannel,
        message: str,
        history: Sequence[ChatMessage],
        request: AnalysisRequest,
    ) -> None:
        start = time.monotonic()
        decision, consultations, _ = await self._route_and_consult(
            message, history, request
        )
        await channel.send(StreamEvent(EventType.DECISION, decision.to_dict()))
        for consultation in consultations:
            await channel.send(
                StreamEvent(EventType.CONSULTATION, consultation.to_dict())
            )

        counter = _AttemptCounter()
        plain = self._reply_messages(message, history, ())
        stages = []
        if _format_advice(consultations):
            stages.append(
                self._stream_stage(
                    "informed",
                    self._reply_messages(message, history, consultations),
                    counter,
                )
            )
        stages.append(self._stream_stage("plain", plain, counter))

        async def blocking() -> str:
            result = await self.executor.execute(
                self._completion(self._options(plain, CHAT_TEMPERATURE, CHAT_MAX_TOKENS)),
                "CEO Chat (blocking fallback)",
            )
            counter.attempts += result.attempts
            if not result.success:
                raise result.error
            return result.data

        relay = StreamRelay(channel.send, started_at=start)
        reply = await relay.run(stages, blocking)

        consulted = [c.role for c in consultations if c.success]
        total = _elapsed_ms(start)
        self._track_chat(request, reply is not None, consulted, total, streamed=True)
        if reply is not None:
            logger.info(f"Chat reply delivered via '{relay.stage_used}' in {total}ms")
            await channel.send(
                StreamEvent(
                    EventType.COMPLETE,
                    {
                        "success": True,
                        "consultedExecutives": consulted,
                        "totalDuration": total,
                        "attempts": counter.attempts,
                    },
                )
            )

    def _stream_stage(
        self, name: str, messages: List[ChatMessage], counter: _AttemptCounter
    ) -> StreamStage:
        options = self._options(messages, CHAT_TEMPERATURE, CHAT_MAX_TOKENS, stream=True)

        async def open_stream():
            result = await self.executor.execute(
                lambda: self.provider.chat(options), f"CEO Chat ({name} stream)"
            )
            counter.attempts += result.attempts
            if not result.success:
                raise result.error
            return result.data

        return StreamStage(name=name, open=open_stream)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
