"""
Telemetry side channel for the orchestration engine.

The engine reports one performance record per concurrent unit and a handful of
analytics events per request. Reporting is strictly fire-and-forget: sink
methods are synchronous, never await network I/O on the caller's path, and
every call from the engine goes through :func:`safe_record_unit` /
:func:`safe_track_event` so a misbehaving sink can never fail or delay the
primary control flow.

Sinks:
    LoggingTelemetry  - structured metrics on the standard logger (default)
    PostHogTelemetry  - PostHog capture API via background httpx requests
    NullTelemetry     - discards everything (tests, offline CLI)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Final, List, Optional, Protocol, Set, Tuple, Union

import httpx

from virtual_csuite.core.context import get_correlation_id, get_requester_id

logger = logging.getLogger(__name__)

DEFAULT_POSTHOG_HOST = "https://us.i.posthog.com"


# =============================================================================
# Redaction
# =============================================================================

SENSITIVE_PATTERNS: Final[List[Tuple[str, str]]] = [
    (r"(?i)(api[_-]?key|apikey)\s*[:=]\s*['\"]?([a-zA-Z0-9_\-]{20,})['\"]?", "API_KEY"),
    (
        r"(?i)(access[_-]?token|accesstoken)\s*[:=]\s*['\"]?([a-zA-Z0-9_\-\.]{20,})['\"]?",
        "ACCESS_TOKEN",
    ),
    (r"(?i)bearer\s+([a-zA-Z0-9_\-\.]+)", "BEARER_TOKEN"),
    (r"(?i)(password|passwd|pwd)\s*[:=]\s*['\"]?([^\s'\"]{4,})['\"]?", "PASSWORD"),
    (r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", "EMAIL"),
]
"""Patterns for values that must never reach logs or telemetry payloads."""

_SENSITIVE_KEYS: Final[Set[str]] = {
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_token",
    "authorization",
    "credential",
    "credentials",
}


def redact_sensitive_data(
    data: Any,
    *,
    redaction_format: str = "[REDACTED:{label}]",
    max_depth: int = 10,
) -> Any:
    """Recursively redact sensitive data from strings, dicts, and lists.

    Args:
        data: The data to redact (string, dict, list, or nested structure)
        redaction_format: Format string for redaction markers (uses {label})
        max_depth: Maximum recursion depth

    Returns:
        A copy of the data with sensitive values redacted

    Example:
        >>> redact_sensitive_data({"api_key": "sk-live-123", "role": "CFO"})
        {'api_key': '[REDACTED:API_KEY]', 'role': 'CFO'}
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, str):
        result = data
        for pattern, label in SENSITIVE_PATTERNS:
            result = re.sub(pattern, redaction_format.format(label=label), result)
        return result

    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            key_lower = str(key).lower().replace("-", "_")
            if key_lower in _SENSITIVE_KEYS:
                redacted[key] = f"[REDACTED:{key_lower.upper()}]"
            else:
                redacted[key] = redact_sensitive_data(
                    value,
                    redaction_format=redaction_format,
                    max_depth=max_depth - 1,
                )
        return redacted

    if isinstance(data, (list, tuple)):
        items = [
            redact_sensitive_data(
                item, redaction_format=redaction_format, max_depth=max_depth - 1
            )
            for item in data
        ]
        return tuple(items) if isinstance(data, tuple) else items

    return data


# =============================================================================
# Metrics
# =============================================================================


class MetricType(Enum):
    """Types of metrics that can be emitted."""

    COUNTER = "counter"
    GAUGE = "gauge"
    TIMER = "timer"


@dataclass
class Metric:
    """Structured metric data."""

    name: str
    value: Union[int, float]
    metric_type: MetricType
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "type": self.metric_type.value,
            "labels": self.labels,
            "timestamp": self.timestamp,
        }


class MetricsCollector:
    """
    Emits metrics as structured records on the standard logger.

    Metrics are logged as structured JSON for easy parsing by
    log aggregation systems (e.g., Datadog, Splunk, CloudWatch).
    """

    def __init__(self, prefix: str = "virtual_csuite"):
        self.prefix = prefix
        self._logger = logging.getLogger(f"{__name__}.metrics")

    def emit(self, metric: Metric) -> None:
        self._logger.info(
            f"METRIC: {self.prefix}.{metric.name}", extra={"metric": metric.to_dict()}
        )

    def counter(
        self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None
    ) -> None:
        self.emit(Metric(name, value, MetricType.COUNTER, labels or {}))

    def gauge(
        self,
        name: str,
        value: Union[int, float],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        self.emit(Metric(name, value, MetricType.GAUGE, labels or {}))

    def timer(
        self, name: str, duration_ms: float, labels: Optional[Dict[str, str]] = None
    ) -> None:
        """Emit a timer metric (duration in milliseconds)."""
        self.emit(Metric(name, duration_ms, MetricType.TIMER, labels or {}))


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# =============================================================================
# Analytics events and sinks
# =============================================================================


class AnalyticsEvent(str, Enum):
    """Analytics events reported by the orchestration pipelines."""

    CFO_ANALYSIS_COMPLETED = "cfo_analysis_completed"
    CMO_ANALYSIS_COMPLETED = "cmo_analysis_completed"
    COO_ANALYSIS_COMPLETED = "coo_analysis_completed"
    CEO_SYNTHESIS_COMPLETED = "ceo_synthesis_completed"
    CONSULTATION_ROUTED = "consultation_routed"
    CHAT_COMPLETED = "chat_completed"
    CHAT_FAILED = "chat_failed"


@dataclass(frozen=True)
class UnitRecord:
    """Performance record for one settled unit."""

    label: str
    duration_ms: int
    attempts: int
    success: bool
    requester_id: str = "anonymous"
    properties: Dict[str, Any] = field(default_factory=dict)


class TelemetrySink(Protocol):
    """Side-channel interface the engine reports to."""

    def record_unit(self, record: UnitRecord) -> None: ...

    def track_event(
        self,
        event: Union[AnalyticsEvent, str],
        requester_id: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class NullTelemetry:
    """Sink that discards everything."""

    def record_unit(self, record: UnitRecord) -> None:
        return None

    def track_event(self, event, requester_id, properties=None) -> None:
        return None


class LoggingTelemetry:
    """Sink that reports through a :class:`MetricsCollector`."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self._metrics = metrics or get_metrics()

    def record_unit(self, record: UnitRecord) -> None:
        labels = {
            "unit": record.label,
            "status": "success" if record.success else "failure",
        }
        self._metrics.timer("ai.unit.duration_ms", record.duration_ms, labels)
        self._metrics.gauge("ai.unit.attempts", record.attempts, labels)
        self._metrics.counter("ai.unit.completed", labels=labels)

    def track_event(self, event, requester_id, properties=None) -> None:
        name = event.value if isinstance(event, AnalyticsEvent) else str(event)
        self._metrics.counter(f"event.{name}")
        logger.debug(
            "Analytics event %s",
            name,
            extra={"event_properties": redact_sensitive_data(properties or {})},
        )


class PostHogTelemetry:
    """Sink that sends events to the PostHog capture API.

    Each capture is scheduled as a background task on the running event loop
    and never awaited by the caller. Calls made outside an event loop are
    dropped with a debug log. ``aclose()`` waits for pending sends and closes
    the HTTP client.
    """

    def __init__(
        self,
        api_key: str,
        host: str = DEFAULT_POSTHOG_HOST,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.host = host.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: Set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            )
        return self._client

    def record_unit(self, record: UnitRecord) -> None:
        self.capture(
            record.requester_id,
            "ai_performance",
            {
                "executive": record.label,
                "duration_ms": record.duration_ms,
                "attempts": record.attempts,
                "success": record.success,
                **record.properties,
            },
        )

    def track_event(self, event, requester_id, properties=None) -> None:
        name = event.value if isinstance(event, AnalyticsEvent) else str(event)
        self.capture(requester_id, name, properties or {})

    def capture(self, distinct_id: str, event: str, properties: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, dropping PostHog event %s", event)
            return

        payload = {
            "api_key": self.api_key,
            "distinct_id": distinct_id,
            "event": event,
            "properties": redact_sensitive_data(properties),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        task = loop.create_task(self._send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, payload: Dict[str, Any]) -> None:
        try:
            response = await self._get_client().post(
                f"{self.host}/capture/", json=payload
            )
            if response.status_code >= 400:
                logger.warning(
                    "PostHog capture rejected with status %s", response.status_code
                )
        except httpx.HTTPError as exc:
            logger.error(f"Failed to capture PostHog event: {exc}")

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def safe_record_unit(sink: Optional[TelemetrySink], record: UnitRecord) -> None:
    """Report a unit record without ever raising into the caller."""
    if sink is None:
        return
    try:
        sink.record_unit(record)
    except Exception as exc:
        logger.debug(f"Telemetry sink failed to record unit {record.label}: {exc}")


def safe_track_event(
    sink: Optional[TelemetrySink],
    event: Union[AnalyticsEvent, str],
    properties: Optional[Dict[str, Any]] = None,
    requester_id: Optional[str] = None,
) -> None:
    """Report an analytics event without ever raising into the caller.

    The requester ID defaults to the active request context; the correlation
    ID is added to the event properties when one is set.
    """
    if sink is None:
        return
    props = dict(properties or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        props.setdefault("request_id", correlation_id)
    try:
        sink.track_event(event, requester_id or get_requester_id(), props)
    except Exception as exc:
        logger.debug(f"Telemetry sink failed to track {event}: {exc}")
