"""
Fakes for the collaborators of the engine: a scripted
backend adapter, recording telemetry sinks, and a sleep that returns
immediately but remembers how long it was asked to wait.
"""

import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from virtual_csuite.core.llm_provider import ChatOptions, ChatResponse, LLMProvider
from virtual_csuite.core.observability import UnitRecord
from virtual_csuite.core.prompts import get_registry


# =============================================================================
# Streams
# =============================================================================


def sse_frame(token: str) -> bytes:
    """One OpenAI-style streaming frame carrying ``token``."""
    chunk = {"choices": [{"index": 0, "delta": {"content": token}}]}
    return f"data: {json.dumps(chunk)}\n\n".encode("utf-8")


def sse_body(tokens: Iterable[str], done: bool = True) -> bytes:
    body = b"".join(sse_frame(token) for token in tokens)
    if done:
        body += b"data: [DONE]\n\n"
    return body


class FakeStream:
    """Async iterable standing in for an open streaming response.

    Yields ``items`` in order, then raises ``fail_with`` if given.
    """

    def __init__(self, items: Sequence[Any], fail_with: Optional[Exception] = None):
        self.items = list(items)
        self.fail_with = fail_with
        self.closed = False

    async def __aiter__(self):
        for item in self.items:
            yield item
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Scripted provider
# =============================================================================

Outcome = Union[str, Exception, FakeStream, Callable[[ChatOptions], Any]]


def template_id_for(options: ChatOptions) -> str:
    """Identify which prompt template produced a call.

    Consultant calls are keyed ``consultant_advice:<ROLE>``.
    """
    system = options.messages[0].content
    for template_id in get_registry().list_templates():
        if get_registry().get_required(template_id).system_prompt == system:
            if template_id == "consultant_advice":
                user = options.messages[-1].content
                role = user.split("You are the ", 1)[1].split(";", 1)[0]
                return f"consultant_advice:{role}"
            return template_id
    raise AssertionError(f"Unrecognised system prompt: {system[:60]!r}")


class ScriptedProvider(LLMProvider):
    """Backend adapter answering from per-template scripts.

    Each script is a list of outcomes consumed one call at a time; the last
    outcome repeats. An outcome is a reply string, an exception to raise, a
    FakeStream, or a callable receiving the ChatOptions.
    """

    name = "scripted"
    display_name = "Scripted"

    def __init__(self, scripts: Optional[Dict[str, Union[Outcome, List[Outcome]]]] = None):
        self.scripts: Dict[str, List[Outcome]] = {}
        for key, value in (scripts or {}).items():
            self.script(key, value)
        self.calls: List[ChatOptions] = []
        self.closed = False

    def script(self, key: str, outcomes: Union[Outcome, List[Outcome]]) -> None:
        self.scripts[key] = list(outcomes) if isinstance(outcomes, list) else [outcomes]

    def calls_for(self, key: str) -> List[ChatOptions]:
        return [options for options in self.calls if template_id_for(options) == key]

    async def chat(self, options: ChatOptions):
        self.calls.append(options)
        key = template_id_for(options)
        if options.stream:
            key = f"{key}:stream"
        script = self.scripts.get(key)
        if not script:
            raise AssertionError(f"No script for {key}")
        outcome = script.pop(0) if len(script) > 1 else script[0]

        if callable(outcome) and not isinstance(outcome, (Exception, FakeStream)):
            outcome = outcome(options)
            if hasattr(outcome, "__await__"):
                outcome = await outcome
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FakeStream):
            return outcome
        return ChatResponse.from_text(outcome, model=options.model)

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Retry plumbing
# =============================================================================


class RecordingSleep:
    """Sleep replacement that returns at once and records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# =============================================================================
# Telemetry
# =============================================================================


class RecordingTelemetry:
    """Telemetry sink keeping everything it is given."""

    def __init__(self) -> None:
        self.units: List[UnitRecord] = []
        self.events: List[tuple] = []

    def record_unit(self, record: UnitRecord) -> None:
        self.units.append(record)

    def track_event(self, event, requester_id, properties=None) -> None:
        self.events.append((event, requester_id, dict(properties or {})))

    def event_names(self) -> List[str]:
        return [getattr(event, "value", event) for event, _, _ in self.events]


class FailingTelemetry:
    """Telemetry sink whose every call raises."""

    def record_unit(self, record: UnitRecord) -> None:
        raise RuntimeError("telemetry backend down")

    def track_event(self, event, requester_id, properties=None) -> None:
        raise RuntimeError("telemetry backend down")


