"""
Consultation routing.

One low-temperature call asks the model which executives to consult for a
chat message. Replies are free text that should embed a JSON object such as::

    Sure! {"executives": ["CFO", "COO"], "reasoning": "pricing and stock"}

Parsing never raises. Unknown labels are dropped, and any failure (no JSON,
bad JSON, failed call) degrades to an empty selection with a diagnostic
rationale, because the chat pipeline can always answer without consulting.
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from virtual_csuite.core.errors import RoutingDecisionError
from virtual_csuite.core.llm_provider import ChatMessage, ChatOptions, LLMProvider
from virtual_csuite.core.prompts import get_prompt
from virtual_csuite.core.resilience import RetryExecutor

logger = logging.getLogger(__name__)

ROUTING_TEMPERATURE = 0.1
ROUTING_MAX_TOKENS = 200

# Replies longer than this are not scanned for a decision
_MAX_SCAN_CHARS = 20_000

# Balanced candidates tried before giving up
_MAX_CANDIDATES = 32


class Executive(str, Enum):
    """The closed set of consultants."""

    CFO = "CFO"
    CMO = "CMO"
    COO = "COO"


EXECUTIVE_FOCUS: Dict[Executive, str] = {
    Executive.CFO: "cash flow, margins, pricing and cost control",
    Executive.CMO: "customers, marketing, sales and growth",
    Executive.COO: "operations, inventory, suppliers and processes",
}


@dataclass(frozen=True)
class RoutingDecision:
    """Which executives to consult, and why.

    Attributes:
        selected: Known executives in first-mentioned order, no duplicates
        rationale: The model's reasoning, or a diagnostic when routing failed
        duration_ms: Time spent deciding
        degraded: True when the decision is the empty fallback
    """

    selected: Tuple[Executive, ...] = ()
    rationale: str = ""
    duration_ms: int = 0
    degraded: bool = False

    @property
    def selected_labels(self) -> List[str]:
        return [executive.value for executive in self.selected]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "consultedExecutives": self.selected_labels,
            "reasoning": self.rationale,
            "duration": self.duration_ms,
        }


def _balanced_spans(text: str) -> List[Tuple[int, int]]:
    """Return ``(start, end)`` of every balanced ``{...}`` substring, by start.

    One pass with a stack of open positions. Braces inside JSON string
    literals are ignored; quotes outside any object are not tracked.
    """
    spans: List[Tuple[int, int]] = []
    opens: List[int] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = bool(opens)
        elif char == "{":
            opens.append(index)
        elif char == "}" and opens:
            spans.append((opens.pop(), index + 1))
    spans.sort()
    return spans


def _iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield balanced ``{...}`` substrings by start position, at most
    ``_MAX_CANDIDATES`` of them."""
    for start, end in _balanced_spans(text)[:_MAX_CANDIDATES]:
        yield text[start:end]


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first balanced JSON object embedded in ``text``.

    Raises:
        RoutingDecisionError: If no balanced substring parses as an object
    """
    found_candidate = False
    for candidate in _iter_balanced_objects(text[:_MAX_SCAN_CHARS]):
        found_candidate = True
        try:
            value = json.loads(candidate)
        except (ValueError, RecursionError):
            continue
        if isinstance(value, dict):
            return value
    if found_candidate:
        raise RoutingDecisionError("JSON object in routing reply could not be parsed")
    raise RoutingDecisionError("no JSON object in routing reply")


def _known_executives(labels: Any) -> Tuple[Executive, ...]:
    if not isinstance(labels, list):
        raise RoutingDecisionError("'executives' is not a list")
    selected: List[Executive] = []
    for label in labels:
        if not isinstance(label, str):
            continue
        try:
            executive = Executive(label.strip().upper())
        except ValueError:
            logger.debug(f"Dropping unknown executive label: {label!r}")
            continue
        if executive not in selected:
            selected.append(executive)
    return tuple(selected)


def parse_routing_decision(raw: Optional[str]) -> RoutingDecision:
    """Parse a routing reply. Never raises."""
    try:
        if not isinstance(raw, str):
            raise RoutingDecisionError("routing reply is not text")
        data = extract_json_object(raw)
        selected = _known_executives(data.get("executives", []))
    except RoutingDecisionError as exc:
        logger.warning(f"Routing decision unusable: {exc}")
        return RoutingDecision(
            rationale=f"Routing failed ({exc}); answering without consultation.",
            degraded=True,
        )

    reasoning = data.get("reasoning")
    if not isinstance(reasoning, str) or not reasoning.strip():
        reasoning = "No reasoning provided."
    return RoutingDecision(selected=selected, rationale=reasoning.strip())


class ConsultationRouter:
    """Asks the model which executives to consult for a message."""

    def __init__(self, provider: LLMProvider, executor: RetryExecutor, model: str):
        self.provider = provider
        self.executor = executor
        self.model = model

    async def decide(
        self, message: str, history: Sequence[ChatMessage] = ()
    ) -> RoutingDecision:
        """Return the routing decision for ``message``. Never raises."""
        start = time.monotonic()
        options = ChatOptions(
            model=self.model,
            messages=get_prompt("consultation_routing").to_messages(
                {"message": message}, history
            ),
            temperature=ROUTING_TEMPERATURE,
            max_tokens=ROUTING_MAX_TOKENS,
        )

        async def call() -> str:
            response = await self.provider.chat(options)
            return response.content

        result = await self.executor.execute(call, "Consultation Routing")
        duration_ms = int((time.monotonic() - start) * 1000)

        if not result.success:
            logger.warning(
                f"Routing call failed after {result.attempts} attempts: {result.error}"
            )
            return RoutingDecision(
                rationale="Routing unavailable; answering without consultation.",
                duration_ms=duration_ms,
                degraded=True,
            )

        decision = parse_routing_decision(result.data)
        logger.info(
            f"Routing selected {decision.selected_labels or 'no executives'}",
            extra={"routing_degraded": decision.degraded},
        )
        return RoutingDecision(
            selected=decision.selected,
            rationale=decision.rationale,
            duration_ms=duration_ms,
            degraded=decision.degraded,
        )
