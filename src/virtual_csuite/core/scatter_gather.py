"""
Scatter-gather over independently retried units.

All units of a batch are dispatched concurrently and awaited to their own
conclusion; one unit failing never cancels another. The outcome lists units
in dispatch order whatever order they completed in. Callers choose the
failure contract:

    outcome.raise_for_failures()   all-or-nothing (analysis batch)
    outcome.successful()           tolerant (consultation fan-out)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

from virtual_csuite.core.observability import TelemetrySink, UnitRecord, safe_record_unit
from virtual_csuite.core.resilience import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class AnalysisRequest:
    """Immutable input to an analysis or chat pipeline."""

    content: str
    correlation_id: str
    requester_id: str = "anonymous"


@dataclass(frozen=True)
class LabeledOperation(Generic[T]):
    """One unit of a batch: a label and a zero-argument async operation."""

    label: str
    operation: Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class UnitResult(Generic[T]):
    """Settled outcome of one unit.

    Attributes:
        label: The unit's label
        succeeded: Whether some attempt succeeded
        payload: Value of the successful attempt, None on failure
        attempts_made: Attempts the retry executor made (>= 1)
        elapsed_ms: Wall-clock time of the unit
        failure_detail: Last error when the unit failed
    """

    label: str
    succeeded: bool
    attempts_made: int
    elapsed_ms: int
    payload: Optional[T] = None
    failure_detail: Optional[BaseException] = field(default=None, repr=False)


class BatchAnalysisError(Exception):
    """Raised when any unit of an all-or-nothing batch failed.

    Attributes:
        failed_labels: Failed unit labels in dispatch order
        outcome: The complete aggregate outcome
    """

    def __init__(self, outcome: "AggregateOutcome"):
        self.failed_labels = outcome.failed_labels
        self.outcome = outcome
        super().__init__(f"analysis failed for: {', '.join(self.failed_labels)}")


@dataclass(frozen=True)
class AggregateOutcome(Generic[T]):
    """All unit results of a batch, in dispatch order."""

    units: Tuple[UnitResult[T], ...]

    @property
    def all_succeeded(self) -> bool:
        return all(unit.succeeded for unit in self.units)

    @property
    def failed_labels(self) -> List[str]:
        return [unit.label for unit in self.units if not unit.succeeded]

    def successful(self) -> List[UnitResult[T]]:
        return [unit for unit in self.units if unit.succeeded]

    def get(self, label: str) -> Optional[UnitResult[T]]:
        for unit in self.units:
            if unit.label == label:
                return unit
        return None

    def raise_for_failures(self) -> None:
        """Enforce the all-or-nothing contract.

        Raises:
            BatchAnalysisError: If any unit failed
        """
        if not self.all_succeeded:
            raise BatchAnalysisError(self)


class ScatterGatherCoordinator:
    """Runs labeled operations concurrently, each under the retry executor.

    Emits exactly one telemetry record per unit, whatever its outcome.
    """

    def __init__(
        self,
        executor: RetryExecutor,
        telemetry: Optional[TelemetrySink] = None,
    ):
        self.executor = executor
        self.telemetry = telemetry

    async def gather(
        self,
        operations: Sequence[LabeledOperation[T]],
        request: Optional[AnalysisRequest] = None,
    ) -> AggregateOutcome[T]:
        """Dispatch every operation and wait until all have settled.

        Raises:
            ValueError: If two operations share a label
        """
        labels = [op.label for op in operations]
        if len(set(labels)) != len(labels):
            raise ValueError(f"Duplicate unit labels in batch: {labels}")

        loop = asyncio.get_running_loop()
        start = loop.time()
        units = await asyncio.gather(*(self._run_unit(op, request) for op in operations))

        outcome = AggregateOutcome(units=tuple(units))
        logger.info(
            f"Parallel batch of {len(units)} units settled in "
            f"{int((loop.time() - start) * 1000)}ms",
            extra={"failed_labels": outcome.failed_labels},
        )
        return outcome

    async def _run_unit(
        self, op: LabeledOperation[T], request: Optional[AnalysisRequest]
    ) -> UnitResult[T]:
        result = await self.executor.execute(op.operation, op.label)
        unit = UnitResult(
            label=op.label,
            succeeded=result.success,
            payload=result.data if result.success else None,
            attempts_made=result.attempts,
            elapsed_ms=result.total_duration_ms,
            failure_detail=result.error,
        )
        self._record(unit, request)
        return unit

    def _record(self, unit: UnitResult[Any], request: Optional[AnalysisRequest]) -> None:
        properties = {}
        requester_id = "anonymous"
        if request is not None:
            properties["request_id"] = request.correlation_id
            requester_id = request.requester_id
        safe_record_unit(
            self.telemetry,
            UnitRecord(
                label=unit.label,
                duration_ms=unit.elapsed_ms,
                attempts=unit.attempts_made,
                success=unit.succeeded,
                requester_id=requester_id,
                properties=properties,
            ),
        )
