"""
Retry primitives for backend calls.

Every backend call made by the engine runs through a :class:`RetryExecutor`:
bounded attempts, exponential backoff with up to 20% jitter, and a
classifier that decides from the error's message, code and HTTP status
whether another attempt could help.

Default policy
==============

    max_attempts        3
    initial_delay_ms    1000
    max_delay_ms        10000
    backoff_multiplier  2
    retryable           ECONNRESET ETIMEDOUT ECONNREFUSED ENETUNREACH EAI_AGAIN
                        429 500 502 503 504

Example usage:

    from virtual_csuite.core.resilience import RetryExecutor, DEFAULT_RETRY_POLICY

    executor = RetryExecutor(DEFAULT_RETRY_POLICY)
    result = await executor.execute(lambda: provider.chat(options), "CFO Analysis")
    if result.success:
        print(result.data.content, result.attempts)
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Iterable,
    Optional,
    TypeVar,
)

from virtual_csuite.core.errors import ConfigurationError, MalformedResponseError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

DEFAULT_RETRYABLE_SIGNATURES: FrozenSet[str] = frozenset(
    {
        "ECONNRESET",
        "ETIMEDOUT",
        "ECONNREFUSED",
        "ENETUNREACH",
        "EAI_AGAIN",
        "429",  # Rate limit
        "500",  # Internal server error
        "502",  # Bad gateway
        "503",  # Service unavailable
        "504",  # Gateway timeout
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration shared read-only across units.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        initial_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound on any single delay
        backoff_multiplier: Growth factor per attempt (>= 1)
        retryable_signatures: Substrings/codes that mark an error transient;
            an empty set retries every non-configuration error
        attempt_timeout_ms: Optional per-attempt timeout
        retry_malformed_responses: Whether unparseable payloads are retried
    """

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2.0
    retryable_signatures: FrozenSet[str] = DEFAULT_RETRYABLE_SIGNATURES
    attempt_timeout_ms: Optional[float] = None
    retry_malformed_responses: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0:
            raise ValueError(
                f"initial_delay_ms must be >= 0, got {self.initial_delay_ms}"
            )
        if self.max_delay_ms < 0:
            raise ValueError(f"max_delay_ms must be >= 0, got {self.max_delay_ms}")
        if self.backoff_multiplier < 1:
            raise ValueError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )
        if self.attempt_timeout_ms is not None and self.attempt_timeout_ms <= 0:
            raise ValueError(
                f"attempt_timeout_ms must be positive, got {self.attempt_timeout_ms}"
            )
        if not isinstance(self.retryable_signatures, frozenset):
            object.__setattr__(
                self, "retryable_signatures", frozenset(self.retryable_signatures)
            )

    @classmethod
    def from_toml_dict(
        cls, data: Dict[str, Any], base: Optional["RetryPolicy"] = None
    ) -> "RetryPolicy":
        """Build a policy from a ``[retry]`` table, starting from ``base``.

        Raises:
            ValueError: If a value is out of range
        """
        base = base or DEFAULT_RETRY_POLICY
        signatures: Iterable[str] = base.retryable_signatures
        if "retryable_signatures" in data:
            signatures = [str(s) for s in data["retryable_signatures"]]
        timeout = data.get("attempt_timeout_ms", base.attempt_timeout_ms)
        return cls(
            max_attempts=int(data.get("max_attempts", base.max_attempts)),
            initial_delay_ms=float(data.get("initial_delay_ms", base.initial_delay_ms)),
            max_delay_ms=float(data.get("max_delay_ms", base.max_delay_ms)),
            backoff_multiplier=float(
                data.get("backoff_multiplier", base.backoff_multiplier)
            ),
            retryable_signatures=frozenset(signatures),
            attempt_timeout_ms=float(timeout) if timeout is not None else None,
            retry_malformed_responses=bool(
                data.get("retry_malformed_responses", base.retry_malformed_responses)
            ),
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


# ---------------------------------------------------------------------------
# Timeout Error
# ---------------------------------------------------------------------------


class TimeoutException(Exception):
    """Attempt timed out.

    The message always contains ``ETIMEDOUT`` so the default policy treats it
    as transient.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded.
        operation: Name of the operation that timed out.
    """

    code = "ETIMEDOUT"

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.operation = operation


# ---------------------------------------------------------------------------
# Classification and delay
# ---------------------------------------------------------------------------


def is_retryable_error(error: BaseException, policy: RetryPolicy) -> bool:
    """Decide whether another attempt could succeed.

    Configuration errors are never retried. Malformed responses are retried
    only when the policy opts in. Otherwise a signature matches when it is a
    substring of the message, or equals the error's ``code`` or
    ``status_code``.
    """
    if isinstance(error, ConfigurationError):
        return False
    if isinstance(error, MalformedResponseError):
        return policy.retry_malformed_responses
    if not policy.retryable_signatures:
        return True

    message = str(error)
    codes = set()
    code = getattr(error, "code", None)
    if code is not None:
        codes.add(str(code))
    status = getattr(error, "status_code", None)
    if status is not None:
        codes.add(str(status))

    return any(
        signature in message or signature in codes
        for signature in policy.retryable_signatures
    )


def calculate_delay_ms(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the attempt after ``attempt`` (1-based).

    ``min(max_delay_ms, initial_delay_ms * multiplier^(attempt-1) * (1 + 0.2 * rng()))``
    """
    delay = policy.initial_delay_ms * (policy.backoff_multiplier ** (attempt - 1))
    jitter = delay * 0.2 * rng()
    return min(delay + jitter, policy.max_delay_ms)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation.

    Attributes:
        success: Whether some attempt succeeded
        data: Value returned by the successful attempt
        error: Last error seen when every attempt failed
        attempts: Attempts actually made (1..max_attempts)
        total_duration_ms: Wall-clock time since the first attempt started
    """

    success: bool
    attempts: int
    total_duration_ms: int
    data: Optional[T] = None
    error: Optional[BaseException] = field(default=None, repr=False)


class RetryExecutor:
    """Runs zero-argument async operations under a :class:`RetryPolicy`.

    The executor holds no per-call state, so one instance can serve any
    number of concurrent units. ``sleep`` and ``rng`` are injectable for
    tests. ``asyncio.CancelledError`` is never caught: cancelling the caller
    cancels the in-flight attempt or backoff sleep.
    """

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.policy = policy
        self._sleep = sleep
        self._rng = rng

    async def _attempt(
        self, operation: Callable[[], Awaitable[T]], context: str
    ) -> T:
        timeout_ms = self.policy.attempt_timeout_ms
        if timeout_ms is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TimeoutException(
                f"{context} timed out after {timeout_ms:.0f}ms (ETIMEDOUT)",
                timeout_seconds=timeout_ms / 1000,
                operation=context,
            )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str = "Operation",
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails fatally, or attempts run out.

        Never raises for operation failures; they are reported in the result.
        """
        policy = self.policy
        start = time.monotonic()
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                data = await self._attempt(operation, context)
            except Exception as exc:
                last_error = exc
                retryable = is_retryable_error(exc, policy)
                is_last = attempt == policy.max_attempts

                logger.error(
                    f"{context} failed on attempt {attempt}/{policy.max_attempts}: {exc}",
                    extra={
                        "operation": context,
                        "attempt": attempt,
                        "retryable": retryable,
                        "will_retry": retryable and not is_last,
                    },
                )

                if not retryable:
                    return RetryResult(
                        success=False,
                        error=exc,
                        attempts=attempt,
                        total_duration_ms=_elapsed_ms(start),
                    )
                if is_last:
                    break

                delay_ms = calculate_delay_ms(attempt, policy, self._rng)
                logger.info(f"{context} retrying in {delay_ms:.0f}ms...")
                await self._sleep(delay_ms / 1000)
                continue

            total = _elapsed_ms(start)
            if attempt > 1:
                logger.info(
                    f"{context} succeeded on attempt {attempt}/{policy.max_attempts} "
                    f"after {total}ms"
                )
            return RetryResult(
                success=True, data=data, attempts=attempt, total_duration_ms=total
            )

        total = _elapsed_ms(start)
        logger.error(
            f"{context} failed after {policy.max_attempts} attempts and {total}ms"
        )
        return RetryResult(
            success=False,
            error=last_error,
            attempts=policy.max_attempts,
            total_duration_ms=total,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    context: str = "Operation",
) -> RetryResult[T]:
    """Retry an async operation with exponential backoff.

    Example:
        >>> result = await retry_with_backoff(
        ...     lambda: provider.chat(options),
        ...     RetryPolicy(max_attempts=5),
        ...     "CEO Synthesis",
        ... )
    """
    return await RetryExecutor(policy).execute(operation, context)
