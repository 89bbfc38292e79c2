"""Request context propagation for log correlation.

Every analysis or chat turn runs inside a request context that carries the
correlation ID and requester ID through ``contextvars``. Concurrent units
spawned with ``asyncio.gather`` or ``asyncio.create_task`` inherit a copy of
the context, so log records emitted by every retry attempt of every unit carry
the same correlation ID.

Usage:
    from virtual_csuite.core.context import (
        request_context,
        sync_request_context,
        get_correlation_id,
    )

    async with request_context(requester_id="user-42") as ctx:
        print(ctx.correlation_id)  # e.g., "req_a1b2c3d4e5f6"
"""

from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

__all__ = [
    "correlation_id_var",
    "requester_id_var",
    "start_time_var",
    "RequestContext",
    "generate_correlation_id",
    "request_context",
    "sync_request_context",
    "get_correlation_id",
    "get_requester_id",
    "get_start_time",
    "get_current_context",
]

# -----------------------------------------------------------------------------
# Context Variables
# -----------------------------------------------------------------------------

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
"""Correlation ID shared by every unit of one request."""

requester_id_var: ContextVar[str] = ContextVar("requester_id", default="anonymous")
"""Identifier of the user who submitted the request."""

start_time_var: ContextVar[float] = ContextVar("start_time", default=0.0)
"""Request start time as Unix timestamp."""


def generate_correlation_id(prefix: str = "req") -> str:
    """Generate a unique correlation ID with optional prefix.

    Format: {prefix}_{12_hex_chars}
    Example: "req_a1b2c3d4e5f6"
    """
    return f"{prefix}_{secrets.token_hex(6)}"


@dataclass
class RequestContext:
    """Snapshot of the current request context.

    Attributes:
        correlation_id: Unique request identifier
        requester_id: User identifier
        start_time: Request start timestamp
    """

    correlation_id: str = ""
    requester_id: str = "anonymous"
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds elapsed since the request started."""
        if self.start_time <= 0:
            return 0.0
        return (time.time() - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "requester_id": self.requester_id,
            "start_time": self.start_time,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


# -----------------------------------------------------------------------------
# Context Managers
# -----------------------------------------------------------------------------


@contextmanager
def sync_request_context(
    *,
    correlation_id: Optional[str] = None,
    requester_id: Optional[str] = None,
) -> Generator[RequestContext, None, None]:
    """Set request context variables for the duration of a with block.

    Args:
        correlation_id: Request ID (auto-generated if None)
        requester_id: User identifier (default: "anonymous")

    Yields:
        RequestContext snapshot
    """
    corr_id = correlation_id or generate_correlation_id()
    requester = requester_id or "anonymous"
    start = time.time()

    token_corr = correlation_id_var.set(corr_id)
    token_requester = requester_id_var.set(requester)
    token_start = start_time_var.set(start)

    try:
        yield RequestContext(
            correlation_id=corr_id,
            requester_id=requester,
            start_time=start,
        )
    finally:
        correlation_id_var.reset(token_corr)
        requester_id_var.reset(token_requester)
        start_time_var.reset(token_start)


class _AsyncContextManager:
    """Async adapter over :func:`sync_request_context`."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ):
        self.correlation_id = correlation_id
        self.requester_id = requester_id
        self._sync_cm: Optional[Any] = None

    async def __aenter__(self) -> RequestContext:
        self._sync_cm = sync_request_context(
            correlation_id=self.correlation_id,
            requester_id=self.requester_id,
        )
        return self._sync_cm.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._sync_cm:
            self._sync_cm.__exit__(exc_type, exc_val, exc_tb)
        return False


def request_context(
    *,
    correlation_id: Optional[str] = None,
    requester_id: Optional[str] = None,
) -> _AsyncContextManager:
    """Create an async context manager for request context.

    Example:
        async with request_context(requester_id="user-42") as ctx:
            await service.orchestrate_analysis(request)
    """
    return _AsyncContextManager(
        correlation_id=correlation_id,
        requester_id=requester_id,
    )


# -----------------------------------------------------------------------------
# Context Accessors
# -----------------------------------------------------------------------------


def get_correlation_id() -> str:
    """Current correlation ID or empty string if not set."""
    return correlation_id_var.get()


def get_requester_id() -> str:
    """Current requester ID or "anonymous" if not set."""
    return requester_id_var.get()


def get_start_time() -> float:
    """Request start time as Unix timestamp or 0.0 if not set."""
    return start_time_var.get()


def get_current_context() -> RequestContext:
    """Snapshot of all current context values."""
    return RequestContext(
        correlation_id=get_correlation_id(),
        requester_id=get_requester_id(),
        start_time=get_start_time(),
    )
