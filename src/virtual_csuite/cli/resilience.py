"""Interrupt handling and the async bridge for CLI commands."""

import asyncio
import sys
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


def run_async(awaitable: Awaitable[T]) -> T:
    """Run an engine coroutine to completion from a synchronous command."""
    return asyncio.run(awaitable)


def handle_keyboard_interrupt(
    cleanup: Optional[Callable[[], None]] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator to gracefully handle Ctrl+C in CLI commands.

    Catches KeyboardInterrupt, optionally runs cleanup, and exits
    with code 130 (128 + SIGINT).
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return func(*args, **kwargs)
            except KeyboardInterrupt:
                if cleanup:
                    cleanup()
                sys.exit(130)

        return wrapper

    return decorator
