"""Structured logging hooks for CLI commands.

Each command runs inside a request context so every log line and the
response envelope share one request id. Wraps core observability
primitives for CLI-specific use cases.
"""

import logging
import time
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from virtual_csuite.core.context import (
    generate_correlation_id,
    get_correlation_id,
    sync_request_context,
)
from virtual_csuite.core.observability import get_metrics, redact_sensitive_data

__all__ = [
    "cli_command",
    "generate_request_id",
    "get_cli_logger",
    "get_request_id",
]

T = TypeVar("T")


def generate_request_id() -> str:
    """Generate a unique request ID for CLI command tracking."""
    return generate_correlation_id("cli")


def get_request_id() -> str:
    """Get the current request ID, or empty string outside a command."""
    return get_correlation_id()


class CLILogger:
    """Structured logger for CLI commands.

    Adds the request id to every record and redacts sensitive values.
    """

    def __init__(self, name: str = "virtual_csuite.cli"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **extra: Any) -> None:
        context = {
            "request_id": get_request_id(),
            **redact_sensitive_data(extra),
        }
        self._logger.log(level, message, extra={"cli_context": context})

    def debug(self, message: str, **extra: Any) -> None:
        self._log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> None:
        self._log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra: Any) -> None:
        self._log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra: Any) -> None:
        self._log(logging.ERROR, message, **extra)


_cli_logger = CLILogger()


def get_cli_logger() -> CLILogger:
    """Get the global CLI logger."""
    return _cli_logger


def cli_command(
    command_name: Optional[str] = None,
    emit_metrics: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for CLI commands with observability.

    Automatically:
    - Opens a request context with a fresh request id
    - Logs command start/end
    - Emits latency and status metrics

    Args:
        command_name: Override command name (defaults to function name).
        emit_metrics: Whether to emit metrics (default: True).
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = command_name or func.__name__

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            with sync_request_context(correlation_id=generate_request_id()):
                metrics = get_metrics()
                start = time.perf_counter()
                success = True
                error_msg = None

                _cli_logger.debug(f"CLI command started: {name}", command=name)

                try:
                    return func(*args, **kwargs)
                except SystemExit as e:
                    success = e.code in (0, None)
                    raise
                except Exception as e:
                    success = False
                    error_msg = str(e)
                    raise
                finally:
                    duration_ms = (time.perf_counter() - start) * 1000

                    _cli_logger.debug(
                        f"CLI command completed: {name}",
                        command=name,
                        success=success,
                        duration_ms=round(duration_ms, 2),
                        error=error_msg,
                    )

                    if emit_metrics:
                        metrics.counter(
                            "cli.command.invocations",
                            labels={
                                "command": name,
                                "status": "success" if success else "error",
                            },
                        )
                        metrics.timer(
                            "cli.command.latency",
                            duration_ms,
                            labels={"command": name},
                        )

        return wrapper

    return decorator
