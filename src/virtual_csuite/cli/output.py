"""JSON output helpers for the csuite CLI.

This module provides the sole output mechanism for the CLI. Results are
emitted as response-v2 envelopes built by virtual_csuite.core.responses,
except for streamed chat, which writes raw SSE frames.
"""

import json
import sys
from dataclasses import asdict
from typing import Any, Mapping, NoReturn, Optional, Sequence

import click

from virtual_csuite.cli.logging import get_request_id
from virtual_csuite.core.responses import Response, error_response, success_response


def emit(data: Any) -> None:
    """Emit JSON to stdout.

    Data is serialized in minified format for smaller payloads.
    """
    click.echo(json.dumps(data, separators=(",", ":"), default=str))


def _emit_failure(response: Response) -> NoReturn:
    click.echo(
        json.dumps(asdict(response), separators=(",", ":"), default=str), err=True
    )
    sys.exit(1)


def emit_response(response: Response) -> None:
    """Emit a prepared envelope: stdout on success, stderr plus exit 1 on failure."""
    if not response.success:
        _emit_failure(response)
    emit(asdict(response))


def emit_error(
    message: str,
    code: str = "INTERNAL_ERROR",
    *,
    error_type: str = "internal",
    remediation: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> NoReturn:
    """Emit error JSON to stderr and exit with code 1.

    Args:
        message: Human-readable error description.
        code: Error code in SCREAMING_SNAKE_CASE (e.g., VALIDATION_ERROR).
        error_type: Error category for routing (validation, internal, etc.).
        remediation: Actionable guidance for resolving the error.
        details: Optional additional error context.

    Raises:
        SystemExit: Always exits with code 1.
    """
    response = error_response(
        message=message,
        error_code=code,
        error_type=error_type,
        remediation=remediation,
        details=details,
        request_id=get_request_id() or None,
    )
    _emit_failure(response)


def emit_success(
    data: Any,
    *,
    warnings: Optional[Sequence[str]] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
    meta: Optional[Mapping[str, Any]] = None,
) -> None:
    """Emit success response envelope to stdout.

    Non-dict data is wrapped in a ``result`` key.
    """
    if not isinstance(data, dict):
        data = {"result": data}
    emit_response(
        success_response(
            data=data,
            warnings=warnings,
            telemetry=telemetry,
            meta=meta,
            request_id=get_request_id() or None,
        )
    )


def emit_sse(frame: str) -> None:
    """Write one SSE frame to stdout and flush it immediately."""
    click.echo(frame, nl=False)
    sys.stdout.flush()
