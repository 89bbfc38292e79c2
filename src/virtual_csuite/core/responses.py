"""
Standard response envelopes for virtual-csuite command output.

Every result handed to a caller outside the engine (the CLI today) uses one
structure:

    {
        "success": bool,       # Required: operation success/failure
        "data": {...},         # Required: primary payload (empty dict on error)
        "error": str | null,   # Required: error message or null on success
        "meta": {              # Required: response metadata
            "version": "response-v2",
            "request_id": "req_abc123"?,
            "warnings": ["..."]?,
            "telemetry": { ... }?
        }
    }

Key Principle:
    - `success=True` means the operation executed correctly (even if the result is empty).
    - `success=False` means the operation failed to execute; include actionable error details.
    - Keep business data inside `data` and operational context inside `meta`.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from virtual_csuite.core.context import get_correlation_id
from virtual_csuite.core.errors import (
    AuthenticationError,
    ConfigurationError,
    LLMError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

RESPONSE_VERSION = "response-v2"


class ErrorCode(str, Enum):
    """Machine-readable error codes. Codes follow SCREAMING_SNAKE_CASE convention."""

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_REQUIRED = "MISSING_REQUIRED"
    NOT_FOUND = "NOT_FOUND"

    # Access errors
    UNAUTHORIZED = "UNAUTHORIZED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # System errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"

    # AI backend errors
    AI_PROVIDER_ERROR = "AI_PROVIDER_ERROR"
    AI_PROVIDER_TIMEOUT = "AI_PROVIDER_TIMEOUT"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"


class ErrorType(str, Enum):
    """Error categories for routing and client-side handling."""

    VALIDATION = "validation"  # 400 - No retry, fix input
    AUTHENTICATION = "authentication"  # 401 - No retry, re-authenticate
    NOT_FOUND = "not_found"  # 404 - No retry
    RATE_LIMIT = "rate_limit"  # 429 - Yes, after delay
    CONFIGURATION = "configuration"  # No retry, fix settings
    INTERNAL = "internal"  # 500 - Yes, with backoff
    AI_PROVIDER = "ai_provider"  # AI-specific - Retry varies by error


@dataclass
class Response:
    """Standard response structure.

    Attributes:
        success: Whether the operation completed successfully
        data: The primary payload (operation-specific structured data)
        error: Error message if success is False, None otherwise
        meta: Response metadata including version identifier
    """

    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=lambda: {"version": RESPONSE_VERSION})


def _build_meta(
    *,
    request_id: Optional[str] = None,
    warnings: Optional[Sequence[str]] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Construct a metadata payload that always includes the response version.

    The request id falls back to the correlation id of the current request
    context when not given explicitly.
    """
    meta: Dict[str, Any] = {"version": RESPONSE_VERSION}

    effective_request_id = request_id or get_correlation_id() or None
    if effective_request_id:
        meta["request_id"] = effective_request_id
    if warnings:
        meta["warnings"] = list(warnings)
    if telemetry:
        meta["telemetry"] = dict(telemetry)
    if extra:
        meta.update(dict(extra))

    return meta


def success_response(
    data: Optional[Mapping[str, Any]] = None,
    *,
    warnings: Optional[Sequence[str]] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
    request_id: Optional[str] = None,
    meta: Optional[Mapping[str, Any]] = None,
    **fields: Any,
) -> Response:
    """Create a standardized success response.

    Args:
        data: Optional mapping used as the base payload.
        warnings: Non-fatal issues to surface in ``meta.warnings``.
        telemetry: Timing/performance metadata.
        request_id: Correlation identifier propagated through logs.
        meta: Arbitrary extra metadata to merge into ``meta``.
        **fields: Additional payload fields (shorthand for ``data.update``).
    """
    payload: Dict[str, Any] = {}
    if data:
        payload.update(dict(data))
    if fields:
        payload.update(fields)

    meta_payload = _build_meta(
        request_id=request_id, warnings=warnings, telemetry=telemetry, extra=meta
    )
    return Response(success=True, data=payload, error=None, meta=meta_payload)


def error_response(
    message: str,
    *,
    data: Optional[Mapping[str, Any]] = None,
    error_code: Optional[Union[ErrorCode, str]] = None,
    error_type: Optional[Union[ErrorType, str]] = None,
    remediation: Optional[str] = None,
    details: Optional[Mapping[str, Any]] = None,
    request_id: Optional[str] = None,
    telemetry: Optional[Mapping[str, Any]] = None,
    meta: Optional[Mapping[str, Any]] = None,
) -> Response:
    """Create a standardized error response.

    Args:
        message: Human-readable description of the failure.
        data: Optional mapping with additional machine-readable context.
        error_code: Canonical error code (``ErrorCode`` or string).
        error_type: Error category for routing (``ErrorType`` or string).
        remediation: User-facing guidance on how to fix the issue.
        details: Nested structure describing the failure.
        request_id: Correlation identifier propagated through logs.
        telemetry: Timing/performance metadata captured before failure.
        meta: Arbitrary extra metadata to merge into ``meta``.

    Example:
        >>> error_response(
        ...     "analysis failed for: CFO",
        ...     error_code=ErrorCode.ANALYSIS_FAILED,
        ...     error_type=ErrorType.AI_PROVIDER,
        ... )
    """
    payload: Dict[str, Any] = {}
    if data:
        payload.update(dict(data))

    effective_error_code = error_code if error_code is not None else ErrorCode.INTERNAL_ERROR
    effective_error_type = error_type if error_type is not None else ErrorType.INTERNAL

    if "error_code" not in payload:
        payload["error_code"] = (
            effective_error_code.value
            if isinstance(effective_error_code, Enum)
            else effective_error_code
        )
    if "error_type" not in payload:
        payload["error_type"] = (
            effective_error_type.value
            if isinstance(effective_error_type, Enum)
            else effective_error_type
        )
    if remediation is not None and "remediation" not in payload:
        payload["remediation"] = remediation
    if details and "details" not in payload:
        payload["details"] = dict(details)

    meta_payload = _build_meta(request_id=request_id, telemetry=telemetry, extra=meta)
    return Response(success=False, data=payload, error=message, meta=meta_payload)


# ---------------------------------------------------------------------------
# Specialized Error Helpers
# ---------------------------------------------------------------------------


def configuration_error(
    message: str,
    *,
    provider: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """Create an error response for missing or invalid backend settings."""
    return error_response(
        message,
        error_code=ErrorCode.CONFIGURATION_ERROR,
        error_type=ErrorType.CONFIGURATION,
        data={"provider": provider} if provider else None,
        remediation=(
            "Check the [llm] section of virtual-csuite.toml and the "
            "VIRTUAL_CSUITE_LLM_* environment variables."
        ),
        request_id=request_id,
    )


def ai_provider_error(
    provider_id: str,
    error_detail: str,
    *,
    status_code: Optional[int] = None,
    remediation: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """Create an error response for when an AI backend returns an error.

    Example:
        >>> ai_provider_error("vultr", "Service unavailable", status_code=503)
    """
    data: Dict[str, Any] = {
        "provider_id": provider_id,
        "error_detail": error_detail,
    }
    if status_code is not None:
        data["status_code"] = status_code

    return error_response(
        f"AI provider '{provider_id}' returned error: {error_detail}",
        error_code=ErrorCode.AI_PROVIDER_ERROR,
        error_type=ErrorType.AI_PROVIDER,
        data=data,
        remediation=remediation
        or "Check provider configuration and API key validity, then try again.",
        request_id=request_id,
    )


def analysis_failed_error(
    message: str,
    failed_labels: Sequence[str],
    *,
    telemetry: Optional[Mapping[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Response:
    """Create an error response for a board analysis that did not complete."""
    return error_response(
        message,
        error_code=ErrorCode.ANALYSIS_FAILED,
        error_type=ErrorType.AI_PROVIDER,
        data={"failed_labels": list(failed_labels)},
        remediation="Retry the analysis; the backend may be temporarily unavailable.",
        telemetry=telemetry,
        request_id=request_id,
    )


def error_for_exception(exc: Exception, *, request_id: Optional[str] = None) -> Response:
    """Map an engine exception to the matching error envelope."""
    if isinstance(exc, AuthenticationError):
        return error_response(
            sanitize_error_message(exc),
            error_code=ErrorCode.UNAUTHORIZED,
            error_type=ErrorType.AUTHENTICATION,
            remediation="Verify the API key for the configured provider.",
            request_id=request_id,
        )
    if isinstance(exc, ConfigurationError):
        return configuration_error(exc.message, provider=exc.provider, request_id=request_id)
    if isinstance(exc, RateLimitError):
        return error_response(
            sanitize_error_message(exc),
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            error_type=ErrorType.RATE_LIMIT,
            data={"retry_after": exc.retry_after} if exc.retry_after else None,
            remediation="Wait before retrying.",
            request_id=request_id,
        )
    if isinstance(exc, LLMError):
        return ai_provider_error(
            exc.provider or "unknown",
            sanitize_error_message(exc),
            status_code=exc.status_code,
            request_id=request_id,
        )
    return error_response(sanitize_error_message(exc), request_id=request_id)


def sanitize_error_message(
    exc: Exception,
    context: str = "",
    include_type: bool = False,
) -> str:
    """
    Convert exception to user-safe message without internal details.

    Logs full exception server-side for debugging. Configuration errors are
    returned verbatim since their messages are written for the user.

    Args:
        exc: The exception to sanitize
        context: Optional context for logging (e.g., "board analysis")
        include_type: Whether to include exception type name in message

    Returns:
        User-safe error message without response bodies, file paths or stack traces
    """
    if context:
        logger.debug(f"Error in {context}: {exc}", exc_info=True)
    else:
        logger.debug(f"Error: {exc}", exc_info=True)

    type_name = type(exc).__name__

    if isinstance(exc, AuthenticationError):
        return f"AI provider rejected the credentials (status {exc.status_code})"
    if isinstance(exc, ConfigurationError):
        return exc.message
    if isinstance(exc, RateLimitError):
        return "AI provider rate limit exceeded"
    if isinstance(exc, LLMError):
        if exc.status_code is not None:
            return f"AI provider request failed with status {exc.status_code}"
        if exc.code:
            return f"AI provider request failed ({exc.code})"
        return "AI provider request failed"
    if isinstance(exc, FileNotFoundError):
        return "Required file or resource not found"
    if isinstance(exc, json.JSONDecodeError):
        return "Invalid JSON format"
    if isinstance(exc, asyncio.TimeoutError):
        return "Operation timed out"
    if isinstance(exc, PermissionError):
        return "Permission denied for requested operation"
    if isinstance(exc, ValueError):
        suffix = f" ({type_name})" if include_type else ""
        return f"Invalid value provided{suffix}"
    if isinstance(exc, ConnectionError):
        return "Connection failed - service may be unavailable"
    if isinstance(exc, OSError):
        return "System I/O error occurred"

    # Generic fallback - don't expose exception message
    suffix = f" ({type_name})" if include_type else ""
    return f"An internal error occurred{suffix}"
