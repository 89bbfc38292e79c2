"""
Error taxonomy for backend calls and the orchestration engine.

    LLMError
    ├── ConfigurationError        fatal, never retried
    │   └── AuthenticationError
    ├── TransientBackendError     retried per policy
    │   └── RateLimitError
    ├── MalformedResponseError    unit failure, retried only when opted in
    ├── RoutingDecisionError      internal, degrades to an empty selection
    ├── StreamDecodeError         internal, the offending frame is skipped
    └── ChainExhaustedError       every stream stage failed

The retry classifier matches an error's message, ``code`` and
``status_code`` against the policy's retryable signatures, so adapters put
the HTTP status or transport error code on the exception they raise.
"""

from typing import Optional


class LLMError(Exception):
    """Base exception for backend operations.

    Attributes:
        message: Human-readable error description
        provider: Name of the provider that raised the error
        retryable: Whether the provider considers the failure transient
        status_code: HTTP status code if applicable
        code: Transport error code (e.g. "ETIMEDOUT") if applicable
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        retryable: bool = False,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code
        self.code = code


class ConfigurationError(LLMError):
    """Missing or invalid credentials/configuration. Never retried."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message, provider=provider, retryable=False, status_code=status_code
        )


class AuthenticationError(ConfigurationError):
    """The backend rejected the supplied credentials."""

    def __init__(
        self,
        message: str = "Authentication failed",
        *,
        provider: Optional[str] = None,
        status_code: int = 401,
    ):
        super().__init__(message, provider=provider, status_code=status_code)


class TransientBackendError(LLMError):
    """Network reset, timeout, or 429/5xx from the backend."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            retryable=True,
            status_code=status_code,
            code=code,
        )


class RateLimitError(TransientBackendError):
    """Rate limit exceeded error.

    Attributes:
        retry_after: Seconds to wait before retrying, when the backend says
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, status_code=429)
        self.retry_after = retry_after


class MalformedResponseError(LLMError):
    """The backend answered but the payload could not be interpreted."""

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message, provider=provider, retryable=False)


class RoutingDecisionError(LLMError):
    """The routing reply did not contain a usable decision."""


class StreamDecodeError(LLMError):
    """A single SSE frame could not be decoded."""


class ChainExhaustedError(LLMError):
    """Every stage of the streaming fallback chain failed.

    Attributes:
        stage_errors: The error raised by each stage, in the order tried
    """

    def __init__(self, message: str, stage_errors: Optional[list] = None):
        super().__init__(message)
        self.stage_errors = list(stage_errors or [])
