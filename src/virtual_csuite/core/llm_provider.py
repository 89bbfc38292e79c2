"""
Backend adapter abstraction for virtual-csuite.

Provides one interface over heterogeneous inference backends (distinct base
URLs, auth schemes and response shapes) with consistent error mapping, so the
retry executor can classify every failure the same way regardless of which
backend produced it.

Example:
    from virtual_csuite.core.llm_config import LLMConfig, LLMProviderType
    from virtual_csuite.core.llm_provider import ChatMessage, ChatOptions, create_provider

    provider = create_provider(LLMConfig(provider=LLMProviderType.SAMBANOVA, api_key="..."))
    response = await provider.chat(ChatOptions(
        model="llama-3.3-70b",
        messages=[ChatMessage(role="user", content="Hello!")],
    ))
    print(response.content)
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Type, Union

import httpx

from virtual_csuite.core.errors import (
    AuthenticationError,
    ConfigurationError,
    LLMError,
    MalformedResponseError,
    RateLimitError,
    TransientBackendError,
)
from virtual_csuite.core.llm_config import (
    DEFAULT_BASE_URLS,
    LLMConfig,
    LLMProviderType,
)

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 500


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class ChatMessage:
    """A message in a chat conversation.

    Attributes:
        role: "system", "user" or "assistant"
        content: The text content of the message
    """

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatOptions:
    """Options for one chat call.

    Attributes:
        model: Model identifier
        messages: The conversation messages, in order
        temperature: Sampling temperature (backend default when None)
        max_tokens: Maximum tokens to generate (backend default when None)
        stream: Request incremental output; ``chat`` then returns a ByteStream
        collection_id: Vultr RAG collection to ground the answer in
    """

    model: str
    messages: List[ChatMessage]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    collection_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """Build the OpenAI-style request body, omitting unset fields."""
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.max_tokens is not None:
            payload["max_tokens"] = self.max_tokens
        if self.stream:
            payload["stream"] = True
        return payload


@dataclass
class ChatResponse:
    """Response from a non-streaming chat call.

    ``choices`` always follows the OpenAI shape; adapters for other backends
    translate into it.
    """

    choices: List[Dict[str, Any]]
    model: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        """Text of ``choices[0].message.content``."""
        return self.choices[0]["message"]["content"]

    @classmethod
    def from_payload(
        cls, payload: Any, provider: Optional[str] = None
    ) -> "ChatResponse":
        """Validate an OpenAI-style payload.

        Raises:
            MalformedResponseError: If ``choices[0].message.content`` is not text
        """
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise MalformedResponseError(
                "Response is missing choices[0].message.content", provider=provider
            )
        if not isinstance(content, str):
            raise MalformedResponseError(
                "choices[0].message.content is not text", provider=provider
            )
        return cls(choices=payload["choices"], model=payload.get("model"), raw=payload)

    @classmethod
    def from_text(cls, text: str, model: Optional[str] = None) -> "ChatResponse":
        return cls(
            choices=[{"index": 0, "message": {"role": "assistant", "content": text}}],
            model=model,
        )


class ByteStream:
    """Raw SSE byte stream of an open streaming response.

    Iterating yields the body in arbitrary chunks; ``aclose()`` releases the
    connection and is safe to call more than once.
    """

    def __init__(self, response: httpx.Response):
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self._response.aclose()


# =============================================================================
# Abstract Base Class
# =============================================================================


class LLMProvider(ABC):
    """Abstract base class for inference backends.

    Implementations must signal failures through the error taxonomy:
    ``ConfigurationError`` for credential problems, ``TransientBackendError``
    for network failures and 429/5xx, ``MalformedResponseError`` for
    payloads that cannot be interpreted.

    Attributes:
        name: Provider identifier (e.g., 'vultr', 'cloudflare')
        display_name: Name used in error messages
    """

    name: str = "base"
    display_name: str = "Base"

    @abstractmethod
    async def chat(self, options: ChatOptions) -> Union[ChatResponse, ByteStream]:
        """Run a chat completion.

        Returns a ``ChatResponse``, or an already-open ``ByteStream`` when
        ``options.stream`` is set. HTTP errors are raised here, never lazily
        during stream iteration.

        Raises:
            ConfigurationError: If credentials are rejected
            TransientBackendError: On network failures, 429 or 5xx
            MalformedResponseError: If the payload cannot be interpreted
            LLMError: On other client errors
        """

    async def run(self, model: str, options: Dict[str, Any]) -> ChatResponse:
        """Blocking call in the generic ``run(model, options)`` shape.

        ``options`` carries ``messages`` plus optional ``temperature``,
        ``max_tokens`` and ``collection_id``; streaming is not available here.
        """
        messages = options.get("messages")
        if not messages:
            raise LLMError(
                f"{self.display_name} provider only supports chat/messages format",
                provider=self.name,
            )
        response = await self.chat(
            ChatOptions(
                model=model,
                messages=[
                    m if isinstance(m, ChatMessage) else ChatMessage(m["role"], m["content"])
                    for m in messages
                ],
                temperature=options.get("temperature"),
                max_tokens=options.get("max_tokens"),
                collection_id=options.get("collection_id"),
            )
        )
        if not isinstance(response, ChatResponse):
            raise MalformedResponseError(
                f"{self.display_name} returned a stream for a non-streaming call",
                provider=self.name,
            )
        return response

    async def aclose(self) -> None:
        """Release pooled connections."""


# =============================================================================
# HTTP Implementations
# =============================================================================


class _HTTPProvider(LLMProvider):
    """Shared httpx plumbing and error mapping."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        *,
        timeout: float = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client (lazy initialization)."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def _build_request(self, options: ChatOptions) -> httpx.Request:
        """Build the HTTP request for a chat call."""

    @abstractmethod
    def _parse_response(self, payload: Any) -> ChatResponse:
        """Translate a decoded 2xx body into a ChatResponse."""

    async def chat(self, options: ChatOptions) -> Union[ChatResponse, ByteStream]:
        client = self._get_client()
        request = self._build_request(options)

        try:
            response = await client.send(request, stream=options.stream)
        except httpx.HTTPError as exc:
            self._handle_transport_error(exc)

        if response.status_code >= 400:
            if options.stream:
                await response.aread()
                await response.aclose()
            self._handle_api_error(response)

        if options.stream:
            return ByteStream(response)

        try:
            payload = response.json()
        except ValueError:
            raise MalformedResponseError(
                f"{self.display_name} API returned a non-JSON body", provider=self.name
            )
        return self._parse_response(payload)

    def _handle_api_error(self, response: httpx.Response) -> None:
        """Convert an HTTP error status into the error taxonomy."""
        status = response.status_code
        body = response.text[:_MAX_ERROR_BODY]
        message = f"{self.display_name} API Error: {status} - {body}"

        if status in (401, 403):
            raise AuthenticationError(message, provider=self.name, status_code=status)

        if status == 429:
            retry_after = None
            header = response.headers.get("retry-after")
            if header:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            raise RateLimitError(message, provider=self.name, retry_after=retry_after)

        if status >= 500:
            raise TransientBackendError(message, provider=self.name, status_code=status)

        raise LLMError(message, provider=self.name, status_code=status)

    def _handle_transport_error(self, error: httpx.HTTPError) -> None:
        """Convert an httpx transport failure into a transient error code."""
        if isinstance(error, httpx.TimeoutException):
            code = "ETIMEDOUT"
        elif isinstance(error, httpx.ConnectError):
            code = "ECONNREFUSED"
        else:
            code = "ECONNRESET"
        raise TransientBackendError(
            f"{self.display_name} request failed ({code}): {error}",
            provider=self.name,
            code=code,
        ) from error


class OpenAICompatibleProvider(_HTTPProvider):
    """Backend speaking the OpenAI ``/chat/completions`` protocol."""

    name = "openai-compatible"
    display_name = "OpenAI-compatible"

    def _endpoint(self, options: ChatOptions) -> str:
        return "/chat/completions"

    def _build_request(self, options: ChatOptions) -> httpx.Request:
        return self._get_client().build_request(
            "POST", self._endpoint(options), json=self._build_body(options)
        )

    def _build_body(self, options: ChatOptions) -> Dict[str, Any]:
        return options.to_payload()

    def _parse_response(self, payload: Any) -> ChatResponse:
        return ChatResponse.from_payload(payload, provider=self.name)

    @classmethod
    def from_config(
        cls,
        config: LLMConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OpenAICompatibleProvider":
        return cls(
            config.get_api_key(),
            config.get_base_url(),
            timeout=config.timeout,
            transport=transport,
        )


class VultrProvider(OpenAICompatibleProvider):
    """Vultr Serverless Inference.

    Calls carrying a ``collection_id`` go to the RAG endpoint, which grounds
    the answer in the documents of that vector-store collection.
    """

    name = "vultr"
    display_name = "Vultr"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URLS[LLMProviderType.VULTR],
        **kwargs: Any,
    ):
        if not api_key:
            raise ConfigurationError("API key is required", provider=self.name)
        super().__init__(api_key, base_url, **kwargs)

    def _endpoint(self, options: ChatOptions) -> str:
        if options.collection_id:
            return "/chat/completions/RAG"
        return "/chat/completions"

    def _build_body(self, options: ChatOptions) -> Dict[str, Any]:
        body = options.to_payload()
        if options.collection_id:
            body["collection"] = options.collection_id
        return body


class SambaNovaProvider(OpenAICompatibleProvider):
    """SambaNova Cloud (OpenAI-compatible endpoint)."""

    name = "sambanova"
    display_name = "SambaNova"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URLS[LLMProviderType.SAMBANOVA],
        **kwargs: Any,
    ):
        super().__init__(api_key, base_url, **kwargs)


class LocalProvider(OpenAICompatibleProvider):
    """OpenAI-compatible local server such as Ollama; the key is optional."""

    name = "local"
    display_name = "Local"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URLS[LLMProviderType.LOCAL],
        **kwargs: Any,
    ):
        super().__init__(api_key, base_url, **kwargs)


class CloudflareProvider(_HTTPProvider):
    """Cloudflare Workers AI REST API.

    Blocking responses have the shape ``{"result": {"response": "..."},
    "success": true}`` and are translated into the OpenAI ``choices`` shape.
    Streaming responses are SSE frames carrying ``{"response": "..."}``.
    """

    name = "cloudflare"
    display_name = "Cloudflare"

    def __init__(
        self,
        api_key: Optional[str],
        account_id: str,
        base_url: str = DEFAULT_BASE_URLS[LLMProviderType.CLOUDFLARE],
        **kwargs: Any,
    ):
        if not account_id:
            raise ConfigurationError("Cloudflare account ID is required", provider=self.name)
        super().__init__(api_key, base_url, **kwargs)
        self.account_id = account_id

    def _build_request(self, options: ChatOptions) -> httpx.Request:
        body = options.to_payload()
        body.pop("model")
        return self._get_client().build_request(
            "POST",
            f"/accounts/{self.account_id}/ai/run/{options.model}",
            json=body,
        )

    def _parse_response(self, payload: Any) -> ChatResponse:
        if isinstance(payload, dict) and payload.get("success") is False:
            errors = json.dumps(payload.get("errors", []))[:_MAX_ERROR_BODY]
            raise LLMError(
                f"{self.display_name} API Error: {errors}", provider=self.name
            )
        try:
            text = payload["result"]["response"]
        except (KeyError, TypeError):
            raise MalformedResponseError(
                "Response is missing result.response", provider=self.name
            )
        if not isinstance(text, str):
            raise MalformedResponseError(
                "result.response is not text", provider=self.name
            )
        response = ChatResponse.from_text(text)
        response.raw = payload
        return response

    @classmethod
    def from_config(
        cls,
        config: LLMConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CloudflareProvider":
        return cls(
            config.get_api_key(),
            config.get_account_id() or "",
            config.get_base_url(),
            timeout=config.timeout,
            transport=transport,
        )


# =============================================================================
# Provider Selection
# =============================================================================

PROVIDER_CLASSES: Dict[LLMProviderType, Type[_HTTPProvider]] = {
    LLMProviderType.VULTR: VultrProvider,
    LLMProviderType.SAMBANOVA: SambaNovaProvider,
    LLMProviderType.CLOUDFLARE: CloudflareProvider,
    LLMProviderType.LOCAL: LocalProvider,
}


def create_provider(
    config: LLMConfig,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> LLMProvider:
    """Construct the backend adapter selected by ``config.provider``.

    The configuration is validated first, so credential problems surface
    here rather than on the first call.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config.validate()
    provider_cls = PROVIDER_CLASSES[config.provider]
    provider = provider_cls.from_config(config, transport=transport)
    logger.debug(
        "Created %s provider for model %s", provider.name, config.model
    )
    return provider
