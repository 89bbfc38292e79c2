"""
LLM configuration parsing for virtual-csuite.

Parses the [llm] section from virtual-csuite.toml to select and configure the
inference backend. Provider selection is a closed enum validated once at load
time; per-call code never branches on provider strings.

TOML Configuration Example:
    [llm]
    provider = "vultr"            # "vultr", "sambanova", "cloudflare" or "local"
    api_key = "..."               # Optional: defaults to env var based on provider
    model = "llama-3.3-70b"       # Optional
    timeout = 60                  # Optional: request timeout in seconds (default: 60)
    collection_id = "..."         # Optional: Vultr RAG collection
    account_id = "..."            # Required for cloudflare

Environment Variables (override TOML values):
    - VIRTUAL_CSUITE_LLM_PROVIDER: Provider type
    - VIRTUAL_CSUITE_LLM_API_KEY: API key (takes precedence over provider-specific keys)
    - VIRTUAL_CSUITE_LLM_MODEL: Model identifier
    - VIRTUAL_CSUITE_LLM_TIMEOUT: Request timeout in seconds
    - VIRTUAL_CSUITE_LLM_BASE_URL: Custom API base URL
    - VIRTUAL_CSUITE_LLM_ACCOUNT_ID: Cloudflare account ID
    - VIRTUAL_CSUITE_LLM_COLLECTION_ID: Vultr RAG collection ID

Provider-specific fallbacks:
    - VULTR_API_KEY, SAMBANOVA_API_KEY, CLOUDFLARE_API_TOKEN
    - CLOUDFLARE_ACCOUNT_ID
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from virtual_csuite.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class LLMProviderType(str, Enum):
    """Supported inference backends."""

    VULTR = "vultr"
    SAMBANOVA = "sambanova"
    CLOUDFLARE = "cloudflare"
    LOCAL = "local"


DEFAULT_MODEL = "llama-3.3-70b"

DEFAULT_BASE_URLS: Dict[LLMProviderType, str] = {
    LLMProviderType.VULTR: "https://api.vultrinference.com/v1",
    LLMProviderType.SAMBANOVA: "https://api.sambanova.ai/v1",
    LLMProviderType.CLOUDFLARE: "https://api.cloudflare.com/client/v4",
    LLMProviderType.LOCAL: "http://localhost:11434/v1",
}

API_KEY_ENV_VARS: Dict[LLMProviderType, str] = {
    LLMProviderType.VULTR: "VULTR_API_KEY",
    LLMProviderType.SAMBANOVA: "SAMBANOVA_API_KEY",
    LLMProviderType.CLOUDFLARE: "CLOUDFLARE_API_TOKEN",
    LLMProviderType.LOCAL: "",  # Local servers typically don't need keys
}

MISSING_KEY_MESSAGES: Dict[LLMProviderType, str] = {
    LLMProviderType.VULTR: "Vultr API key is missing. Please update your settings.",
    LLMProviderType.SAMBANOVA: "SambaNova API key is missing. Please update your settings.",
    LLMProviderType.CLOUDFLARE: "Cloudflare API token is missing. Please update your settings.",
}

ANONYMOUS_NOT_ALLOWED = "Anonymous users are not allowed. Please log in."
INVALID_PROVIDER_CONFIG = "Invalid AI provider configuration."


def parse_provider(value: str) -> LLMProviderType:
    """Parse a provider string into the closed provider enum.

    Raises:
        ConfigurationError: If the string names no known provider
    """
    try:
        return LLMProviderType(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in LLMProviderType)
        raise ConfigurationError(
            f"{INVALID_PROVIDER_CONFIG} Unknown provider '{value}'; must be one of: {valid}"
        )


@dataclass
class UserSettings:
    """Per-user backend preferences stored by the settings collaborator.

    Attributes:
        user_id: Owner of the settings
        provider: Provider string as stored (validated on conversion)
        api_key: The user's key for that provider
        collection_id: Optional Vultr RAG collection for the user's documents
    """

    user_id: str
    provider: str
    api_key: Optional[str] = None
    collection_id: Optional[str] = None


@dataclass
class LLMConfig:
    """Backend configuration parsed from virtual-csuite.toml.

    Attributes:
        provider: Which backend implementation to construct
        api_key: API key (optional, falls back to env var)
        model: Model identifier used for every call
        base_url: Custom API base URL (optional)
        account_id: Cloudflare account ID (cloudflare only)
        timeout: Request timeout in seconds (default: 60)
        collection_id: Vultr RAG collection ID (optional)
        env_api_key: Whether get_api_key may fall back to environment variables
    """

    provider: LLMProviderType = LLMProviderType.VULTR
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    base_url: Optional[str] = None
    account_id: Optional[str] = None
    timeout: float = 60
    collection_id: Optional[str] = None
    env_api_key: bool = True

    def get_api_key(self) -> Optional[str]:
        """Get API key, falling back to environment variables if not set.

        Priority:
        1. Explicit api_key set in config
        2. VIRTUAL_CSUITE_LLM_API_KEY environment variable
        3. Provider-specific env var (VULTR_API_KEY, SAMBANOVA_API_KEY, ...)
        """
        if self.api_key:
            return self.api_key

        if not self.env_api_key:
            return None

        if unified_key := os.environ.get("VIRTUAL_CSUITE_LLM_API_KEY"):
            return unified_key

        env_var = API_KEY_ENV_VARS.get(self.provider, "")
        if env_var:
            return os.environ.get(env_var)

        return None

    def get_account_id(self) -> Optional[str]:
        return self.account_id or os.environ.get("CLOUDFLARE_ACCOUNT_ID")

    def get_base_url(self) -> str:
        return (self.base_url or DEFAULT_BASE_URLS[self.provider]).rstrip("/")

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: If credentials are missing or values invalid
        """
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")

        if not self.model:
            raise ConfigurationError("model must not be empty")

        if self.provider != LLMProviderType.LOCAL and not self.get_api_key():
            raise ConfigurationError(
                MISSING_KEY_MESSAGES[self.provider], provider=self.provider.value
            )

        if self.provider == LLMProviderType.CLOUDFLARE and not self.get_account_id():
            raise ConfigurationError(
                "Cloudflare account ID is missing. Please update your settings.",
                provider=self.provider.value,
            )

    @classmethod
    def from_toml(cls, path: Path) -> "LLMConfig":
        """Load LLM configuration from a TOML file.

        Raises:
            FileNotFoundError: If the config file doesn't exist
            ConfigurationError: If the provider is unknown
        """
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls.from_dict(data.get("llm", {}))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LLMConfig":
        """Create LLMConfig from a dictionary (typically the [llm] section)."""
        config = cls()

        if "provider" in data:
            config.provider = parse_provider(data["provider"])

        if "api_key" in data:
            config.api_key = data["api_key"]

        if "model" in data:
            config.model = str(data["model"])

        if "timeout" in data:
            config.timeout = float(data["timeout"])

        if "base_url" in data:
            config.base_url = data["base_url"]

        if "account_id" in data:
            config.account_id = data["account_id"]

        if "collection_id" in data:
            config.collection_id = data["collection_id"]

        return config

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create LLMConfig from environment variables only."""
        config = cls()
        config.apply_env_overrides()
        return config

    def apply_env_overrides(self) -> None:
        """Override fields from VIRTUAL_CSUITE_LLM_* environment variables.

        Invalid provider or timeout values are logged and ignored.
        """
        if provider := os.environ.get("VIRTUAL_CSUITE_LLM_PROVIDER"):
            try:
                self.provider = parse_provider(provider)
            except ConfigurationError:
                logger.warning(f"Invalid VIRTUAL_CSUITE_LLM_PROVIDER: {provider}, ignoring")

        if api_key := os.environ.get("VIRTUAL_CSUITE_LLM_API_KEY"):
            self.api_key = api_key

        if model := os.environ.get("VIRTUAL_CSUITE_LLM_MODEL"):
            self.model = model

        if timeout := os.environ.get("VIRTUAL_CSUITE_LLM_TIMEOUT"):
            try:
                self.timeout = float(timeout)
            except ValueError:
                logger.warning(f"Invalid VIRTUAL_CSUITE_LLM_TIMEOUT: {timeout}, ignoring")

        if base_url := os.environ.get("VIRTUAL_CSUITE_LLM_BASE_URL"):
            self.base_url = base_url

        if account_id := os.environ.get("VIRTUAL_CSUITE_LLM_ACCOUNT_ID"):
            self.account_id = account_id

        if collection_id := os.environ.get("VIRTUAL_CSUITE_LLM_COLLECTION_ID"):
            self.collection_id = collection_id

    @classmethod
    def from_user_settings(
        cls,
        requester_id: Optional[str],
        settings: Optional[UserSettings],
        *,
        defaults: Optional["LLMConfig"] = None,
    ) -> "LLMConfig":
        """Build a validated config from a user's stored backend settings.

        Server-side values (model, timeout, Cloudflare credentials) come from
        ``defaults``; the provider and key come from the user.

        Raises:
            ConfigurationError: For anonymous requesters, absent settings,
                unknown providers, or missing keys
        """
        if not requester_id or requester_id == "anonymous":
            raise ConfigurationError(ANONYMOUS_NOT_ALLOWED)
        if settings is None:
            raise ConfigurationError(INVALID_PROVIDER_CONFIG)

        base = defaults or cls()
        provider = parse_provider(settings.provider)
        config = cls(
            provider=provider,
            model=base.model,
            timeout=base.timeout,
            collection_id=settings.collection_id or base.collection_id,
        )
        if provider == LLMProviderType.CLOUDFLARE:
            config.api_key = base.api_key
            config.account_id = base.account_id
        else:
            # A user-chosen backend never receives a server env key
            config.api_key = settings.api_key or None
            config.env_api_key = False
            if not config.api_key and provider != LLMProviderType.LOCAL:
                raise ConfigurationError(
                    MISSING_KEY_MESSAGES[provider], provider=provider.value
                )
        if provider == base.provider:
            config.base_url = base.base_url

        config.validate()
        return config

