"""
Application configuration for virtual-csuite.

Supports configuration via:
1. Environment variables (highest priority)
2. TOML config file (virtual-csuite.toml)
3. Default values (lowest priority)

Environment variables:
- VIRTUAL_CSUITE_CONFIG_FILE: Path to TOML config file
- VIRTUAL_CSUITE_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
- VIRTUAL_CSUITE_STRUCTURED_LOGGING: JSON log lines (true/false)
- VIRTUAL_CSUITE_RETRY_MAX_ATTEMPTS: Attempts per backend call
- VIRTUAL_CSUITE_RETRY_INITIAL_DELAY_MS: Delay before the first retry
- VIRTUAL_CSUITE_RETRY_MAX_DELAY_MS: Upper bound on any retry delay
- VIRTUAL_CSUITE_TELEMETRY_ENABLED: Master switch for telemetry (true/false)
- VIRTUAL_CSUITE_POSTHOG_API_KEY: Send analytics to PostHog
- VIRTUAL_CSUITE_REPORTS_DIR: Directory the CLI writes board reports to
- VIRTUAL_CSUITE_LLM_*: Backend selection, see ``virtual_csuite.core.llm_config``

Example virtual-csuite.toml:

    [logging]
    level = "INFO"
    structured = true

    [retry]
    max_attempts = 3
    initial_delay_ms = 1000
    max_delay_ms = 10000
    backoff_multiplier = 2.0

    [telemetry]
    enabled = true
    posthog_api_key = "phc_..."

    [llm]
    provider = "sambanova"
    model = "llama-3.3-70b"
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from virtual_csuite.core.llm_config import LLMConfig
from virtual_csuite.core.logging_config import configure_logging
from virtual_csuite.core.observability import (
    DEFAULT_POSTHOG_HOST,
    LoggingTelemetry,
    NullTelemetry,
    PostHogTelemetry,
    TelemetrySink,
)
from virtual_csuite.core.resilience import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ("virtual-csuite.toml", ".virtual-csuite.toml")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@dataclass
class TelemetryConfig:
    """Telemetry side-channel settings.

    Attributes:
        enabled: Master switch; disabled means a NullTelemetry sink
        posthog_api_key: When set, analytics go to PostHog instead of the log
        posthog_host: PostHog instance URL
    """

    enabled: bool = True
    posthog_api_key: Optional[str] = None
    posthog_host: str = DEFAULT_POSTHOG_HOST

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "TelemetryConfig":
        return cls(
            enabled=_parse_bool(data.get("enabled", True)),
            posthog_api_key=data.get("posthog_api_key") or None,
            posthog_host=str(data.get("posthog_host", DEFAULT_POSTHOG_HOST)),
        )

    def create_sink(self) -> TelemetrySink:
        if not self.enabled:
            return NullTelemetry()
        if self.posthog_api_key:
            return PostHogTelemetry(self.posthog_api_key, self.posthog_host)
        return LoggingTelemetry()


@dataclass
class AppConfig:
    """Application configuration with support for env vars and TOML overrides."""

    # Logging configuration
    log_level: str = "INFO"
    structured_logging: bool = True

    # Backend call policy
    retry: RetryPolicy = DEFAULT_RETRY_POLICY

    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    # Where the CLI stores board reports (None keeps them in memory)
    reports_dir: Optional[Path] = None

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "AppConfig":
        """
        Create configuration from environment variables and optional TOML file.

        Priority (highest to lowest):
        1. Environment variables
        2. TOML config file
        3. Default values
        """
        config = cls()

        toml_path = config_file or os.environ.get("VIRTUAL_CSUITE_CONFIG_FILE")
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            for default_path in DEFAULT_CONFIG_FILES:
                if Path(default_path).exists():
                    config._load_toml(Path(default_path))
                    break

        config._load_env()
        return config

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.error(f"Error loading config file {path}: {e}")
            return

        if "logging" in data:
            log = data["logging"]
            if "level" in log:
                self.log_level = str(log["level"]).upper()
            if "structured" in log:
                self.structured_logging = _parse_bool(log["structured"])

        if "retry" in data:
            try:
                self.retry = RetryPolicy.from_toml_dict(data["retry"], base=self.retry)
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid [retry] section in {path}: {e}, ignoring")

        if "telemetry" in data:
            self.telemetry = TelemetryConfig.from_toml_dict(data["telemetry"])

        if "llm" in data:
            self.llm = LLMConfig.from_dict(data["llm"])

        if "reports" in data and "dir" in data["reports"]:
            self.reports_dir = Path(data["reports"]["dir"])

    def _load_env(self) -> None:
        """Load configuration from environment variables."""
        if level := os.environ.get("VIRTUAL_CSUITE_LOG_LEVEL"):
            self.log_level = level.upper()

        if structured := os.environ.get("VIRTUAL_CSUITE_STRUCTURED_LOGGING"):
            self.structured_logging = _parse_bool(structured)

        retry_overrides: Dict[str, Any] = {}
        for env_var, key, parse in (
            ("VIRTUAL_CSUITE_RETRY_MAX_ATTEMPTS", "max_attempts", int),
            ("VIRTUAL_CSUITE_RETRY_INITIAL_DELAY_MS", "initial_delay_ms", float),
            ("VIRTUAL_CSUITE_RETRY_MAX_DELAY_MS", "max_delay_ms", float),
        ):
            if raw := os.environ.get(env_var):
                try:
                    retry_overrides[key] = parse(raw)
                except ValueError:
                    logger.warning(f"Invalid {env_var}: {raw}, ignoring")
        if retry_overrides:
            try:
                self.retry = dataclasses.replace(self.retry, **retry_overrides)
            except ValueError as e:
                logger.warning(f"Invalid retry override from environment: {e}, ignoring")

        if enabled := os.environ.get("VIRTUAL_CSUITE_TELEMETRY_ENABLED"):
            self.telemetry.enabled = _parse_bool(enabled)

        if posthog_key := os.environ.get("VIRTUAL_CSUITE_POSTHOG_API_KEY"):
            self.telemetry.posthog_api_key = posthog_key

        if reports_dir := os.environ.get("VIRTUAL_CSUITE_REPORTS_DIR"):
            self.reports_dir = Path(reports_dir)

        self.llm.apply_env_overrides()

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(
            level=self.log_level,
            format="structured" if self.structured_logging else "human",
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
