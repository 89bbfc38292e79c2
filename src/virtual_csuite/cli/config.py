"""CLI configuration and engine wiring.

Resolves the application configuration for a command and builds the
engine objects (backend adapter, telemetry sink, report store) from it.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from virtual_csuite.config import AppConfig
from virtual_csuite.core.llm_provider import LLMProvider, create_provider
from virtual_csuite.core.observability import TelemetrySink
from virtual_csuite.core.orchestration import AIOrchestrationService
from virtual_csuite.core.reports import (
    InMemoryReportStore,
    InMemoryResultStore,
    LocalDirectoryReportStore,
    ReportStore,
)


class CLIContext:
    """CLI execution context with resolved configuration.

    Holds the effective configuration for a CLI command, including
    any overrides from command-line options.
    """

    def __init__(self, config: AppConfig, reports_dir: Optional[str] = None):
        self._config = config
        self._reports_dir_override = reports_dir

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def reports_dir(self) -> Optional[Path]:
        """Report directory: --output-dir first, then configuration."""
        if self._reports_dir_override:
            return Path(self._reports_dir_override)
        return self._config.reports_dir

    def with_reports_dir(self, reports_dir: Optional[str]) -> "CLIContext":
        if not reports_dir:
            return self
        return CLIContext(self._config, reports_dir)

    def create_provider(self) -> LLMProvider:
        """Build the configured backend adapter.

        Raises:
            ConfigurationError: If the backend configuration is incomplete
        """
        return create_provider(self._config.llm)

    def create_telemetry(self) -> TelemetrySink:
        return self._config.telemetry.create_sink()

    def create_report_store(self) -> ReportStore:
        if self.reports_dir is not None:
            return LocalDirectoryReportStore(self.reports_dir)
        return InMemoryReportStore()

    def create_service(
        self, provider: LLMProvider, telemetry: Optional[TelemetrySink] = None
    ) -> AIOrchestrationService:
        llm = self._config.llm
        return AIOrchestrationService(
            provider,
            policy=self._config.retry,
            telemetry=telemetry,
            model=llm.model,
            result_store=InMemoryResultStore(),
            report_store=self.create_report_store(),
            collection_id=llm.collection_id,
        )

    @asynccontextmanager
    async def open_service(self) -> AsyncIterator[AIOrchestrationService]:
        """Yield a service wired from configuration; closes the HTTP clients on exit.

        Raises:
            ConfigurationError: If the backend configuration is incomplete
        """
        provider = self.create_provider()
        telemetry = self.create_telemetry()
        try:
            yield self.create_service(provider, telemetry)
        finally:
            await provider.aclose()
            close = getattr(telemetry, "aclose", None)
            if close is not None:
                await close()


def create_context(config_file: Optional[str] = None) -> CLIContext:
    """Load configuration, set up logging and return a CLI context."""
    config = AppConfig.from_env(config_file)
    config.setup_logging()
    return CLIContext(config)
