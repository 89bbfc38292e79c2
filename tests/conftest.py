"""
Root pytest configuration and shared fixtures.
"""

import pytest

from virtual_csuite.core.resilience import RetryExecutor, RetryPolicy

from tests.fakes import RecordingSleep, RecordingTelemetry, ScriptedProvider

# Response contract version from responses.py
RESPONSE_CONTRACT_VERSION = "response-v2"


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(recording_sleep: RecordingSleep) -> RetryExecutor:
    """Default policy, no real waiting, no jitter."""
    return RetryExecutor(RetryPolicy(), sleep=recording_sleep, rng=lambda: 0.0)


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep real credentials and config files out of every test."""
    for var in (
        "VIRTUAL_CSUITE_CONFIG_FILE",
        "VIRTUAL_CSUITE_LOG_LEVEL",
        "VIRTUAL_CSUITE_STRUCTURED_LOGGING",
        "VIRTUAL_CSUITE_RETRY_MAX_ATTEMPTS",
        "VIRTUAL_CSUITE_RETRY_INITIAL_DELAY_MS",
        "VIRTUAL_CSUITE_RETRY_MAX_DELAY_MS",
        "VIRTUAL_CSUITE_TELEMETRY_ENABLED",
        "VIRTUAL_CSUITE_POSTHOG_API_KEY",
        "VIRTUAL_CSUITE_REPORTS_DIR",
        "VIRTUAL_CSUITE_LLM_PROVIDER",
        "VIRTUAL_CSUITE_LLM_API_KEY",
        "VIRTUAL_CSUITE_LLM_MODEL",
        "VIRTUAL_CSUITE_LLM_TIMEOUT",
        "VIRTUAL_CSUITE_LLM_BASE_URL",
        "VIRTUAL_CSUITE_LLM_ACCOUNT_ID",
        "VIRTUAL_CSUITE_LLM_COLLECTION_ID",
        "VULTR_API_KEY",
        "SAMBANOVA_API_KEY",
        "CLOUDFLARE_API_TOKEN",
        "CLOUDFLARE_ACCOUNT_ID",
    ):
        monkeypatch.delenv(var, raising=False)
