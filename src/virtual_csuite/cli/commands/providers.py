"""Provider listing command."""

import click

from virtual_csuite.cli.logging import cli_command
from virtual_csuite.cli.output import emit_success
from virtual_csuite.cli.registry import get_context
from virtual_csuite.core.llm_config import (
    API_KEY_ENV_VARS,
    DEFAULT_BASE_URLS,
    LLMConfig,
    LLMProviderType,
)


@click.command("providers")
@click.pass_context
@cli_command("providers")
def providers_cmd(ctx: click.Context) -> None:
    """List the supported backends and which one is configured."""
    configured = get_context(ctx).config.llm
    providers = []
    for provider in LLMProviderType:
        probe = LLMConfig(provider=provider)
        providers.append(
            {
                "provider": provider.value,
                "base_url": DEFAULT_BASE_URLS[provider],
                "api_key_env": API_KEY_ENV_VARS[provider] or None,
                "has_api_key": provider == LLMProviderType.LOCAL
                or bool(probe.get_api_key()),
                "selected": provider == configured.provider,
            }
        )
    emit_success(
        {
            "providers": providers,
            "model": configured.model,
            "count": len(providers),
        }
    )
