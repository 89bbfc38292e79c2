"""CLI command modules."""

from virtual_csuite.cli.commands.analyze import analyze_cmd
from virtual_csuite.cli.commands.chat import chat_cmd
from virtual_csuite.cli.commands.providers import providers_cmd

__all__ = ["analyze_cmd", "chat_cmd", "providers_cmd"]
