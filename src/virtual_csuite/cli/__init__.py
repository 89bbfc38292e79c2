"""csuite - command-line interface to the virtual C-Suite engine.

Commands emit response-v2 JSON envelopes on stdout (errors on stderr);
``chat --stream`` writes SSE frames instead.
"""

from virtual_csuite.cli.config import CLIContext, create_context
from virtual_csuite.cli.logging import cli_command, get_cli_logger, get_request_id
from virtual_csuite.cli.main import cli
from virtual_csuite.cli.output import emit, emit_error, emit_success
from virtual_csuite.cli.registry import get_context

__all__ = [
    # Entry point
    "cli",
    # Context
    "CLIContext",
    "create_context",
    "get_context",
    # Output
    "emit",
    "emit_error",
    "emit_success",
    # Logging
    "cli_command",
    "get_cli_logger",
    "get_request_id",
]
