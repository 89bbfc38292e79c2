"""Command registry for the csuite CLI."""

import click

from virtual_csuite.cli.config import CLIContext


def get_context(ctx: click.Context) -> CLIContext:
    """Get the CLI context stored on the root click context.

    Raises:
        RuntimeError: If the group callback has not stored one.
    """
    obj = ctx.find_root().obj or {}
    if "cli_context" not in obj:
        raise RuntimeError("No CLI context available on the click context.")
    return obj["cli_context"]


def register_all_commands(cli: click.Group) -> None:
    """Register all commands with the CLI.

    Commands are imported lazily to avoid circular dependencies.
    """
    from virtual_csuite.cli.commands import analyze_cmd, chat_cmd, providers_cmd

    cli.add_command(analyze_cmd)
    cli.add_command(chat_cmd)
    cli.add_command(providers_cmd)

    @cli.command("version")
    def version() -> None:
        """Show CLI version information."""
        from virtual_csuite import __version__
        from virtual_csuite.cli.output import emit

        emit({"version": __version__, "name": "virtual-csuite"})
