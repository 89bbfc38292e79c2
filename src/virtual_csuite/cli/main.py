"""csuite CLI entry point.

JSON output for scripts and tools; streamed chat writes SSE frames.
"""

from typing import Optional

import click

from virtual_csuite.cli.config import create_context
from virtual_csuite.cli.registry import register_all_commands


@click.group()
@click.option(
    "--config",
    "config_file",
    envvar="VIRTUAL_CSUITE_CONFIG_FILE",
    type=click.Path(exists=False, dir_okay=False),
    help="Path to a virtual-csuite.toml config file.",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str]) -> None:
    """Virtual C-Suite - an AI board of executives.

    All commands output JSON envelopes for reliable parsing.
    """
    ctx.ensure_object(dict)
    # A context passed in through obj (tests) takes precedence
    if "cli_context" not in ctx.obj:
        ctx.obj["cli_context"] = create_context(config_file)


register_all_commands(cli)


if __name__ == "__main__":
    cli()
