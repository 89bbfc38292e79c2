"""csuite CLI module entry point.

Enables running the CLI via: python -m virtual_csuite.cli
"""

from virtual_csuite.cli.main import cli

if __name__ == "__main__":
    cli()
