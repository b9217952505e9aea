"""Enables running the CLI via: python -m role_dispatch.cli"""

from role_dispatch.cli.main import cli

if __name__ == "__main__":
    cli()
