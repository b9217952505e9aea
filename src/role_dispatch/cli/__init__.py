"""role-dispatch CLI.

JSON-only output: every command prints a single JSON envelope.
"""

from role_dispatch.cli.main import cli
from role_dispatch.cli.output import emit, emit_error, emit_success

__all__ = [
    "cli",
    "emit",
    "emit_error",
    "emit_success",
]
