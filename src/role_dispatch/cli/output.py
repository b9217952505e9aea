"""JSON output helpers for the role-dispatch CLI.

This module is the sole output mechanism for the CLI. Success envelopes go
to stdout, error envelopes to stderr, both as minified JSON.
"""

import json
import sys
from typing import Any, Mapping, NoReturn, Optional

from role_dispatch.core.context import get_dispatch_id


def emit(data: Any) -> None:
    """Emit JSON to stdout.

    Args:
        data: Any JSON-serializable data structure.
    """
    print(json.dumps(data, separators=(",", ":"), default=str))


def emit_success(data: Any, *, telemetry: Optional[Mapping[str, Any]] = None) -> None:
    """Emit a success envelope to stdout.

    Non-dict data is wrapped in a ``result`` key.
    """
    payload = data if isinstance(data, dict) else {"result": data}
    envelope: dict = {"success": True, "data": payload, "error": None}
    if telemetry:
        envelope["meta"] = {"telemetry": dict(telemetry)}
    emit(envelope)


def emit_error(
    message: str,
    code: str = "INTERNAL_ERROR",
    *,
    error_type: str = "internal",
    details: Optional[Mapping[str, Any]] = None,
) -> NoReturn:
    """Emit an error envelope to stderr and exit with code 1.

    Args:
        message: Human-readable error description.
        code: Error code in SCREAMING_SNAKE_CASE (e.g., CONFIGURATION_ERROR).
        error_type: Error category (configuration, exhausted, cancelled, ...).
        details: Optional additional error context.

    Raises:
        SystemExit: Always exits with code 1.
    """
    data: dict = {"error_code": code, "error_type": error_type}
    if details:
        data["details"] = dict(details)
    dispatch_id = get_dispatch_id()
    if dispatch_id:
        data["dispatch_id"] = dispatch_id
    envelope = {"success": False, "data": data, "error": message}
    print(json.dumps(envelope, separators=(",", ":"), default=str), file=sys.stderr)
    sys.exit(1)
