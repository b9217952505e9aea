"""Dispatch context propagation for log correlation.

Every call into the orchestrator runs inside a dispatch context that
carries a correlation ID, the logical role being served, and the start
time. The values live in contextvars so they follow the call across
``await`` boundaries and are picked up by the logging ContextFilter.

Usage:
    from role_dispatch.core.context import dispatch_context, get_dispatch_id

    with dispatch_context(role="primary") as ctx:
        print(ctx.dispatch_id)  # e.g., "dsp_a1b2c3d4e5f6"
"""

from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

__all__ = [
    "dispatch_id_var",
    "role_var",
    "start_time_var",
    "DispatchContext",
    "generate_dispatch_id",
    "dispatch_context",
    "get_dispatch_id",
    "get_role",
    "get_start_time",
    "get_current_context",
]

# -----------------------------------------------------------------------------
# Context Variables
# -----------------------------------------------------------------------------

dispatch_id_var: ContextVar[str] = ContextVar("dispatch_id", default="")
"""Correlation ID for a single dispatch call."""

role_var: ContextVar[str] = ContextVar("role", default="")
"""Logical role served by the current dispatch."""

start_time_var: ContextVar[float] = ContextVar("start_time", default=0.0)
"""Dispatch start time as Unix timestamp."""


def generate_dispatch_id(prefix: str = "dsp") -> str:
    """Generate a unique dispatch ID.

    Format: {prefix}_{12_hex_chars}

    Args:
        prefix: ID prefix (default: "dsp")

    Returns:
        Unique dispatch ID string
    """
    return f"{prefix}_{secrets.token_hex(6)}"


@dataclass
class DispatchContext:
    """Snapshot of the current dispatch context.

    Attributes:
        dispatch_id: Unique dispatch identifier
        role: Role being served
        start_time: Dispatch start timestamp
    """

    dispatch_id: str = ""
    role: str = ""
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since the dispatch started."""
        if self.start_time <= 0:
            return 0.0
        return (time.time() - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dispatch_id": self.dispatch_id,
            "role": self.role,
            "start_time": self.start_time,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@contextmanager
def dispatch_context(
    *,
    role: str,
    dispatch_id: Optional[str] = None,
) -> Generator[DispatchContext, None, None]:
    """Set dispatch context variables for the duration of the block.

    Works inside coroutines as well: contextvars are copied per task, so
    concurrent dispatches never see each other's values.

    Args:
        role: Role being served
        dispatch_id: Dispatch ID (auto-generated if None)

    Yields:
        DispatchContext snapshot
    """
    did = dispatch_id or generate_dispatch_id()
    start = time.time()

    token_id = dispatch_id_var.set(did)
    token_role = role_var.set(role)
    token_start = start_time_var.set(start)

    try:
        yield DispatchContext(dispatch_id=did, role=role, start_time=start)
    finally:
        dispatch_id_var.reset(token_id)
        role_var.reset(token_role)
        start_time_var.reset(token_start)


# -----------------------------------------------------------------------------
# Accessors
# -----------------------------------------------------------------------------


def get_dispatch_id() -> str:
    """Return the current dispatch ID, or empty string outside a dispatch."""
    return dispatch_id_var.get()


def get_role() -> str:
    """Return the role of the current dispatch."""
    return role_var.get()


def get_start_time() -> float:
    """Return the current dispatch start time."""
    return start_time_var.get()


def get_current_context() -> DispatchContext:
    """Return a snapshot of the current dispatch context."""
    return DispatchContext(
        dispatch_id=get_dispatch_id(),
        role=get_role(),
        start_time=get_start_time(),
    )
