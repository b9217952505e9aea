"""role-dispatch - role-based generation dispatch across LLM providers."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("role-dispatch")
except PackageNotFoundError:
    # Package not installed (development mode without editable install)
    __version__ = "0.1.0"

from role_dispatch.core.dispatch import (
    DispatchOptions,
    DispatchOrchestrator,
    ResponseEnvelope,
)
from role_dispatch.core.providers.registry import ProviderRegistry, build_default_registry

__all__ = [
    "__version__",
    "DispatchOptions",
    "DispatchOrchestrator",
    "ResponseEnvelope",
    "ProviderRegistry",
    "build_default_registry",
]
