"""
Role resolution.

A role is a logical purpose ("primary", "research", "fallback", or any
custom name) that maps to a concrete provider and model. The resolver
expands a role into the ordered list of candidates the orchestrator will
try: the role's own configuration first, then each role named in its
fallback chain.

Example:
    >>> resolver = RoleResolver(config, registry)
    >>> [c.provider for c in resolver.resolve("primary")]
    ['anthropic', 'openai', 'ollama']
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from role_dispatch.core.errors import ConfigurationError
from role_dispatch.core.llm_config import DispatchConfig, RoleConfig, normalize_role
from role_dispatch.core.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Built-in roles. Any other string names a custom role."""

    PRIMARY = "primary"
    RESEARCH = "research"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Candidate:
    """One provider/model configuration to attempt.

    Attributes:
        role: Role whose configuration produced this candidate
        provider: Registered provider name
        model_id: Model to call
        max_tokens: Output token limit
        temperature: Sampling temperature
        base_url: Endpoint override
    """

    role: str
    provider: str
    model_id: str
    max_tokens: int
    temperature: float
    base_url: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, Optional[str]]:
        return (self.provider, self.model_id, self.base_url)

    @property
    def label(self) -> str:
        return f"{self.provider}/{self.model_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "provider": self.provider,
            "model": self.model_id,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "base_url": self.base_url,
        }


class RoleResolver:
    """Expands a role into its ordered candidate list.

    Resolution is a pure function of the configuration and the registry's
    registered names; it never constructs adapters.
    """

    def __init__(self, config: DispatchConfig, registry: ProviderRegistry):
        self.config = config
        self.registry = registry

    def _candidate(self, role_config: RoleConfig) -> Candidate:
        model = role_config.model_id
        if not model:
            descriptor = self.registry.descriptor(role_config.provider)
            model = descriptor.default_model
        if not model:
            raise ConfigurationError(
                f"Role '{role_config.role}' has no model and provider "
                f"'{role_config.provider}' has no default model"
            )
        return Candidate(
            role=role_config.role,
            provider=role_config.provider,
            model_id=model,
            max_tokens=role_config.max_output_tokens,
            temperature=role_config.temperature,
            base_url=role_config.base_url,
        )

    def resolve(self, role: str) -> List[Candidate]:
        """Return the non-empty, ordered candidate list for a role.

        Raises:
            ConfigurationError: If the role is unknown or its own provider
                is not registered
        """
        name = normalize_role(role)
        role_config = self.config.get_role(name)
        if role_config is None:
            known = sorted(self.config.roles)
            raise ConfigurationError(f"Unknown role '{role}'. Configured roles: {known}")
        if not self.registry.has(role_config.provider):
            raise ConfigurationError(
                f"Role '{name}' uses provider '{role_config.provider}', which is not registered. "
                f"Registered providers: {self.registry.names()}"
            )

        candidates = [self._candidate(role_config)]
        seen = {candidates[0].key}

        for fallback_name in self.config.get_fallback_chain(name):
            fallback_name = normalize_role(fallback_name)
            if fallback_name == name:
                continue
            fallback_config = self.config.get_role(fallback_name)
            if fallback_config is None:
                logger.warning("Skipping fallback role '%s' for '%s': not configured", fallback_name, name)
                continue
            if not self.registry.has(fallback_config.provider):
                logger.warning(
                    "Skipping fallback role '%s' for '%s': provider '%s' is not registered",
                    fallback_name,
                    name,
                    fallback_config.provider,
                )
                continue
            try:
                candidate = self._candidate(fallback_config)
            except ConfigurationError as exc:
                logger.warning("Skipping fallback role '%s' for '%s': %s", fallback_name, name, exc)
                continue
            if candidate.key in seen:
                continue
            seen.add(candidate.key)
            candidates.append(candidate)

        return candidates

    def describe(self) -> Dict[str, Any]:
        """Resolved chains for every configured role, for diagnostics."""
        result: Dict[str, Any] = {}
        for name in sorted(self.config.roles):
            try:
                result[name] = [c.to_dict() for c in self.resolve(name)]
            except ConfigurationError as exc:
                result[name] = {"error": exc.message}
        return result


__all__ = ["Role", "Candidate", "RoleResolver"]
