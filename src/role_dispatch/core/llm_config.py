"""
Dispatch configuration parsing for role-dispatch.

Parses the [dispatch] section from role-dispatch.toml: the role table, the
fallback chains, retry and timeout settings, the structured output policy,
provider connection settings, and per-model pricing.

TOML Configuration Example:
    [dispatch]
    max_retries = 2                       # transient retries per candidate
    retry_base_delay = 1.0
    timeout_per_attempt = 120
    structured_output_policy = "strict"   # or "lenient"
    response_language = "English"

    [dispatch.roles.primary]
    provider = "anthropic"
    model = "claude-sonnet-4-5"
    max_tokens = 64000
    temperature = 0.2

    [dispatch.fallback_chains]
    primary = ["fallback", "research"]

    [dispatch.providers.ollama]
    base_url = "http://localhost:11434/v1"

    [dispatch.pricing."openai:gpt-4.1"]
    input = 2.0
    output = 8.0

Environment Variables (override TOML):
    - ROLE_DISPATCH_CONFIG: Path to the TOML file
    - ROLE_DISPATCH_<ROLE>_PROVIDER / _MODEL / _MAX_TOKENS / _TEMPERATURE / _BASE_URL
    - ROLE_DISPATCH_MAX_RETRIES: Transient retries per candidate
    - ROLE_DISPATCH_TIMEOUT: Per-attempt timeout in seconds
    - ROLE_DISPATCH_DEADLINE: Overall dispatch deadline in seconds
    - ROLE_DISPATCH_STRUCTURED_POLICY: "strict" or "lenient"
    - ROLE_DISPATCH_RESPONSE_LANGUAGE: Language appended to system prompts

Credential fallbacks (see resolve_api_key):
    - ROLE_DISPATCH_<PROVIDER>_API_KEY
    - The provider's vendor variable (OPENAI_API_KEY, ANTHROPIC_API_KEY)
"""

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from role_dispatch.core.errors import ConfigurationError
from role_dispatch.core.resilience import SLOW_TIMEOUT, BackoffPolicy
from role_dispatch.core.structured.emulator import StructuredOutputPolicy
from role_dispatch.core.usage import ModelPricing

if TYPE_CHECKING:
    from role_dispatch.core.providers.base import ProviderDescriptor
    from role_dispatch.core.providers.registry import AdapterSettings
    from role_dispatch.core.roles import Candidate


logger = logging.getLogger(__name__)

ENV_PREFIX = "ROLE_DISPATCH_"

DEFAULT_CONFIG_PATHS = (
    Path("role-dispatch.toml"),
    Path(".role-dispatch.toml"),
    Path.home() / ".config" / "role-dispatch" / "config.toml",
)

# Fallback order per built-in role when [dispatch.fallback_chains] is silent
DEFAULT_FALLBACK_CHAINS: Dict[str, Tuple[str, ...]] = {
    "primary": ("fallback", "research"),
    "research": ("fallback", "primary"),
    "fallback": ("primary", "research"),
}

ROLE_ALIASES: Dict[str, str] = {"main": "primary"}


def normalize_role(role: str) -> str:
    """Canonical role name: lower-case, aliases resolved."""
    name = (role or "").strip().lower()
    return ROLE_ALIASES.get(name, name)


def _env_token(name: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", name.upper())


# =============================================================================
# Role and provider settings
# =============================================================================


@dataclass(frozen=True)
class RoleConfig:
    """Provider/model parameters for one logical role.

    Attributes:
        role: Role name (e.g., "primary", "research", "fallback")
        provider: Registered provider name
        model_id: Model identifier (None uses the provider default)
        max_output_tokens: Output token limit for this role
        temperature: Sampling temperature for this role
        base_url: Endpoint override for this role
    """

    role: str
    provider: str
    model_id: Optional[str] = None
    max_output_tokens: int = 4096
    temperature: float = 0.2
    base_url: Optional[str] = None

    def validate(self) -> None:
        if not self.provider:
            raise ConfigurationError(f"Role '{self.role}' has no provider configured")
        if self.max_output_tokens <= 0:
            raise ConfigurationError(
                f"Role '{self.role}': max_tokens must be positive, got {self.max_output_tokens}"
            )
        if not 0 <= self.temperature <= 2:
            raise ConfigurationError(
                f"Role '{self.role}': temperature must be between 0 and 2, got {self.temperature}"
            )

    @classmethod
    def from_dict(cls, role: str, data: Dict[str, Any]) -> "RoleConfig":
        try:
            return cls(
                role=normalize_role(role),
                provider=str(data.get("provider", "")).strip().lower(),
                model_id=data.get("model") or data.get("model_id"),
                max_output_tokens=int(data.get("max_tokens", data.get("max_output_tokens", 4096))),
                temperature=float(data.get("temperature", 0.2)),
                base_url=data.get("base_url"),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid settings for role '{role}': {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "provider": self.provider,
            "model": self.model_id,
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "base_url": self.base_url,
        }


@dataclass(frozen=True)
class ProviderSettings:
    """Connection settings for a provider, shared by every role using it."""

    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderSettings":
        return cls(api_key=data.get("api_key"), base_url=data.get("base_url"))


DEFAULT_ROLES: Dict[str, RoleConfig] = {
    "primary": RoleConfig(role="primary", provider="anthropic", model_id="claude-sonnet-4-5", max_output_tokens=64000),
    "research": RoleConfig(role="research", provider="openai", model_id="gpt-4.1", max_output_tokens=32768, temperature=0.1),
    "fallback": RoleConfig(role="fallback", provider="openai", model_id="gpt-4.1-mini", max_output_tokens=32768),
}


# =============================================================================
# Dispatch configuration
# =============================================================================


@dataclass
class DispatchConfig:
    """Dispatch configuration parsed from role-dispatch.toml.

    Attributes:
        roles: Role name -> RoleConfig
        fallback_chains: Role name -> ordered fallback role names
        max_retries: Transient retries on the same candidate before advancing
        retry_base_delay: Delay before the first retry, in seconds
        retry_max_delay: Upper bound for any backoff delay
        retry_jitter: Randomize backoff delays
        timeout_per_attempt: Per-attempt timeout in seconds (None disables)
        deadline: Overall dispatch deadline in seconds (None disables)
        structured_output_policy: Exhaustion policy for emulated structured output
        structured_max_retries: Default corrective retries for emulation
        temperature_step: Temperature increase per corrective retry
        temperature_ceiling: Upper bound for raised temperatures
        response_language: Language the model is told to answer in
        providers: Provider name -> connection settings
        pricing: "provider:model" -> cost per 1M tokens
    """

    roles: Dict[str, RoleConfig] = field(default_factory=lambda: dict(DEFAULT_ROLES))
    fallback_chains: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_FALLBACK_CHAINS))
    max_retries: int = 2
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: bool = False
    timeout_per_attempt: Optional[float] = SLOW_TIMEOUT
    deadline: Optional[float] = None
    structured_output_policy: StructuredOutputPolicy = StructuredOutputPolicy.STRICT
    structured_max_retries: int = 2
    temperature_step: float = 0.2
    temperature_ceiling: float = 1.0
    response_language: Optional[str] = None
    providers: Dict[str, ProviderSettings] = field(default_factory=dict)
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def get_role(self, role: str) -> Optional[RoleConfig]:
        return self.roles.get(normalize_role(role))

    def get_fallback_chain(self, role: str) -> Tuple[str, ...]:
        return tuple(self.fallback_chains.get(normalize_role(role), ()))

    def get_provider_settings(self, provider: str) -> ProviderSettings:
        return self.providers.get(provider, ProviderSettings())

    def get_pricing(self, provider: str, model: Optional[str]) -> Optional[ModelPricing]:
        if model and f"{provider}:{model}" in self.pricing:
            return self.pricing[f"{provider}:{model}"]
        return self.pricing.get(model or "")

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def with_role(self, role_config: RoleConfig) -> "DispatchConfig":
        """Return a copy with one role added or replaced."""
        roles = dict(self.roles)
        roles[role_config.role] = role_config
        return replace(self, roles=roles)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if "primary" not in self.roles:
            raise ConfigurationError("A 'primary' role must be configured")
        for role_config in self.roles.values():
            role_config.validate()
        for role, chain in self.fallback_chains.items():
            if not all(isinstance(entry, str) and entry for entry in chain):
                raise ConfigurationError(f"Fallback chain for '{role}' must list role names")
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.structured_max_retries < 0:
            raise ConfigurationError(
                f"structured_max_retries must be >= 0, got {self.structured_max_retries}"
            )
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")
        if self.timeout_per_attempt is not None and self.timeout_per_attempt <= 0:
            raise ConfigurationError(f"timeout_per_attempt must be positive, got {self.timeout_per_attempt}")
        if self.deadline is not None and self.deadline <= 0:
            raise ConfigurationError(f"deadline must be positive, got {self.deadline}")
        if not 0 < self.temperature_ceiling <= 2:
            raise ConfigurationError(
                f"temperature_ceiling must be in (0, 2], got {self.temperature_ceiling}"
            )

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def from_toml(cls, path: Path) -> "DispatchConfig":
        """Load dispatch configuration from a TOML file.

        Raises:
            FileNotFoundError: If the config file doesn't exist
            ConfigurationError: If the configuration is invalid
        """
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "rb") as f:
            data = tomllib.load(f)

        return cls.from_dict(data.get("dispatch", {}))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchConfig":
        """Create DispatchConfig from a dictionary (the [dispatch] section).

        Roles listed in the data replace the defaults of the same name; the
        remaining default roles are kept.
        """
        config = cls()

        roles = dict(config.roles)
        for role_name, role_data in (data.get("roles") or {}).items():
            if not isinstance(role_data, dict):
                raise ConfigurationError(f"Role '{role_name}' must be a table")
            role_config = RoleConfig.from_dict(role_name, role_data)
            roles[role_config.role] = role_config
        config.roles = roles

        chains = dict(config.fallback_chains)
        for role_name, chain in (data.get("fallback_chains") or {}).items():
            if isinstance(chain, str):
                chain = [chain]
            if not isinstance(chain, list):
                raise ConfigurationError(f"Fallback chain for '{role_name}' must be a list")
            chains[normalize_role(role_name)] = tuple(normalize_role(str(r)) for r in chain)
        config.fallback_chains = chains

        try:
            if "max_retries" in data:
                config.max_retries = int(data["max_retries"])
            if "retry_base_delay" in data:
                config.retry_base_delay = float(data["retry_base_delay"])
            if "retry_max_delay" in data:
                config.retry_max_delay = float(data["retry_max_delay"])
            if "retry_jitter" in data:
                config.retry_jitter = bool(data["retry_jitter"])
            if "timeout_per_attempt" in data:
                config.timeout_per_attempt = _optional_seconds(data["timeout_per_attempt"])
            if "deadline" in data:
                config.deadline = _optional_seconds(data["deadline"])
            if "structured_max_retries" in data:
                config.structured_max_retries = int(data["structured_max_retries"])
            if "temperature_step" in data:
                config.temperature_step = float(data["temperature_step"])
            if "temperature_ceiling" in data:
                config.temperature_ceiling = float(data["temperature_ceiling"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid [dispatch] setting: {exc}") from exc

        if "structured_output_policy" in data:
            config.structured_output_policy = _parse_policy(data["structured_output_policy"])

        if data.get("response_language"):
            config.response_language = str(data["response_language"])

        config.providers = {
            str(name).lower(): ProviderSettings.from_dict(settings)
            for name, settings in (data.get("providers") or {}).items()
            if isinstance(settings, dict)
        }

        pricing = {}
        for key, price in (data.get("pricing") or {}).items():
            if not isinstance(price, dict):
                continue
            pricing[key] = ModelPricing(
                input=float(price.get("input", 0.0)),
                output=float(price.get("output", 0.0)),
                currency=str(price.get("currency", "USD")),
            )
        config.pricing = pricing

        return config

    @classmethod
    def from_env(cls, base: Optional["DispatchConfig"] = None) -> "DispatchConfig":
        """Apply ROLE_DISPATCH_* environment overrides to a config.

        Args:
            base: Config to override (defaults to a fresh DispatchConfig)

        Returns:
            New DispatchConfig with environment overrides applied
        """
        config = replace(base) if base is not None else cls()
        config.roles = dict(config.roles)

        role_names = set(config.roles) | set(DEFAULT_FALLBACK_CHAINS)
        for role_name in sorted(role_names):
            token = f"{ENV_PREFIX}{_env_token(role_name)}_"
            updates: Dict[str, Any] = {}
            if provider := os.environ.get(f"{token}PROVIDER"):
                updates["provider"] = provider.strip().lower()
            if model := os.environ.get(f"{token}MODEL"):
                updates["model_id"] = model
            if base_url := os.environ.get(f"{token}BASE_URL"):
                updates["base_url"] = base_url
            if max_tokens := os.environ.get(f"{token}MAX_TOKENS"):
                try:
                    updates["max_output_tokens"] = int(max_tokens)
                except ValueError:
                    logger.warning("Invalid %sMAX_TOKENS: %s, using configured value", token, max_tokens)
            if temperature := os.environ.get(f"{token}TEMPERATURE"):
                try:
                    updates["temperature"] = float(temperature)
                except ValueError:
                    logger.warning("Invalid %sTEMPERATURE: %s, using configured value", token, temperature)
            if not updates:
                continue
            existing = config.roles.get(role_name)
            if existing is None:
                if "provider" not in updates:
                    logger.warning("Ignoring %s* overrides: role '%s' has no provider", token, role_name)
                    continue
                existing = RoleConfig(role=role_name, provider=updates["provider"])
            config.roles[role_name] = replace(existing, **updates)

        if max_retries := os.environ.get(f"{ENV_PREFIX}MAX_RETRIES"):
            try:
                config.max_retries = int(max_retries)
            except ValueError:
                logger.warning("Invalid %sMAX_RETRIES: %s, using configured value", ENV_PREFIX, max_retries)

        if timeout := os.environ.get(f"{ENV_PREFIX}TIMEOUT"):
            try:
                config.timeout_per_attempt = _optional_seconds(float(timeout))
            except ValueError:
                logger.warning("Invalid %sTIMEOUT: %s, using configured value", ENV_PREFIX, timeout)

        if deadline := os.environ.get(f"{ENV_PREFIX}DEADLINE"):
            try:
                config.deadline = _optional_seconds(float(deadline))
            except ValueError:
                logger.warning("Invalid %sDEADLINE: %s, using configured value", ENV_PREFIX, deadline)

        if policy := os.environ.get(f"{ENV_PREFIX}STRUCTURED_POLICY"):
            try:
                config.structured_output_policy = _parse_policy(policy)
            except ConfigurationError:
                logger.warning("Invalid %sSTRUCTURED_POLICY: %s, using configured value", ENV_PREFIX, policy)

        if language := os.environ.get(f"{ENV_PREFIX}RESPONSE_LANGUAGE"):
            config.response_language = language

        return config


def _optional_seconds(value: Any) -> Optional[float]:
    seconds = float(value)
    return seconds if seconds > 0 else None


def _parse_policy(value: Any) -> StructuredOutputPolicy:
    try:
        return StructuredOutputPolicy(str(value).strip().lower())
    except ValueError:
        valid = [p.value for p in StructuredOutputPolicy]
        raise ConfigurationError(f"Invalid structured_output_policy '{value}'. Must be one of: {valid}")


def load_dispatch_config(
    config_file: Optional[Path] = None,
    use_env_fallback: bool = True,
) -> DispatchConfig:
    """Load dispatch configuration from TOML with environment overrides.

    Priority (highest to lowest):
    1. Environment variables
    2. TOML config file (explicit, ROLE_DISPATCH_CONFIG, or default locations)
    3. Default values

    A file that exists but cannot be parsed raises ConfigurationError; a
    missing optional default file is skipped.
    """
    config = DispatchConfig()

    if config_file is None and os.environ.get(f"{ENV_PREFIX}CONFIG"):
        config_file = Path(os.environ[f"{ENV_PREFIX}CONFIG"])

    if config_file is not None:
        if not config_file.exists():
            raise ConfigurationError(f"Config file not found: {config_file}")
        config = _load_file(config_file)
    else:
        for path in DEFAULT_CONFIG_PATHS:
            if path.exists():
                config = _load_file(path)
                break

    if use_env_fallback:
        config = DispatchConfig.from_env(config)

    config.validate()
    return config


def _load_file(path: Path) -> DispatchConfig:
    try:
        config = DispatchConfig.from_toml(path)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Failed to parse {path}: {exc}") from exc
    logger.debug("Loaded dispatch config from %s", path)
    return config


# =============================================================================
# Credentials
# =============================================================================


def resolve_api_key(
    provider: str,
    config: DispatchConfig,
    api_key_env: Optional[str] = None,
) -> Optional[str]:
    """Resolve the credential for a provider.

    Priority:
    1. [dispatch.providers.<name>].api_key
    2. ROLE_DISPATCH_<PROVIDER>_API_KEY
    3. The provider's vendor variable (api_key_env)
    """
    settings = config.get_provider_settings(provider)
    if settings.api_key:
        return settings.api_key

    if key := os.environ.get(f"{ENV_PREFIX}{_env_token(provider)}_API_KEY"):
        return key

    if api_key_env:
        return os.environ.get(api_key_env) or None

    return None


def resolve_adapter_settings(
    config: DispatchConfig,
    candidate: "Candidate",
    descriptor: "ProviderDescriptor",
) -> "AdapterSettings":
    """Resolve the credential and endpoint an adapter is constructed with.

    Base URL priority: role base_url, provider settings, descriptor default.
    """
    from role_dispatch.core.providers.registry import AdapterSettings

    provider_settings = config.get_provider_settings(candidate.provider)
    return AdapterSettings(
        api_key=resolve_api_key(candidate.provider, config, descriptor.api_key_env),
        base_url=candidate.base_url or provider_settings.base_url or descriptor.default_base_url,
    )


# =============================================================================
# Global configuration instance
# =============================================================================

_dispatch_config: Optional[DispatchConfig] = None


def get_dispatch_config() -> DispatchConfig:
    """Get the global dispatch configuration (loaded on first call)."""
    global _dispatch_config
    if _dispatch_config is None:
        _dispatch_config = load_dispatch_config()
    return _dispatch_config


def set_dispatch_config(config: DispatchConfig) -> None:
    """Set the global dispatch configuration instance."""
    global _dispatch_config
    _dispatch_config = config


def reset_dispatch_config() -> None:
    """Reset the global dispatch configuration to None.

    Useful for testing or reloading configuration.
    """
    global _dispatch_config
    _dispatch_config = None


__all__ = [
    "ENV_PREFIX",
    "DEFAULT_CONFIG_PATHS",
    "DEFAULT_FALLBACK_CHAINS",
    "DEFAULT_ROLES",
    "normalize_role",
    "RoleConfig",
    "ProviderSettings",
    "DispatchConfig",
    "load_dispatch_config",
    "resolve_api_key",
    "resolve_adapter_settings",
    "get_dispatch_config",
    "set_dispatch_config",
    "reset_dispatch_config",
]
