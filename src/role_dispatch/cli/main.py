"""role-dispatch CLI entry point.

Commands:
    roles      Resolved candidate chain for every configured role
    providers  Registered providers and their capabilities
    generate   Run a text or structured dispatch for a role
"""

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from role_dispatch.cli.output import emit_error, emit_success
from role_dispatch.core.dispatch import DispatchOptions, DispatchOrchestrator
from role_dispatch.core.errors import ConfigurationError, DispatchCancelledError, ExhaustedError
from role_dispatch.core.llm_config import DispatchConfig, load_dispatch_config
from role_dispatch.core.logging_config import configure_logging
from role_dispatch.core.providers.base import ChatMessage, system, user
from role_dispatch.core.providers.registry import ProviderRegistry, build_default_registry
from role_dispatch.core.roles import RoleResolver
from role_dispatch.core.usage import LoggingTelemetrySink

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _get_config(ctx: click.Context) -> DispatchConfig:
    config = ctx.obj.get("config")
    if config is None:
        try:
            config = load_dispatch_config(ctx.obj.get("config_path"))
        except ConfigurationError as exc:
            emit_error(exc.message, "CONFIGURATION_ERROR", error_type="configuration")
        ctx.obj["config"] = config
    return config


def _get_registry(ctx: click.Context) -> ProviderRegistry:
    registry = ctx.obj.get("registry")
    if registry is None:
        registry = build_default_registry()
        ctx.obj["registry"] = registry
    return registry


@click.group()
@click.option(
    "--config",
    "config_path",
    envvar="ROLE_DISPATCH_CONFIG",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to role-dispatch.toml",
)
@click.option(
    "--log-level",
    default="WARNING",
    show_default=True,
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
)
@click.option(
    "--log-format",
    default="human",
    show_default=True,
    type=click.Choice(["human", "structured"]),
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_level: str, log_format: str) -> None:
    """role-dispatch - serve logical roles across LLM providers.

    All commands output JSON.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    configure_logging(level=log_level, format=log_format, stream=sys.stderr)


@cli.command("roles")
@click.pass_context
def roles_cmd(ctx: click.Context) -> None:
    """Show the resolved candidate chain for each configured role."""
    config = _get_config(ctx)
    resolver = RoleResolver(config, _get_registry(ctx))
    emit_success({"roles": resolver.describe()})


@cli.command("providers")
@click.pass_context
def providers_cmd(ctx: click.Context) -> None:
    """List registered providers and their capabilities."""
    emit_success({"providers": _get_registry(ctx).describe()})


@cli.command("generate")
@click.option("--role", default="primary", show_default=True, help="Role to dispatch to")
@click.option("--prompt", required=True, help="User prompt")
@click.option("--system", "system_prompt", default=None, help="System prompt")
@click.option(
    "--schema",
    "schema_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON schema file; runs a structured dispatch",
)
@click.option("--temperature", type=float, default=None, help="Override the role temperature")
@click.option("--max-tokens", type=int, default=None, help="Override the role output token limit")
@click.pass_context
def generate_cmd(
    ctx: click.Context,
    role: str,
    prompt: str,
    system_prompt: Optional[str],
    schema_file: Optional[Path],
    temperature: Optional[float],
    max_tokens: Optional[int],
) -> None:
    """Run a dispatch and print the response envelope."""
    config = _get_config(ctx)
    registry = _get_registry(ctx)

    schema: Optional[Dict[str, Any]] = None
    if schema_file is not None:
        try:
            schema = json.loads(schema_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            emit_error(f"Could not read schema {schema_file}: {exc}", "INVALID_SCHEMA", error_type="validation")

    messages: List[ChatMessage] = []
    if system_prompt:
        messages.append(system(system_prompt))
    messages.append(user(prompt))

    orchestrator = DispatchOrchestrator(registry, config, telemetry_sink=LoggingTelemetrySink())
    options = DispatchOptions(temperature=temperature, max_tokens=max_tokens, command_name="generate")

    start = time.perf_counter()
    try:
        if schema is not None:
            envelope = asyncio.run(orchestrator.dispatch_structured(role, messages, schema, options))
        else:
            envelope = asyncio.run(orchestrator.dispatch(role, messages, options))
    except ConfigurationError as exc:
        emit_error(exc.message, "CONFIGURATION_ERROR", error_type="configuration")
    except DispatchCancelledError as exc:
        emit_error(exc.message, "CANCELLED", error_type="cancelled", details=exc.to_dict())
    except ExhaustedError as exc:
        emit_error(exc.message, "EXHAUSTED", error_type="exhausted", details=exc.to_dict())

    duration_ms = (time.perf_counter() - start) * 1000
    emit_success(envelope.to_dict(), telemetry={"duration_ms": round(duration_ms, 2)})


if __name__ == "__main__":
    cli()
