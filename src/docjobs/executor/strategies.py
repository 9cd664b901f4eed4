"""Executor presets: command template, environment, timeout and heartbeat cadence."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from docjobs.config import Settings
from docjobs.errors import ValidationError

DEFAULT_COMMAND_TEMPLATE = "{tool} analyze {repo_path} --profile {profile}"
TOOL_TOKEN_ENV = "DOCGEN_AUTH_TOKEN"

PRODUCTION_TIMEOUT_SECONDS = 3600.0
DEVELOPMENT_HEARTBEAT_SECONDS = 120.0


@dataclass(slots=True)
class ExecutorConfig:
    """Everything that differs between deployment contexts for one analysis run."""

    name: str
    tool_path: str
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    profile: str | None = None
    extra_args: tuple[str, ...] = ()
    timeout_seconds: float | None = None
    heartbeat_seconds: float | None = None
    output_dir_name: str = ".tutorial-output"
    inherit_env: bool = True
    env_drop_prefixes: tuple[str, ...] = ()
    env_overrides: dict[str, str] = field(default_factory=dict)
    required_env: tuple[str, ...] = ()
    required_binaries: tuple[str, ...] = ()
    auth_hint: str = "Authentication failed; check the analysis tool credentials."
    kill_grace_seconds: float = 2.0


def build_run_args(
    config: ExecutorConfig,
    *,
    repo_path: Path,
    profile: str | None = None,
) -> list[str]:
    """Render the command template into an argv list."""

    template = config.command_template.strip()
    if not template:
        raise ValidationError("Executor command template is empty.")
    if "{repo_path}" not in template:
        raise ValidationError("Executor command template must include {repo_path}.")

    effective_profile = profile or config.profile
    if effective_profile is None and " --profile {profile}" in template:
        template = template.replace(" --profile {profile}", "")
    try:
        rendered = template.format(
            tool=shlex.quote(config.tool_path),
            repo_path=shlex.quote(str(repo_path)),
            profile=shlex.quote(effective_profile or ""),
        )
    except (KeyError, IndexError) as error:
        raise ValidationError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ValidationError("Executor command template rendered empty command.")
    return [*argv, *config.extra_args]


def build_env(config: ExecutorConfig, *, base_env: dict[str, str] | None = None) -> dict[str, str]:
    """Assemble the subprocess environment."""

    source = dict(os.environ if base_env is None else base_env) if config.inherit_env else {}
    env = {
        key: value
        for key, value in source.items()
        if not any(key.startswith(prefix) for prefix in config.env_drop_prefixes)
    }
    env.update(config.env_overrides)
    return env


def build_executor_config(settings: Settings) -> ExecutorConfig:
    """Pick the preset for the configured executor mode."""

    executor = settings.executor
    if executor.mode == "development":
        config = ExecutorConfig(
            name="development",
            tool_path=executor.tool_path,
            profile="dev",
            extra_args=("--verbose",),
            timeout_seconds=executor.timeout_seconds,
            heartbeat_seconds=DEVELOPMENT_HEARTBEAT_SECONDS,
            output_dir_name=executor.output_dir_name,
            env_drop_prefixes=("DOCGEN_",),
            env_overrides={"DOCJOBS_MODE": "development"},
            auth_hint=(
                "Authentication issue: log in with the analysis tool on this host "
                f"or set {TOOL_TOKEN_ENV}."
            ),
        )
    elif executor.mode == "production":
        overrides = {"DOCJOBS_MODE": "production"}
        if executor.tool_token:
            overrides[TOOL_TOKEN_ENV] = executor.tool_token
        config = ExecutorConfig(
            name="production",
            tool_path=executor.tool_path,
            profile="production",
            timeout_seconds=executor.timeout_seconds or PRODUCTION_TIMEOUT_SECONDS,
            heartbeat_seconds=None,
            output_dir_name=executor.output_dir_name,
            env_overrides=overrides,
            required_env=(TOOL_TOKEN_ENV,),
            auth_hint=(
                f"Authentication issue detected: ensure DOCJOBS_TOOL_TOKEN ({TOOL_TOKEN_ENV}) "
                "is set and valid."
            ),
        )
    else:
        raise ValueError(f"Unsupported executor mode: {executor.mode!r}")

    if executor.command_template:
        config.command_template = executor.command_template
    return config
