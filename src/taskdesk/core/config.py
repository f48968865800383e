"""Application configuration management.

Handles loading and validating configuration from multiple sources:
    - TOML/JSON config files
    - Environment variables (TASKDESK_* prefix)
    - Default values

Key components:
    - AppConfig: Main configuration model
    - load_config(): Safe config loading with fallback
    - ConfigLoadResult: Metadata about config source
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from unittest.mock import patch

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_ENV_VAR = "TASKDESK_CONFIG"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or validated."""


# -----------------------------------------------------------------------------
# Sub-configuration Models
# -----------------------------------------------------------------------------


class TaskConfig(BaseModel):
    """Task orchestration behaviour."""

    smart_task_state: bool = Field(
        default=False,
        description="Ask the model to classify the task state after an agent run.",
    )
    worktree_symlink_folders: list[str] = Field(
        default_factory=list,
        description="Shared folders symlinked from the repository into each worktree.",
    )
    notifications_enabled: bool = Field(
        default=True, description="Publish notification events when a task needs attention."
    )
    default_mode: str = Field(default="agent", description="Mode used when none is given.")
    token_estimate_delay: float = Field(
        default=0.5, description="Quiet period in seconds before the token estimate refreshes."
    )


class WorktreeConfig(BaseModel):
    """Worktree placement and integration defaults."""

    tasks_dir: str = Field(
        default=".taskdesk",
        description="Directory (relative to the repository root) holding task data and worktrees.",
    )
    default_target_branch: str | None = Field(
        default=None,
        description="Branch to integrate into; the repository's current branch when unset.",
    )

    @field_validator("tasks_dir")
    @classmethod
    def tasks_dir_is_relative(cls, value: str) -> str:
        path = Path(value)
        if path.is_absolute() or ".." in path.parts or not value.strip():
            raise ValueError("tasks_dir must be a relative path inside the repository")
        return value


class AgentConfig(BaseModel):
    """Model settings for the provider-backed executor."""

    default_model: str = Field(
        default="claude-sonnet-4-5", description="Model used for agent runs and text generation."
    )
    max_tokens: int = Field(default=8192, description="Maximum tokens per completion.")
    compact_model: str | None = Field(
        default=None, description="Optional cheaper model for compaction and commit messages."
    )


@dataclass
class ConfigLoadResult:
    path: Path
    file_loaded: bool
    env_overrides: set[str]
    error: str | None = None


class AppConfig(BaseSettings):
    """Application-wide configuration with nested sub-configs."""

    model_config = SettingsConfigDict(
        env_prefix="TASKDESK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Log level for taskdesk output.")
    task: TaskConfig = Field(default_factory=TaskConfig)
    worktree: WorktreeConfig = Field(default_factory=WorktreeConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
        PydanticBaseSettingsSource,
    ]:
        # Environment variables override config file entries.
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


def _resolve_config_path(config_path: Path | None, env_vars: Mapping[str, str]) -> Path:
    candidate = config_path or env_vars.get(CONFIG_ENV_VAR) or (Path.home() / ".taskdesk.toml")
    return Path(candidate).expanduser()


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}

    raw = path.read_text(encoding="utf-8")
    parser = json.loads if path.suffix.lower() == ".json" else tomllib.loads

    try:
        data = parser(raw)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Syntax error in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config root in {path} must be a mapping.")

    return data


def _detect_env_overrides(env_vars: Mapping[str, str]) -> set[str]:
    """Detect which fields are overridden by environment variables.

    For nested models, detects vars like TASKDESK_TASK__SMART_TASK_STATE.
    """
    prefix = AppConfig.model_config.get("env_prefix", "")
    delimiter = AppConfig.model_config.get("env_nested_delimiter", "__")
    overrides: set[str] = set()

    if f"{prefix}LOG_LEVEL" in env_vars:
        overrides.add("log_level")

    nested_models: dict[str, type[BaseModel]] = {
        "task": TaskConfig,
        "worktree": WorktreeConfig,
        "agent": AgentConfig,
    }
    for group_name, model_cls in nested_models.items():
        for field in model_cls.model_fields:
            env_key = f"{prefix}{group_name}{delimiter}{field}".upper()
            if env_key in env_vars:
                overrides.add(f"{group_name}.{field}")

    return overrides


def load_config(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> tuple[AppConfig, ConfigLoadResult]:
    """
    Load configuration with Safe Mode fallback.
    If the file is invalid, returns default config + error message.
    """
    env_vars: Mapping[str, str] = os.environ if env is None else {**os.environ, **env}
    resolved_path = _resolve_config_path(config_path, env_vars)
    env_overrides = _detect_env_overrides(env_vars)

    error: str | None = None
    file_loaded = False
    file_data: dict[str, Any] = {}

    try:
        file_data = _read_config_file(resolved_path)
        file_loaded = resolved_path.exists()
    except ConfigError as exc:
        error = str(exc)

    context_manager = (
        patch.dict(os.environ, env_vars, clear=False) if env is not None else nullcontext()
    )

    try:
        with context_manager:
            config = AppConfig(**file_data)
    except ValidationError as exc:
        error = str(exc)
        config = AppConfig()

    return config, ConfigLoadResult(
        path=resolved_path,
        file_loaded=file_loaded,
        env_overrides=env_overrides,
        error=error,
    )


__all__ = [
    "AgentConfig",
    "AppConfig",
    "CONFIG_ENV_VAR",
    "ConfigError",
    "ConfigLoadResult",
    "TaskConfig",
    "WorktreeConfig",
    "load_config",
]
