"""Application state and configuration."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from forkcascade.core.base import BaseConfig, BaseState
from forkcascade.core.log import Logger
from forkcascade.core.yaml_settings import YamlWithIncludesSettingsSource
from forkcascade.model.record import SyncState

# Modules available for template substitution in YAML files
# Usage: {platformdirs.user_log_dir}, {os.getcwd}, {Path.cwd}
TEMPLATE_NAMESPACE = {
    'os': os,
    'platformdirs': platformdirs,
    'Path': Path,
}

# ============================================================
# CONFIG MODELS (loaded from YAML/env/CLI)
# ============================================================


class GitConfig(BaseConfig):
    """Branch layout of the fork."""

    workdir: Path = Field(
        default=Path("."),
        description="Local clone used for merges and validation",
    )
    remote: str = Field(
        default="origin",
        description="Remote hosting the fork's branches",
    )
    remotes: list[str] = Field(
        default_factory=lambda: ["origin", "upstream"],
        description="Remote names; refs prefixed with one are already qualified",
    )
    upstream_ref: str = Field(
        default="upstream/main",
        description="Upstream ref the mirror branch reflects",
    )
    mirror_branch: str = Field(
        default="fork_upstream",
        description="Read-only mirror of upstream, never committed to",
    )
    staging_branch: str = Field(
        default="fork_integration",
        description="Integration branch where upstream meets local changes",
    )
    production_branch: str = Field(
        default="main",
        description="Protected production branch",
    )
    isolation_prefix: str = Field(
        default="conflict/upstream-",
        description="Prefix for per-record conflict resolution branches",
    )
    release_prefix: str = Field(
        default="release/upstream-",
        description="Prefix for promotion (release) branches",
    )


class HostConfig(BaseConfig):
    """Hosting platform settings."""

    repository: str | None = Field(
        default=None,
        description="owner/name passed to gh --repo (None = current clone)",
    )
    max_body_chars: int = Field(
        default=50000,
        description="Issue/PR bodies are truncated beyond this length",
    )


class LabelsConfig(BaseConfig):
    """Label names used to encode state on the host."""

    tracking: str = "upstream-sync"
    state_prefix: str = "cascade-state:"
    conflict: str = "conflict"
    blocked: str = "cascade-blocked"
    failed: str = "cascade-failed"
    human_required: str = "human-required"
    escalation: str = "escalation"
    escalated: str = "cascade-escalated"
    high_priority: str = "high-priority"

    def state_label(self, state: SyncState) -> str:
        return f"{self.state_prefix}{state.value.lower()}"


class PolicyConfig(BaseConfig):
    """Promotion and validation policy."""

    max_diff_lines: int = Field(
        default=1000,
        description="Changes of at least this many lines need manual approval",
    )
    max_validation_attempts: int = Field(
        default=3,
        description="Validation failures tolerated before giving up",
    )
    merge_strategy: str = Field(
        default="merge",
        description="Strategy for merging promotion PRs: merge, squash, rebase",
    )
    sync_production_first: bool = Field(
        default=True,
        description="Merge production into staging before merging upstream",
    )
    operation_timeout: int = Field(
        default=900,
        description="Timeout in seconds for merge, validation and promotion",
    )


class SlaConfig(BaseConfig):
    """Per-state dwell time limits."""

    hours: dict[SyncState, float] = Field(
        default_factory=lambda: {
            SyncState.DETECTED: 6,
            SyncState.STAGING: 2,
            SyncState.CONFLICTED: 48,
            SyncState.RESOLVING: 48,
            SyncState.VALIDATED: 24,
            SyncState.PROMOTING: 2,
        },
        description="Maximum expected hours in each non-terminal state",
    )
    sweep_interval_hours: float = Field(
        default=6,
        description="How often the health monitor is scheduled",
    )
    high_priority_level: int = Field(
        default=2,
        description="Escalation level from which high-priority is applied",
    )

    def limit_seconds(self, state: SyncState) -> float | None:
        hours = self.hours.get(state)
        return None if hours is None else hours * 3600


class RetryConfig(BaseConfig):
    """Backoff for transient host failures (30s, 60s, 120s)."""

    attempts: int = 3
    base_delay: float = 30.0
    factor: float = 2.0


class CheckConfig(BaseConfig):
    """Build and test validation configuration."""

    output_dir: Path = Field(
        default_factory=lambda: Path(platformdirs.user_state_dir()) / "forkcascade" / "checks",
        description="Directory for check log files (supports {config.*} templates)",
    )
    commands: dict[str, str] = Field(
        default_factory=dict,
        description="Named check commands run in order (e.g. build, test)",
    )
    timeout: int | None = Field(
        default=None,
        description="Per-check timeout in seconds (None = policy.operation_timeout)",
    )


class LLMConfig(BaseConfig):
    """Optional model for natural-language change summaries."""

    model: str | None = Field(
        default=None,
        description=(
            "Model in 'provider:model' form (e.g. openai:gpt-4o-mini). "
            "Unset means templated summaries only."
        ),
    )
    api_key: str | None = None
    base_url: str | None = None


class Config(BaseConfig):
    """Application configuration loaded from YAML/env/CLI."""

    logger: Logger = Field(default=None)
    git: GitConfig = Field(default_factory=GitConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    labels: LabelsConfig = Field(default_factory=LabelsConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    sla: SlaConfig = Field(default_factory=SlaConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    check: CheckConfig = Field(default_factory=CheckConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)

    run_name: str = Field(
        default="cascade",
        description="Log subdirectory and telemetry service suffix",
    )
    log_root: Path = Field(
        default_factory=lambda: Path(platformdirs.user_state_dir()) / "forkcascade",
        description="Root directory for log files and the local escalation log",
    )
    commands: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="git/gh command templates used by the host adapter",
    )
    prompts: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="Prompt templates for the summary agent",
    )

    @model_validator(mode='after')
    def _setup_logger(self) -> 'Config':
        """Configure the global logger from the logger section."""
        from forkcascade.core.log import setup_logger

        if self.logger is None:
            self.logger = Logger()

        setup_logger(
            log_root=self.log_root,
            run_name=self.run_name,
            level=self.logger.level,
            console=self.logger.console,
            otlp=self.logger.otlp,
            file=self.logger.file,
            logfire=self.logger.logfire,
        )
        return self

    @property
    def operation_timeout(self) -> int:
        return self.policy.operation_timeout

    def close(self):
        from forkcascade.core.log import logger
        logger.close()
        super().close()


# ============================================================
# RUNTIME STATE MODELS (mutable during workflow execution)
# ============================================================


class CascadeState(BaseState):
    """Runtime state of one cascade workflow run."""

    orchestrator: Any = Field(
        default=None,
        description="Orchestrator wiring host, store and engine components",
    )
    record_id: str | None = Field(
        default=None,
        description="Record the current run is driving",
    )
    outcome: str | None = Field(
        default=None,
        description="Last workflow outcome (promoted, queued, ...)",
    )
    visited: list[str] = Field(
        default_factory=list,
        description="Node names executed in this run",
    )

    model_config = ConfigDict(arbitrary_types_allowed=True)


class Runtime(BaseModel):
    """All runtime state, grouped by workflow."""

    cascade: CascadeState = Field(default_factory=CascadeState)


# ============================================================
# STATE (config + runtime combined)
# ============================================================


class State(BaseSettings):
    """Complete application state: configuration plus runtime.

    This is the object that flows through the workflow graph.
    """

    config: Config = Field(
        default_factory=Config,
        description="Application configuration (from YAML/env/CLI)",
    )
    runtime: Runtime = Field(
        default_factory=Runtime,
        description="Runtime state (mutates during workflow execution)",
    )
    include: list[str] | None = Field(
        default=None,
        description=(
            "Additional YAML files to include and merge. "
            "Use --include on CLI or include: in YAML files."
        ),
    )

    model_config = SettingsConfigDict(
        yaml_file="forkcascade.yaml",
        env_file=".env",
        env_prefix="FORKCASCADE_",
        env_nested_delimiter="__",
        cli_implicit_flags=True,
        cli_use_class_docs_for_groups=True,
        arbitrary_types_allowed=True,
        extra='ignore',
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init kwargs, YAML, .env, environment, secrets."""
        return (
            init_settings,
            YamlWithIncludesSettingsSource(settings_cls),
            dotenv_settings,
            env_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def substitute_templates(self) -> "State":
        """Substitute {config.*} and {platformdirs.*} templates.

        Names that do not resolve are left untouched, which keeps
        command placeholders such as {remote} or {base} intact.
        """
        self._substitute_recursive(self.config)
        return self

    def _substitute_recursive(self, obj: Any) -> None:
        if isinstance(obj, BaseModel):
            for field_name in obj.__class__.model_fields:
                value = getattr(obj, field_name)
                new_value = self._substitute_value(value)
                if new_value is not value:
                    setattr(obj, field_name, new_value)
        elif isinstance(obj, dict):
            for key in obj:
                obj[key] = self._substitute_value(obj[key])
        elif isinstance(obj, list):
            for i in range(len(obj)):
                obj[i] = self._substitute_value(obj[i])

    def _substitute_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._substitute_string(value)
        if isinstance(value, Path):
            return Path(self._substitute_string(str(value)))
        if isinstance(value, (BaseModel, dict, list)):
            self._substitute_recursive(value)
        return value

    def _substitute_string(self, value: str) -> str:
        """Replace {field.path} templates with resolved values.

        Examples:
            "{config.log_root}/checks" -> "/home/u/.local/state/forkcascade/checks"
            "{platformdirs.user_log_dir}" -> "~/.local/state/forkcascade/log"
        """
        def replace_template(match):
            parts = match.group(1).split(".")
            if parts[0] in TEMPLATE_NAMESPACE:
                obj = TEMPLATE_NAMESPACE[parts[0]]
                parts = parts[1:]
            elif parts[0] == "config" and len(parts) > 1:
                obj = self
            else:
                return match.group(0)

            try:
                for part in parts:
                    obj = getattr(obj, part)
                if callable(obj):
                    obj = obj('forkcascade', appauthor=False)
                return str(obj)
            except (AttributeError, TypeError):
                return match.group(0)

        return re.sub(r'\{([a-z._]+)\}', replace_template, value)


__all__ = ["State", "Config", "BaseConfig", "BaseState"]
