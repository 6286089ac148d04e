"""Configuration schema for autoevolve.

Configuration is loaded from .autoevolve.yml in the project root.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .security.sandbox import BLOCKED_EXTENSIONS, BLOCKED_PATHS
from .types import Severity

CONFIG_FILENAME = ".autoevolve.yml"

_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+$")


class PathsConfig(BaseModel):
    """Locations, relative to the project root unless absolute."""

    data_dir: str = "data"
    source_dir: str = "src"
    config_dir: str = "config"
    # Defaults to the project root itself.
    sandbox_root: str = "."


class SandboxConfig(BaseModel):
    """Trust-boundary blocklists."""

    blocked_paths: list[str] = Field(default_factory=lambda: list(BLOCKED_PATHS))
    blocked_extensions: list[str] = Field(default_factory=lambda: list(BLOCKED_EXTENSIONS))


class ImplementerConfig(BaseModel):
    """Where generated code lands."""

    area_dirs: dict[str, str] = Field(
        default_factory=lambda: {
            "decision_making": "agent",
            "learning": "evolution",
            "efficiency": "utils",
            "memory": "memory",
            "engagement": "agent",
            "optimization": "utils",
        }
    )
    default_dir: str = "improvements"
    backup_dir: str = "backups"
    history_file: str = "implementation-history.json"


class GitConfig(BaseModel):
    """Git recording behavior for implementations and rollbacks."""

    commit_enabled: bool = True
    commit_author_name: str = "autoevolve"
    commit_author_email: str = "autoevolve@bot.local"


class VersioningConfig(BaseModel):
    initial_version: str = "1.0.0"
    versions_dir: str = "versions"
    changelog_title: str = "Changelog"

    @field_validator("initial_version")
    @classmethod
    def validate_initial_version(cls, v: str) -> str:
        v = v.strip()
        if not _SEMVER_RE.match(v):
            raise ValueError(f"initial_version must be MAJOR.MINOR.PATCH, got {v!r}")
        return v


class UpdaterConfig(BaseModel):
    """Self-update behavior: remote tracking, rebuild triggers, restart."""

    remote: str = "origin"
    branch: str = "main"
    lock_file: str = "update.lock"
    manifest_files: list[str] = Field(default_factory=lambda: ["pyproject.toml", "requirements.txt"])
    build_config_files: list[str] = Field(default_factory=lambda: ["pyproject.toml", "setup.cfg"])
    source_prefixes: list[str] = Field(default_factory=lambda: ["src/"])
    install_argv: list[str] = Field(default_factory=lambda: ["python", "-m", "pip", "install", "-e", "."])
    build_argv: list[str] = Field(default_factory=lambda: ["python", "-m", "compileall", "-q", "src"])
    command_timeout_seconds: int = 900
    process_name: str = "autoevolve"
    # "{name}" is replaced with process_name.
    restart_argv: list[str] = Field(default_factory=lambda: ["pm2", "restart", "{name}", "--update-env"])

    @field_validator("install_argv", "build_argv", "restart_argv")
    @classmethod
    def validate_argv(cls, v: list[str]) -> list[str]:
        if not v or not v[0].strip():
            raise ValueError("command argv must be a non-empty list")
        return v


class HotPatchConfig(BaseModel):
    patches_dir: str = "patches"
    ledger_file: str = "applied.json"
    watch: bool = True
    debounce_seconds: int = 2


class ScheduleConfig(BaseModel):
    """Timer-driven cycles. 0 disables a concern."""

    improvement_interval_seconds: int = 43200
    update_interval_seconds: int = 3600
    patch_interval_seconds: int = 300
    min_severity: str = "medium"

    @field_validator("min_severity")
    @classmethod
    def validate_min_severity(cls, v: str) -> str:
        v = v.strip().lower()
        valid = {s.value for s in Severity}
        if v not in valid:
            raise ValueError(f"Invalid min_severity: {v}. Must be one of {valid}")
        return v


class WebhookNotificationConfig(BaseModel):
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int = 10


class NotificationsConfig(BaseModel):
    echo: bool = True
    webhook: WebhookNotificationConfig = Field(default_factory=WebhookNotificationConfig)


class TelemetryConfig(BaseModel):
    """Telemetry and audit logging configuration."""

    enabled: bool = True
    log_path: str = "data/telemetry.jsonl"
    retention_days: int = 30


class SourceConfig(BaseModel):
    """Issue/solution queue consumed by the default source."""

    queue_file: str = "issues.json"


class AutoevolveConfig(BaseModel):
    """Complete autoevolve configuration."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    implementer: ImplementerConfig = Field(default_factory=ImplementerConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    versioning: VersioningConfig = Field(default_factory=VersioningConfig)
    updater: UpdaterConfig = Field(default_factory=UpdaterConfig)
    hot_patch: HotPatchConfig = Field(default_factory=HotPatchConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)

    @classmethod
    def load_from_file(cls, config_path: Path | str) -> AutoevolveConfig:
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load_from_repo(cls, repo_path: Path | str) -> AutoevolveConfig:
        """Load configuration from the project's .autoevolve.yml."""
        config_path = Path(repo_path) / CONFIG_FILENAME

        if not config_path.exists():
            return cls()

        return cls.load_from_file(config_path)

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if v := os.getenv("AUTOEVOLVE_DATA_DIR"):
            self.paths.data_dir = v
        if v := os.getenv("AUTOEVOLVE_SOURCE_DIR"):
            self.paths.source_dir = v
        if v := os.getenv("AUTOEVOLVE_SANDBOX_ROOT"):
            self.paths.sandbox_root = v

        if os.getenv("AUTOEVOLVE_GIT_NO_COMMIT") == "1":
            self.git.commit_enabled = False
        if name := os.getenv("AUTOEVOLVE_GIT_AUTHOR_NAME"):
            self.git.commit_author_name = name
        if email := os.getenv("AUTOEVOLVE_GIT_AUTHOR_EMAIL"):
            self.git.commit_author_email = email

        if remote := os.getenv("AUTOEVOLVE_UPDATE_REMOTE"):
            self.updater.remote = remote
        if branch := os.getenv("AUTOEVOLVE_UPDATE_BRANCH"):
            self.updater.branch = branch
        if name := os.getenv("AUTOEVOLVE_PROCESS_NAME"):
            self.updater.process_name = name

        if v := os.getenv("AUTOEVOLVE_IMPROVEMENT_INTERVAL_SECONDS"):
            self.schedule.improvement_interval_seconds = int(v)
        if v := os.getenv("AUTOEVOLVE_UPDATE_INTERVAL_SECONDS"):
            self.schedule.update_interval_seconds = int(v)
        if v := os.getenv("AUTOEVOLVE_PATCH_INTERVAL_SECONDS"):
            self.schedule.patch_interval_seconds = int(v)

        if url := os.getenv("AUTOEVOLVE_WEBHOOK_URL"):
            self.notifications.webhook.url = url
        if os.getenv("AUTOEVOLVE_QUIET") == "1":
            self.notifications.echo = False

        if log_path := os.getenv("AUTOEVOLVE_TELEMETRY_PATH"):
            self.telemetry.log_path = log_path
        if os.getenv("AUTOEVOLVE_TELEMETRY_DISABLED") == "1":
            self.telemetry.enabled = False


def load_config(repo_path: Path | str) -> AutoevolveConfig:
    """
    Load configuration for a project.

    Args:
        repo_path: Path to the project root

    Returns:
        Loaded and validated configuration
    """
    config = AutoevolveConfig.load_from_repo(repo_path)
    config.apply_env_overrides()
    return config


def resolve_under(root: Path, value: str) -> Path:
    """Resolve a configured path against `root` unless it is already absolute."""
    p = Path(value)
    return p if p.is_absolute() else root / p
