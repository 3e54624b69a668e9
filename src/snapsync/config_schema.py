"""Configuration schema for snapsync.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class GitConfig(BaseModel):
    """Site repository settings."""

    repo: str = Field(
        default="",
        description="Git repository URL (SSH form avoids credential prompts)",
    )
    local_path: str = Field(
        default="./_repo",
        description="Directory holding the local clone",
    )
    remote: str = Field(
        default="origin",
        description="Remote name used for fetch and push",
    )
    live_branch: str = Field(
        default="live",
        description="Branch new snapshot branches are derived from",
    )
    ssh_key: str = Field(
        default="",
        description="Path to SSH private key (empty = use default)",
    )
    token: str = Field(
        default="",
        description="HTTPS access token (used through GIT_ASKPASS)",
    )
    web_url: str = Field(
        default="",
        description="Web URL of the repository for compare links (empty = derive from repo)",
    )

    @field_validator("ssh_key")
    @classmethod
    def validate_ssh_key(cls, v: str) -> str:
        """Warn if SSH key path doesn't exist."""
        if v:
            path = Path(v).expanduser()
            if not path.exists():
                warnings.warn(f"SSH key path does not exist: {v}", UserWarning)
            elif not path.is_file():
                warnings.warn(f"SSH key path is not a file: {v}", UserWarning)
        return v

    @field_validator("live_branch")
    @classmethod
    def validate_live_branch(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("live_branch must not be empty")
        if v.startswith("refs/"):
            raise ValueError("live_branch is a short branch name, not a ref")
        return v


class IdentityConfig(BaseModel):
    """Commit author and committer."""

    author_name: str = Field(default="CMS Snapshot Sync")
    author_email: str = Field(default="snapsync@localhost")
    committer_name: str = Field(
        default="",
        description="Committer name (empty = same as author)",
    )
    committer_email: str = Field(
        default="",
        description="Committer email (empty = same as author)",
    )


class BuildConfig(BaseModel):
    """Commands run in the clone directory on every sync."""

    command: str = Field(
        default="",
        description="Build command producing the snapshot (required)",
    )
    install_command: str = Field(
        default="npm install --no-audit",
        description="Dependency installation command run before the build",
    )
    timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per-command timeout in seconds (unset = no limit)",
    )


class WebhookConfig(BaseModel):
    """HTTP trigger endpoint."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3999, ge=1, le=65535)
    endpoint: str = Field(default="/", description="Path receiving CMS webhooks")
    token: str = Field(
        default="",
        description="Bearer token required on webhook calls (empty = no check)",
    )
    ignored_models: List[str] = Field(
        default_factory=list,
        description="CMS models whose events never trigger a sync",
    )

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        if not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator("ignored_models", mode="before")
    @classmethod
    def split_ignored_models(cls, v):
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class SchedulerConfig(BaseModel):
    """Debounce behaviour in front of the sync pipeline."""

    delay: float = Field(
        default=60.0,
        ge=0,
        description="Quiet period in seconds; every new trigger restarts it",
    )
    arm_while_running: bool = Field(
        default=False,
        description=(
            "Start the next quiet period as soon as a trigger arrives during a "
            "run instead of after the run finishes (runs never overlap)"
        ),
    )


class SnapsyncConfig(BaseModel):
    """Root configuration model."""

    version: int = Field(default=1, description="Config schema version")
    git: GitConfig = Field(default_factory=GitConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    model_config = {"extra": "ignore"}
