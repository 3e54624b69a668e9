"""Configuration loading and merging for snapsync.

Handles TOML loading, config discovery, deep merging, and environment overlay.
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

# TOML loading: tomllib (3.11+) with tomli fallback
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

from pydantic import ValidationError

from .config_schema import SnapsyncConfig


CONFIG_FILENAME = "config.toml"
USER_CONFIG_DIR = ".snapsync"
PROJECT_CONFIG_DIR = ".snapsync"

# Environment variable -> (section path, key)
ENV_MAPPING: Dict[str, tuple[list[str], str]] = {
    # Git
    "SNAPSYNC_GIT_REPO": (["git"], "repo"),
    "SNAPSYNC_GIT_LOCAL_PATH": (["git"], "local_path"),
    "SNAPSYNC_GIT_REMOTE": (["git"], "remote"),
    "SNAPSYNC_GIT_LIVE_BRANCH": (["git"], "live_branch"),
    "SNAPSYNC_GIT_SSH_KEY": (["git"], "ssh_key"),
    "SNAPSYNC_GIT_TOKEN": (["git"], "token"),
    "SNAPSYNC_GIT_WEB_URL": (["git"], "web_url"),
    # Identity
    "SNAPSYNC_AUTHOR_NAME": (["identity"], "author_name"),
    "SNAPSYNC_AUTHOR_EMAIL": (["identity"], "author_email"),
    "SNAPSYNC_COMMITTER_NAME": (["identity"], "committer_name"),
    "SNAPSYNC_COMMITTER_EMAIL": (["identity"], "committer_email"),
    # Build
    "SNAPSYNC_BUILD_COMMAND": (["build"], "command"),
    "SNAPSYNC_INSTALL_COMMAND": (["build"], "install_command"),
    "SNAPSYNC_BUILD_TIMEOUT": (["build"], "timeout"),
    # Webhook
    "SNAPSYNC_HOST": (["webhook"], "host"),
    "SNAPSYNC_PORT": (["webhook"], "port"),
    "SNAPSYNC_WEBHOOK_ENDPOINT": (["webhook"], "endpoint"),
    "SNAPSYNC_WEBHOOK_TOKEN": (["webhook"], "token"),
    "SNAPSYNC_WEBHOOK_IGNORED_MODELS": (["webhook"], "ignored_models"),
    # Scheduler
    "SNAPSYNC_DEBOUNCE_DELAY": (["scheduler"], "delay"),
    "SNAPSYNC_ARM_WHILE_RUNNING": (["scheduler"], "arm_while_running"),
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


def _get_user_config_dir() -> Path:
    """Get user-level config directory (~/.snapsync/)."""
    return Path.home() / USER_CONFIG_DIR


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Search upward from project_path for a .snapsync/ directory."""
    if project_path is None:
        project_path = Path.cwd()

    if not project_path.is_absolute():
        project_path = project_path.resolve()

    current = project_path
    while current != current.parent:
        config_dir = current / PROJECT_CONFIG_DIR
        if config_dir.is_dir():
            return config_dir
        current = current.parent

    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file.

    Raises:
        ConfigError: If file cannot be loaded or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries.

    Override values take precedence. Nested dicts are merged recursively.
    Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _apply_env_overlay(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict."""
    result = config_dict.copy()

    for env_var, (section_path, key_name) in ENV_MAPPING.items():
        value = os.getenv(env_var)
        if value is None:
            continue

        current = result
        for section in section_path:
            current[section] = dict(current.get(section) or {})
            current = current[section]

        # Type conversion happens during Pydantic validation
        current[key_name] = value

    return result


def load_config(
    project_path: Optional[Path] = None,
    skip_env: bool = False,
) -> SnapsyncConfig:
    """Load and merge snapsync configuration.

    Discovery order (later sources override earlier):
    1. Built-in defaults
    2. User config (~/.snapsync/config.toml)
    3. Project config (.snapsync/config.toml)
    4. Environment variables (unless skip_env=True)

    Raises:
        ConfigError: If config files are invalid
    """
    config_dict: Dict[str, Any] = {}

    user_config_path = _get_user_config_dir() / CONFIG_FILENAME
    if user_config_path.exists():
        try:
            config_dict = _deep_merge(config_dict, _load_toml(user_config_path))
        except ConfigError as e:
            # User config is optional, warn but continue
            warnings.warn(
                f"Skipping invalid user config at {user_config_path}: {e}",
                UserWarning,
            )

    project_config_dir = _get_project_config_dir(project_path)
    if project_config_dir:
        project_config_path = project_config_dir / CONFIG_FILENAME
        if project_config_path.exists():
            try:
                config_dict = _deep_merge(config_dict, _load_toml(project_config_path))
            except ConfigError as e:
                raise ConfigError(f"Invalid project config: {e}")

    if not skip_env:
        config_dict = _apply_env_overlay(config_dict)

    try:
        return SnapsyncConfig.model_validate(config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


def require_runnable(config: SnapsyncConfig) -> None:
    """Check the settings a sync run cannot start without.

    Raises:
        ConfigError: If the build command or repository URL is missing
    """
    if not config.build.command.strip():
        raise ConfigError(
            "No build command configured (set [build].command or SNAPSYNC_BUILD_COMMAND)"
        )
    if not config.git.repo.strip():
        raise ConfigError(
            "No repository configured (set [git].repo or SNAPSYNC_GIT_REPO)"
        )


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Optional[Path]]:
    """Get paths to the user and project config files."""
    user_dir = _get_user_config_dir()
    project_dir = _get_project_config_dir(project_path)

    return {
        "user_config": user_dir / CONFIG_FILENAME,
        "project_config": project_dir / CONFIG_FILENAME if project_dir else None,
    }


# Global cached config (thread-safe)
_cached_config: Optional[SnapsyncConfig] = None
_cached_project_path: Optional[Path] = None
_config_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> SnapsyncConfig:
    """Get cached config, loading if necessary."""
    global _cached_config, _cached_project_path

    if project_path and str(project_path):
        normalized_path = project_path.resolve()
    else:
        normalized_path = None

    with _config_lock:
        if (
            force_reload
            or _cached_config is None
            or _cached_project_path != normalized_path
        ):
            _cached_config = load_config(project_path)
            _cached_project_path = normalized_path

        return _cached_config


def clear_config_cache() -> None:
    """Clear cached config (thread-safe)."""
    global _cached_config, _cached_project_path
    with _config_lock:
        _cached_config = None
        _cached_project_path = None
