"""Tests for the config schema and loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from snapsync.config_loader import (
    ConfigError,
    ENV_MAPPING,
    _apply_env_overlay,
    _deep_merge,
    _get_project_config_dir,
    clear_config_cache,
    get_config,
    get_config_paths,
    load_config,
    require_runnable,
)
from snapsync.config_schema import GitConfig, SnapsyncConfig, WebhookConfig


@pytest.fixture
def fake_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for var in ENV_MAPPING:
        monkeypatch.delenv(var, raising=False)
    return home


def write_config(directory: Path, text: str) -> Path:
    config_dir = directory / ".snapsync"
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "config.toml"
    path.write_text(text)
    return path


class TestSchema:
    """Defaults and validators."""

    def test_defaults(self):
        config = SnapsyncConfig()
        assert config.git.live_branch == "live"
        assert config.git.remote == "origin"
        assert config.webhook.port == 3999
        assert config.webhook.endpoint == "/"
        assert config.scheduler.delay == 60.0
        assert config.scheduler.arm_while_running is False
        assert config.build.install_command == "npm install --no-audit"

    def test_endpoint_gets_leading_slash(self):
        assert WebhookConfig(endpoint="hooks/cms").endpoint == "/hooks/cms"

    def test_ignored_models_from_comma_string(self):
        webhook = WebhookConfig(ignored_models=" user , session,, ")
        assert webhook.ignored_models == ["user", "session"]

    @pytest.mark.parametrize("branch", ["", "   ", "refs/heads/live"])
    def test_live_branch_rejected(self, branch):
        with pytest.raises(ValueError):
            GitConfig(live_branch=branch)

    def test_missing_ssh_key_warns(self, tmp_path):
        with pytest.warns(UserWarning, match="does not exist"):
            GitConfig(ssh_key=str(tmp_path / "id_missing"))

    def test_unknown_keys_ignored(self):
        config = SnapsyncConfig.model_validate({"git": {"repo": "x"}, "legacy": {"a": 1}})
        assert config.git.repo == "x"


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"git": {"repo": "a", "remote": "origin"}}
        override = {"git": {"repo": "b"}}
        assert _deep_merge(base, override) == {"git": {"repo": "b", "remote": "origin"}}

    def test_lists_replaced(self):
        base = {"webhook": {"ignored_models": ["user"]}}
        override = {"webhook": {"ignored_models": ["session"]}}
        assert _deep_merge(base, override)["webhook"]["ignored_models"] == ["session"]


class TestEnvOverlay:
    def test_overlay_does_not_mutate_input(self, monkeypatch):
        monkeypatch.setenv("SNAPSYNC_GIT_REPO", "git@github.com:acme/site.git")
        original = {"git": {"remote": "upstream"}}
        result = _apply_env_overlay(original)
        assert result["git"] == {"remote": "upstream", "repo": "git@github.com:acme/site.git"}
        assert original == {"git": {"remote": "upstream"}}

    def test_values_are_coerced_by_schema(self, fake_home, tmp_path, monkeypatch):
        monkeypatch.setenv("SNAPSYNC_PORT", "8080")
        monkeypatch.setenv("SNAPSYNC_DEBOUNCE_DELAY", "2.5")
        monkeypatch.setenv("SNAPSYNC_ARM_WHILE_RUNNING", "true")
        monkeypatch.setenv("SNAPSYNC_WEBHOOK_IGNORED_MODELS", "user,session")

        config = load_config(project_path=tmp_path)
        assert config.webhook.port == 8080
        assert config.scheduler.delay == 2.5
        assert config.scheduler.arm_while_running is True
        assert config.webhook.ignored_models == ["user", "session"]

    def test_invalid_env_value_raises(self, fake_home, tmp_path, monkeypatch):
        monkeypatch.setenv("SNAPSYNC_PORT", "not-a-port")
        with pytest.raises(ConfigError, match="validation failed"):
            load_config(project_path=tmp_path)


class TestLoadConfig:
    def test_load_empty_config(self, fake_home, tmp_path):
        project = tmp_path / "project"
        project.mkdir()
        config = load_config(project_path=project, skip_env=True)
        assert config == SnapsyncConfig()

    def test_project_config_overrides_user(self, fake_home, tmp_path):
        write_config(fake_home, """
[git]
repo = "git@github.com:acme/site.git"
live_branch = "production"

[build]
command = "npm run build"
""")
        project = tmp_path / "project"
        write_config(project, """
[git]
live_branch = "live"
""")

        config = load_config(project_path=project, skip_env=True)
        assert config.git.live_branch == "live"
        assert config.git.repo == "git@github.com:acme/site.git"
        assert config.build.command == "npm run build"

    def test_env_overrides_files(self, fake_home, tmp_path, monkeypatch):
        project = tmp_path / "project"
        write_config(project, '[build]\ncommand = "make"\n')
        monkeypatch.setenv("SNAPSYNC_BUILD_COMMAND", "npm run build")

        assert load_config(project_path=project).build.command == "npm run build"
        assert load_config(project_path=project, skip_env=True).build.command == "make"

    def test_project_config_found_from_subdirectory(self, fake_home, tmp_path):
        project = tmp_path / "project"
        write_config(project, "[scheduler]\ndelay = 5\n")
        nested = project / "site" / "content"
        nested.mkdir(parents=True)

        assert _get_project_config_dir(nested) == project / ".snapsync"
        assert load_config(project_path=nested, skip_env=True).scheduler.delay == 5

    def test_invalid_project_toml_raises(self, fake_home, tmp_path):
        project = tmp_path / "project"
        write_config(project, "invalid toml [[[")
        with pytest.raises(ConfigError, match="Invalid"):
            load_config(project_path=project, skip_env=True)

    def test_invalid_user_toml_warns(self, fake_home, tmp_path):
        write_config(fake_home, "invalid toml [[[")
        project = tmp_path / "project"
        project.mkdir()
        with pytest.warns(UserWarning, match="Skipping invalid user config"):
            config = load_config(project_path=project, skip_env=True)
        assert config.version == 1


class TestRequireRunnable:
    def test_build_command_required(self):
        config = SnapsyncConfig.model_validate({"git": {"repo": "git@github.com:acme/site.git"}})
        with pytest.raises(ConfigError, match="build command"):
            require_runnable(config)

    def test_repo_required(self):
        config = SnapsyncConfig.model_validate({"build": {"command": "npm run build"}})
        with pytest.raises(ConfigError, match="repository"):
            require_runnable(config)

    def test_complete_config_passes(self):
        config = SnapsyncConfig.model_validate(
            {"git": {"repo": "git@github.com:acme/site.git"}, "build": {"command": "npm run build"}}
        )
        require_runnable(config)


class TestGetConfig:
    def test_caches_config(self, fake_home, tmp_path):
        clear_config_cache()
        assert get_config(project_path=tmp_path) is get_config(project_path=tmp_path)

    def test_force_reload(self, fake_home, tmp_path):
        clear_config_cache()
        first = get_config(project_path=tmp_path)
        second = get_config(project_path=tmp_path, force_reload=True)
        assert first is not second
        assert first == second

    def test_config_paths(self, fake_home, tmp_path):
        project = tmp_path / "project"
        write_config(project, "")
        paths = get_config_paths(project_path=project)
        assert paths["user_config"] == fake_home / ".snapsync" / "config.toml"
        assert paths["project_config"] == project / ".snapsync" / "config.toml"
