"""Tests for configuration management."""

from pathlib import Path

import pytest

from uhpm.config import Config, get_config
from uhpm.errors import ConfigError
from uhpm.symlinks import Variable


def test_defaults(tmp_path: Path) -> None:
    """Test built-in defaults apply without a config file."""
    config = Config(config_dir=tmp_path)
    assert config.concurrency == 4
    assert config.retries == 3
    assert config.backoff == 0.5
    assert config.timeout == 60
    assert config.update_policy == "resolve"
    assert config.repositories == {}
    assert config.get("missing") is None


def test_set_persists(tmp_path: Path) -> None:
    """Test set values are saved to config.yaml."""
    config = Config(config_dir=tmp_path)
    config.set("fetch.concurrency", "8")

    reloaded = get_config(config_dir=tmp_path)
    assert reloaded.get("fetch.concurrency") == "8"
    assert reloaded.concurrency == 8
    assert (tmp_path / "config.yaml").exists()


def test_unset_restores_default(tmp_path: Path) -> None:
    """Test unsetting a key falls back to its default."""
    config = Config(config_dir=tmp_path)
    config.set("update.policy", "in-place")
    assert config.update_policy == "in-place"
    config.unset("update.policy")
    assert config.update_policy == "resolve"


def test_invalid_values(tmp_path: Path) -> None:
    """Test invalid settings raise ConfigError."""
    config = Config(config_dir=tmp_path)
    config.set("update.policy", "sometimes")
    with pytest.raises(ConfigError):
        _ = config.update_policy
    config.set("fetch.retries", "many")
    with pytest.raises(ConfigError):
        _ = config.retries


def test_invalid_yaml(tmp_path: Path) -> None:
    """Test a malformed config file is reported."""
    (tmp_path / "config.yaml").write_text("key: [unclosed\n")
    with pytest.raises(ConfigError):
        Config(config_dir=tmp_path)


def test_list_merges_defaults(tmp_path: Path) -> None:
    """Test list shows defaults and overrides."""
    config = Config(config_dir=tmp_path)
    config.set("fetch.timeout", 10)
    settings = config.list()
    assert settings["fetch.timeout"] == 10
    assert settings["fetch.concurrency"] == 4


def test_repositories(tmp_path: Path) -> None:
    """Test adding and removing repositories."""
    config = Config(config_dir=tmp_path)
    config.add_repository("main", "https://example.org/repo")
    config.add_repository("local", "/srv/uhp")
    assert get_config(config_dir=tmp_path).repositories == {
        "main": "https://example.org/repo",
        "local": "/srv/uhp",
    }
    assert config.remove_repository("main") is True
    assert config.remove_repository("main") is False
    assert config.repositories == {"local": "/srv/uhp"}


def test_layout(tmp_path: Path) -> None:
    """Test the on-disk layout derived from the home directory."""
    layout = Config(config_dir=tmp_path).layout
    assert layout.database == tmp_path / "packages.db"
    assert layout.payload_dir("hello", "1.0.0") == tmp_path / "packages" / "hello-1.0.0"
    assert layout.cache == tmp_path / "cache" / "repo"
    layout.ensure()
    assert layout.staging.is_dir()


def test_uhpm_home_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test UHPM_HOME selects the home directory."""
    monkeypatch.setenv("UHPM_HOME", str(tmp_path / "custom"))
    config = Config()
    assert config.config_dir == tmp_path / "custom"


def test_variable_context_overrides(tmp_path: Path) -> None:
    """Test variable overrides from the config file."""
    config = Config(config_dir=tmp_path)
    config.set("variables", {"XDG_BIN_HOME": str(tmp_path / "bin")})
    context = config.variable_context(environ={"HOME": str(tmp_path / "home")})
    assert context.values[Variable.XDG_BIN_HOME] == tmp_path / "bin"
    assert context.values[Variable.XDG_CONFIG_HOME] == tmp_path / "home" / ".config"


def test_variable_context_unknown_token(tmp_path: Path) -> None:
    """Test unknown variable names in the config are rejected."""
    config = Config(config_dir=tmp_path)
    config.set("variables", {"NOPE": "/x"})
    with pytest.raises(ConfigError, match="NOPE"):
        config.variable_context(environ={"HOME": str(tmp_path)})
