"""Configuration management for uhpm using YAML files."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import yaml

from uhpm.errors import ConfigError
from uhpm.symlinks import Variable, VariableContext

logger = structlog.get_logger()

UPDATE_POLICIES = ("resolve", "in-place")

DEFAULTS: dict[str, Any] = {
    "fetch.concurrency": 4,
    "fetch.retries": 3,
    "fetch.backoff": 0.5,
    "fetch.timeout": 60,
    "update.policy": "resolve",
}


def default_root() -> Path:
    """Return the uhpm home directory, honouring UHPM_HOME."""
    override = os.environ.get("UHPM_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".uhpm"


@dataclass(frozen=True)
class Layout:
    """On-disk layout of a uhpm home directory."""

    root: Path

    @property
    def database(self) -> Path:
        return self.root / "packages.db"

    @property
    def packages(self) -> Path:
        return self.root / "packages"

    @property
    def staging(self) -> Path:
        return self.root / "tmp"

    @property
    def cache(self) -> Path:
        return self.root / "cache" / "repo"

    @property
    def lock(self) -> Path:
        return self.root / "lock"

    def payload_dir(self, name: str, version: str) -> Path:
        return self.packages / f"{name}-{version}"

    def ensure(self) -> None:
        for directory in (self.root, self.packages, self.staging, self.cache):
            directory.mkdir(parents=True, exist_ok=True)


class Config:
    """Configuration manager using YAML file storage.

    The configuration lives in ``config.yaml`` inside the uhpm home directory
    (``~/.uhpm`` unless ``UHPM_HOME`` or ``config_dir`` says otherwise).
    Scalar settings use flat dotted keys such as ``fetch.concurrency``;
    ``repositories`` and ``variables`` are mappings.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom uhpm home directory holding config.yaml
        """
        self.config_dir = Path(config_dir) if config_dir is not None else default_root()
        self.config_file = self.config_dir / "config.yaml"

        # Create config directory if it doesn't exist
        self.config_dir.mkdir(parents=True, exist_ok=True)

        self._config: dict[str, Any] = self._load()
        logger.debug("Config initialized", config_file=str(self.config_file))

    def _load(self) -> dict[str, Any]:
        """Load configuration from YAML file.

        Returns:
            Configuration dictionary
        """
        if not self.config_file.exists():
            logger.debug("Config file does not exist, initializing empty config")
            return {}

        try:
            with open(self.config_file, "r") as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load config", error=str(e))
            raise ConfigError(f"Failed to load config from {self.config_file}: {e}") from e

        if not isinstance(config, dict):
            raise ConfigError(f"Invalid config in {self.config_file}: expected a mapping")
        logger.debug("Config loaded successfully", keys=list(config.keys()))
        return config

    def _save(self) -> None:
        """Save configuration to YAML file."""
        try:
            with open(self.config_file, "w") as f:
                yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=False)
            logger.debug("Config saved successfully")
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to save config", error=str(e))
            raise ConfigError(f"Failed to save config to {self.config_file}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value, falling back to the built-in default.

        Args:
            key: Configuration key
            default: Value returned when neither the file nor the defaults define the key

        Returns:
            Configuration value or default
        """
        if key in self._config:
            logger.debug("Getting config value", key=key)
            return self._config[key]
        return DEFAULTS.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value.

        Args:
            key: Configuration key
            value: Configuration value
        """
        logger.debug("Setting config value", key=key)
        self._config[key] = value
        self._save()

    def unset(self, key: str) -> None:
        """Remove a configuration value.

        Args:
            key: Configuration key
        """
        logger.debug("Unsetting config value", key=key)
        if key in self._config:
            del self._config[key]
            self._save()

    def list(self) -> dict[str, Any]:
        """List all configuration settings, defaults included."""
        merged = dict(DEFAULTS)
        merged.update(self._config)
        logger.debug("Listing config values", count=len(merged))
        return merged

    @property
    def layout(self) -> Layout:
        return Layout(self.config_dir)

    def _number(self, key: str, kind: type) -> Any:
        value = self.get(key)
        try:
            return kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {value!r}") from e

    @property
    def concurrency(self) -> int:
        return max(1, self._number("fetch.concurrency", int))

    @property
    def retries(self) -> int:
        return max(0, self._number("fetch.retries", int))

    @property
    def backoff(self) -> float:
        return self._number("fetch.backoff", float)

    @property
    def timeout(self) -> float:
        return self._number("fetch.timeout", float)

    @property
    def update_policy(self) -> str:
        policy = str(self.get("update.policy"))
        if policy not in UPDATE_POLICIES:
            raise ConfigError(f"Invalid update.policy {policy!r}: expected one of {', '.join(UPDATE_POLICIES)}")
        return policy

    @property
    def repositories(self) -> dict[str, str]:
        repos = self._config.get("repositories") or {}
        if not isinstance(repos, dict):
            raise ConfigError("Invalid repositories: expected a mapping of name to location")
        return {str(name): str(location) for name, location in repos.items()}

    def add_repository(self, name: str, location: str) -> None:
        """Add or replace a repository."""
        repos = self.repositories
        repos[name] = location
        logger.info("Adding repository", name=name, location=location)
        self.set("repositories", repos)

    def remove_repository(self, name: str) -> bool:
        """Remove a repository; returns False if it was not configured."""
        repos = self.repositories
        if name not in repos:
            return False
        del repos[name]
        logger.info("Removing repository", name=name)
        self.set("repositories", repos)
        return True

    def variable_context(self, environ: dict[str, str] | None = None) -> VariableContext:
        """Build the symlink variable context from the environment and overrides.

        Raises:
            ConfigError: If ``variables`` names a token that is not recognized
        """
        overrides = self._config.get("variables") or {}
        if not isinstance(overrides, dict):
            raise ConfigError("Invalid variables: expected a mapping of token to path")
        known = {variable.value for variable in Variable}
        unknown = sorted(str(key) for key in overrides if str(key) not in known)
        if unknown:
            raise ConfigError(f"Unknown variables in config: {', '.join(unknown)}")

        context = VariableContext.from_environment(environ=environ)
        if overrides:
            context = context.with_overrides({Variable(str(k)): Path(str(v)).expanduser() for k, v in overrides.items()})
        return context


def get_config(config_dir: Path | None = None) -> Config:
    """Get a configuration instance.

    Args:
        config_dir: Optional uhpm home directory override

    Returns:
        Config instance
    """
    return Config(config_dir=config_dir)
