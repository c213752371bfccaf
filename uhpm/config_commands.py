"""Configuration commands for uhpm CLI."""

from cyclopts import App

from uhpm.config import get_config

config_app = App(name="config", help="Manage configuration")


@config_app.command
def set(key: str, value: str) -> None:
    """Set a configuration setting.

    Args:
        key: Configuration key (for example fetch.concurrency)
        value: Configuration value
    """
    config = get_config()
    config.set(key, value)
    print(f"Set {key} = {value}")


@config_app.command
def unset(key: str) -> None:
    """Unset a configuration setting, restoring its default.

    Args:
        key: Configuration key
    """
    config = get_config()
    config.unset(key)
    print(f"Unset {key}")


@config_app.command
def get(key: str) -> None:
    """Get the value of a configuration setting.

    Args:
        key: Configuration key
    """
    config = get_config()
    value = config.get(key)
    if value is None:
        print(f"{key} is not set")
    else:
        print(f"{key} = {value}")


@config_app.command(name="list")
def list_config() -> None:
    """List all configuration settings, defaults included."""
    config = get_config()
    settings = config.list()

    print("Configuration settings:\n")
    for key, value in settings.items():
        print(f"{key} = {value}")
