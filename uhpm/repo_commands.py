"""Repository management commands for uhpm CLI."""

from cyclopts import App

from uhpm.config import get_config

repo_app = App(name="repo", help="Manage package repositories")


@repo_app.command
def add(name: str, location: str) -> None:
    """Add a repository (directory, file:// or http(s):// base location)."""
    config = get_config()
    config.add_repository(name, location)
    print(f"Added repository {name}: {location}")


@repo_app.command
def remove(name: str) -> None:
    """Remove a repository."""
    config = get_config()
    if not config.remove_repository(name):
        print(f"Repository {name} is not configured")
        raise SystemExit(1)
    print(f"Removed repository {name}")


@repo_app.command(name="list")
def list_repos() -> None:
    """List configured repositories."""
    config = get_config()
    repositories = config.repositories

    if not repositories:
        print("No repositories configured")
        return

    print("Repositories:\n")
    for name, location in repositories.items():
        print(f"  {name}: {location}")
