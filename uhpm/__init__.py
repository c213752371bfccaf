"""uhpm - a per-user package manager."""

__version__ = "0.1.0"
