"""webtop - top websites tracking from streaming domain-access events."""

__version__ = "0.1.0"

__all__ = ["__version__"]
