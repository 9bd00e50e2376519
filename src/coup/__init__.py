"""CO.UP calendar sync service."""

__version__ = "0.1.0"
