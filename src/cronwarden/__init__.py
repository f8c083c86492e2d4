"""Self-healing monitor for a scheduled content pipeline."""

__version__ = "0.1.0"
