"""Database copilot: streaming AI chat with query execution."""

__version__ = "0.1.0"
