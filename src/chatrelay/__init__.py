"""Streaming chat backend with context-window management and response caching."""

__version__ = "0.1.0"
