"""Flowmill: content pipeline workflow engine."""

__version__ = "0.1.0"
