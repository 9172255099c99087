"""Asynchronous issue re-indexing for branches and pull requests."""

__version__ = "0.1.0"
