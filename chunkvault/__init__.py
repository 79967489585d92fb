"""Chunked file upload service: HTTP session setup and a TCP chunk stream written to disk."""

__version__ = "0.1.0"

__all__ = ["__version__"]