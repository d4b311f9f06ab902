"""
Utilities and helper functions.

Provides:
- configure_logging: Stream handler setup for the package logger
"""

from gguf_serve_lite.utils.logging import configure_logging

__all__ = ["configure_logging"]
