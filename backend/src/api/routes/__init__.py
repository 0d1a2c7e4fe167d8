"""HTTP API route handlers."""

from . import chat, system

__all__ = ["chat", "system"]
