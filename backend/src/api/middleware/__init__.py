"""FastAPI middleware for error handling."""

from .error_handlers import (
    agent_provider_handler,
    http_exception_handler,
    internal_exception_handler,
    register_error_handlers,
    validation_exception_handler,
    vault_not_found_handler,
)

__all__ = [
    "register_error_handlers",
    "validation_exception_handler",
    "http_exception_handler",
    "vault_not_found_handler",
    "agent_provider_handler",
    "internal_exception_handler",
]
