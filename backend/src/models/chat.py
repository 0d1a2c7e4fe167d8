"""Request/response models for the chat HTTP API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Body of ``POST /api/vaults/{vault_id}/chat``."""

    prompt: str = Field(..., min_length=1, max_length=100_000, description="User message")


class AbortResponse(BaseModel):
    aborted: bool = Field(..., description="False when no turn was in flight")


class ResetResponse(BaseModel):
    reset: bool = Field(..., description="False when the vault had no session")


class HealthResponse(BaseModel):
    status: str = "ok"
    provider: str = Field(..., description="Configured agent provider name")
    sessions: int = Field(0, ge=0, description="Live sessions in the registry")


__all__ = ["ChatRequest", "AbortResponse", "ResetResponse", "HealthResponse"]
