"""Vault-related Pydantic models."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field


class VaultInfo(BaseModel):
    """A resolved vault directory; its id is the chat session key."""

    id: str = Field(..., description="Vault directory name")
    name: str = Field(..., description="Display name (first heading of CLAUDE.md, else the id)")
    path: Path = Field(..., description="Absolute vault directory")
    inbox_path: Path = Field(..., description="Absolute inbox directory inside the vault")


class VaultSummary(BaseModel):
    id: str
    name: str


__all__ = ["VaultInfo", "VaultSummary"]
