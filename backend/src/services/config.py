"""Application configuration helpers."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_VAULTS_DIR = PROJECT_ROOT / "data" / "vaults"
DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:3000"


class AppConfig(BaseModel):
    """Runtime configuration loaded from environment variables."""

    model_config = ConfigDict(frozen=True)

    vaults_dir: Path = Field(..., description="Directory containing one folder per vault")
    inbox_dir: str = Field(
        default="00_Inbox",
        description="Vault-relative inbox folder; transcripts go to {inbox}/chats",
    )
    agent_provider: str = Field(
        default="mock",
        description="'mock' or a 'module:factory' import path for the agent provider",
    )
    mock_chunk_delay_ms: int = Field(
        default=30, ge=0, description="Delay between mock provider text deltas"
    )
    transcripts_enabled: bool = Field(
        default=True, description="Write markdown transcripts of chat sessions"
    )
    log_level: str = Field(default="INFO", description="Root logging level")
    cors_origins: List[str] = Field(default_factory=list, description="Allowed CORS origins")

    @field_validator("vaults_dir", mode="before")
    @classmethod
    def _normalize_vaults_dir(cls, value: str | Path | None) -> Path:
        if value is None or value == "":
            raise ValueError("VAULTS_DIR is required")
        if isinstance(value, Path):
            path = value
        else:
            path = Path(value)
        return path.expanduser().resolve()

    @field_validator("inbox_dir")
    @classmethod
    def _validate_inbox(cls, value: str) -> str:
        cleaned = value.strip().strip("/")
        if not cleaned or ".." in Path(cleaned).parts:
            raise ValueError("INBOX_DIR must be a relative path inside the vault")
        return cleaned

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Optional[str]) -> str:
        level = (value or "INFO").strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown LOG_LEVEL: {value}")
        return level

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: str | List[str] | None) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)


def _read_env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(key, default)


def _read_flag(key: str, default: str = "true") -> bool:
    return _read_env(key, default).lower() not in {"0", "false", "no"}


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load and cache application configuration."""
    config = AppConfig(
        vaults_dir=_read_env("VAULTS_DIR", str(DEFAULT_VAULTS_DIR)),
        inbox_dir=_read_env("INBOX_DIR", "00_Inbox"),
        agent_provider=_read_env("AGENT_PROVIDER", "mock"),
        mock_chunk_delay_ms=int(_read_env("MOCK_CHUNK_DELAY_MS", "30")),
        transcripts_enabled=_read_flag("TRANSCRIPTS_ENABLED"),
        log_level=_read_env("LOG_LEVEL", "INFO"),
        cors_origins=_read_env("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
    )
    # Ensure the vaults directory exists for downstream services.
    config.vaults_dir.mkdir(parents=True, exist_ok=True)
    return config


def reload_config() -> AppConfig:
    """Clear cached config (useful for tests) and reload."""
    get_config.cache_clear()
    return get_config()


__all__ = ["AppConfig", "get_config", "reload_config", "PROJECT_ROOT", "DEFAULT_VAULTS_DIR"]
