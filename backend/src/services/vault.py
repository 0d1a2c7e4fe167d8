"""Filesystem vault resolution."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional

from ..models.vault import VaultInfo, VaultSummary
from .config import AppConfig, get_config

VAULT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._ -]{0,127}$")
H1_PATTERN = re.compile(r"^\s*#\s+(.+)$", re.MULTILINE)
NAME_SOURCES = ("CLAUDE.md", "README.md")


class VaultNotFoundError(Exception):
    """Raised when a vault id does not name an existing vault directory."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


def validate_vault_id(vault_id: str) -> tuple[bool, str]:
    """
    Validate a vault id (a single directory name).

    Returns (is_valid, message). Message is empty when valid.
    """
    if not vault_id or not VAULT_ID_PATTERN.match(vault_id):
        return False, "Vault id must be 1-128 characters of letters, digits, '.', '_', '-' or space"
    if ".." in vault_id:
        return False, "Vault id must not contain '..'"
    return True, ""


def sanitize_vault_path(vaults_dir: Path, vault_id: str) -> Path:
    """
    Resolve a vault directory under the vaults root.

    Raises ValueError if the resolved path escapes the root.
    """
    root = vaults_dir.resolve()
    full_path = (root / vault_id).resolve()
    if full_path.parent != root:
        raise ValueError(f"Path escapes vaults root: {vault_id}")
    return full_path


def _derive_name(vault_path: Path, vault_id: str) -> str:
    for filename in NAME_SOURCES:
        candidate = vault_path / filename
        if not candidate.is_file():
            continue
        try:
            match = H1_PATTERN.search(candidate.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            continue
        if match:
            return match.group(1).strip()
    return vault_id


class VaultService:
    """Service for locating vault directories under the configured root."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config = config or get_config()
        self.vaults_dir = self.config.vaults_dir
        self.vaults_dir.mkdir(parents=True, exist_ok=True)

    def resolve_vault(self, vault_id: str) -> VaultInfo:
        """
        Resolve a vault id to its directory and inbox.

        Raises ValueError for malformed ids and VaultNotFoundError for unknown vaults.
        """
        is_valid, message = validate_vault_id(vault_id)
        if not is_valid:
            raise ValueError(message)
        path = sanitize_vault_path(self.vaults_dir, vault_id)
        if not path.is_dir():
            raise VaultNotFoundError(f"Vault not found: {vault_id}", {"vault_id": vault_id})
        return VaultInfo(
            id=vault_id,
            name=_derive_name(path, vault_id),
            path=path,
            inbox_path=path / self.config.inbox_dir,
        )

    def list_vaults(self) -> List[VaultSummary]:
        """List vault directories (hidden directories skipped), sorted by id."""
        summaries: List[VaultSummary] = []
        for entry in self.vaults_dir.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if not validate_vault_id(entry.name)[0]:
                continue
            summaries.append(VaultSummary(id=entry.name, name=_derive_name(entry, entry.name)))
        return sorted(summaries, key=lambda item: item.id.lower())


__all__ = [
    "VaultService",
    "VaultNotFoundError",
    "validate_vault_id",
    "sanitize_vault_path",
]
