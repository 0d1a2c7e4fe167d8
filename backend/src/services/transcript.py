"""Markdown transcripts of chat sessions.

Each session gets one file under ``{vault}/{inbox}/chats/`` so conversations
are searchable from the vault itself. Messages are appended as they happen,
so a crash loses at most the turn in flight.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import frontmatter

from ..models.session import ToolInvocation, ToolStatus
from ..models.vault import VaultInfo
from .config import AppConfig, get_config

logger = logging.getLogger(__name__)

CHATS_DIRNAME = "chats"
TITLE_MAX_LENGTH = 60
COMMAND_MAX_LENGTH = 80
FOUND_PATTERN = re.compile(r"Found (\d+) (?:files?|results?|matches?)", re.IGNORECASE)


class TranscriptError(Exception):
    """Raised when a transcript cannot be created or appended to."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


def transcript_filename(session_id: str, when: datetime) -> str:
    """``YYYY-MM-DD-HHMM-{first 5 chars of session id}.md``"""
    return f"{when:%Y-%m-%d-%H%M}-{session_id[:5].lower()}.md"


def truncate_title(text: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    first_line = text.split("\n")[0].strip()
    if len(first_line) <= max_length:
        return first_line
    return first_line[: max_length - 1] + "…"


def format_user_message(content: str, when: datetime) -> str:
    return f"## [{when:%H:%M}] User\n\n{content}\n\n"


def format_tool_invocation(tool: ToolInvocation) -> str:
    """Render a tool call as a blockquote with the details worth searching for."""
    complete = tool.status == ToolStatus.COMPLETE
    lines = [f"> **Tool:** {tool.tool_name}"]

    if isinstance(tool.input, dict):
        pattern = tool.input.get("pattern")
        file_path = tool.input.get("file_path")
        command = tool.input.get("command")
        if isinstance(pattern, str):
            lines.append(f"> Pattern: `{pattern}`")
        if isinstance(file_path, str):
            lines.append(f"> File: `{file_path}`")
        if isinstance(command, str):
            if len(command) > COMMAND_MAX_LENGTH:
                command = command[: COMMAND_MAX_LENGTH - 3] + "..."
            lines.append(f"> Command: `{command}`")

    status_line = "> ✓" if complete else "> …"
    if complete and tool.output is not None:
        output = tool.output if isinstance(tool.output, str) else json.dumps(tool.output)
        match = FOUND_PATTERN.search(output)
        if match:
            status_line += f" Found {match.group(1)} files"
    lines.append(status_line)
    return "\n".join(lines) + "\n\n"


def format_assistant_message(
    content: str, tool_invocations: Iterable[ToolInvocation], when: datetime
) -> str:
    parts = [f"## [{when:%H:%M}] Assistant\n\n"]
    parts.extend(format_tool_invocation(tool) for tool in tool_invocations)
    if content.strip():
        parts.append(f"{content}\n\n")
    return "".join(parts)


class TranscriptService:
    """Creates and appends to per-session transcript files."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self.config = config or get_config()

    def chats_directory(self, vault: VaultInfo) -> Path:
        return vault.inbox_path / CHATS_DIRNAME

    def initialize(
        self,
        vault: VaultInfo,
        session_id: str,
        first_message: str,
        when: Optional[datetime] = None,
    ) -> Path:
        """Create a transcript with frontmatter and heading; returns its path."""
        when = when or datetime.now()
        chats_dir = self.chats_directory(vault)
        try:
            chats_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TranscriptError(
                f"Failed to create chats directory '{chats_dir}': {exc}", {"path": str(chats_dir)}
            ) from exc

        path = chats_dir / transcript_filename(session_id, when)
        post = frontmatter.Post(
            f"# Discussion - {when:%Y-%m-%d} {when:%H:%M}",
            date=f"{when:%Y-%m-%d}",
            time=f"{when:%H:%M}",
            session_id=session_id,
            title=truncate_title(first_message),
        )
        try:
            path.write_text(frontmatter.dumps(post) + "\n\n", encoding="utf-8")
        except OSError as exc:
            raise TranscriptError(
                f"Failed to create transcript '{path}': {exc}", {"path": str(path)}
            ) from exc
        logger.info(f"Created transcript {path.name} for vault {vault.id}")
        return path

    def append(self, path: Path, content: str) -> None:
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise TranscriptError(
                f"Failed to append to transcript '{path}': {exc}", {"path": str(path)}
            ) from exc

    def append_user_message(self, path: Path, content: str, when: Optional[datetime] = None) -> None:
        self.append(path, format_user_message(content, when or datetime.now()))

    def append_assistant_message(
        self,
        path: Path,
        content: str,
        tool_invocations: Iterable[ToolInvocation] = (),
        when: Optional[datetime] = None,
    ) -> None:
        self.append(path, format_assistant_message(content, tool_invocations, when or datetime.now()))


__all__ = [
    "TranscriptService",
    "TranscriptError",
    "transcript_filename",
    "truncate_title",
    "format_user_message",
    "format_tool_invocation",
    "format_assistant_message",
]
