"""System routes for health, logs and diagnostics."""

import logging
from collections import deque
from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ...models.chat import HealthResponse

router = APIRouter()

# Global in-memory log buffer
LOG_BUFFER: deque = deque(maxlen=200)

_RECORD_ATTRIBUTES = {
    "args", "asctime", "created", "exc_info", "exc_text", "filename",
    "funcName", "levelname", "levelno", "lineno", "module",
    "msecs", "message", "msg", "name", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "taskName", "thread", "threadName",
}


class LogEntry(BaseModel):
    timestamp: str
    level: str
    logger: str
    message: str
    extra: Dict[str, Any]


class MemoryLogHandler(logging.Handler):
    """Custom handler to capture logs into memory."""

    def emit(self, record):
        try:
            extra = {
                k: v if isinstance(v, (str, int, float, bool, type(None))) else repr(v)
                for k, v in record.__dict__.items()
                if k not in _RECORD_ATTRIBUTES
            }
            LOG_BUFFER.append(
                {
                    "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": self.format(record),
                    "extra": extra,
                }
            )
        except Exception:
            self.handleError(record)


memory_handler = MemoryLogHandler()
memory_handler.setFormatter(logging.Formatter("%(message)s"))


def configure_logging(level: str = "INFO") -> None:
    """Set the root level and attach the in-memory handler (once)."""
    root = logging.getLogger()
    if not any(handler is memory_handler for handler in root.handlers):
        root.addHandler(memory_handler)
    if not any(isinstance(handler, logging.StreamHandler) for handler in root.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(stream)
    root.setLevel(level)


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Liveness probe with a count of live sessions."""
    return HealthResponse(
        status="ok",
        provider=request.app.state.provider.name,
        sessions=len(request.app.state.registry),
    )


@router.get("/api/system/logs", response_model=List[LogEntry])
async def get_logs():
    """Retrieve recent system logs."""
    return list(LOG_BUFFER)
