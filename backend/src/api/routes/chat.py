"""Chat API endpoints - vault-scoped agent sessions over Server-Sent Events."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, Dict, List, Sequence

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from ...models.chat import AbortResponse, ChatRequest, ResetResponse
from ...models.session import (
    PromptResolution,
    PromptResponse,
    SessionEvent,
    SessionSnapshot,
    SessionState,
)
from ...models.vault import VaultSummary
from ...services.session_controller import SessionController, SessionRegistry
from ...services.vault import VaultNotFoundError, VaultService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vaults", tags=["chat"])

# An SSE response closes after one of these events.
TERMINAL_EVENT_TYPES = frozenset({"response_end", "session_cleared"})

SUBMISSION_ERRORS = {
    "busy": (status.HTTP_409_CONFLICT, "session_busy", "A response is already in progress"),
    "closed": (status.HTTP_409_CONFLICT, "session_closed", "The session was reset"),
    "empty_prompt": (status.HTTP_400_BAD_REQUEST, "validation_error", "Prompt must not be empty"),
}


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_vault_service(request: Request) -> VaultService:
    return request.app.state.vaults


class SessionEventChannel:
    """Buffers one controller's events for a single SSE client.

    Subscribing happens in the constructor so that no event emitted after
    the channel exists can be missed. ``close`` is idempotent; it runs when
    the generator finishes and again as the response's background task, so
    a client that disconnects before the body starts still unsubscribes.
    """

    def __init__(self, controller: SessionController) -> None:
        self.queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._unsubscribe = controller.subscribe(self.queue.put_nowait)

    def close(self) -> None:
        self._unsubscribe()


def format_sse(event: SessionEvent) -> Dict[str, str]:
    return {"event": event.type, "data": event.model_dump_json()}


def format_snapshot(snapshot: SessionSnapshot) -> Dict[str, str]:
    return {"event": "snapshot", "data": snapshot.model_dump_json()}


def event_stream_response(channel: SessionEventChannel, **kwargs) -> EventSourceResponse:
    return EventSourceResponse(
        session_event_generator(channel, **kwargs), background=BackgroundTask(channel.close)
    )


async def session_event_generator(
    channel: SessionEventChannel,
    initial: Sequence[Dict[str, str]] = (),
    follow: bool = True,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Yield SSE messages: ``initial`` first, then live events when ``follow``.

    Stops after ``response_end`` or ``session_cleared``. A client that goes
    away only unsubscribes; the turn keeps running.
    """
    try:
        for message in initial:
            yield message
        if not follow:
            return
        while True:
            event = await channel.queue.get()
            yield format_sse(event)
            if event.type in TERMINAL_EVENT_TYPES:
                break
    finally:
        channel.close()


def _vault_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, VaultNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "vault_not_found", "message": exc.message, "detail": exc.details},
        )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "invalid_vault_id", "message": str(exc)},
    )


def _open_session(registry: SessionRegistry, vault_id: str) -> SessionController:
    try:
        return registry.create_or_get(vault_id)
    except (ValueError, VaultNotFoundError) as e:
        raise _vault_http_error(e)


@router.get("", response_model=List[VaultSummary])
async def list_vaults(vaults: VaultService = Depends(get_vault_service)):
    """List the vaults available for chat."""
    return vaults.list_vaults()


@router.post("/{vault_id}/chat")
async def send_message(
    vault_id: str,
    payload: ChatRequest,
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Send a prompt and stream the turn as Server-Sent Events.

    Each SSE message is named after the session event type (`response_start`,
    `response_chunk`, `tool_start`, `tool_input`, `tool_end`, `error`,
    `permission_request`, `question_request`, `prompt_resolved`,
    `state_changed`, `response_end`) and carries the event as JSON.

    Returns 409 when a turn is already in progress for this vault.
    """
    controller = _open_session(registry, vault_id)
    channel = SessionEventChannel(controller)
    submission = controller.submit_prompt(payload.prompt)
    if not submission.accepted:
        channel.close()
        status_code, error, message = SUBMISSION_ERRORS[submission.reason or "busy"]
        raise HTTPException(status_code=status_code, detail={"error": error, "message": message})

    logger.info(
        f"Prompt accepted for vault {vault_id}",
        extra={"vault_id": vault_id, "turn_id": submission.turn_id},
    )
    return event_stream_response(channel)


@router.get("/{vault_id}/chat/stream")
async def attach_stream(vault_id: str, registry: SessionRegistry = Depends(get_registry)):
    """
    Reattach to a session: a `snapshot` event first, then live events while a
    turn is in flight.
    """
    controller = _open_session(registry, vault_id)
    channel = SessionEventChannel(controller)
    snapshot = controller.snapshot()
    return event_stream_response(
        channel, initial=[format_snapshot(snapshot)], follow=snapshot.is_processing
    )


@router.get("/{vault_id}/session", response_model=SessionSnapshot)
async def get_session(
    vault_id: str,
    registry: SessionRegistry = Depends(get_registry),
    vaults: VaultService = Depends(get_vault_service),
):
    """Current session snapshot; an idle, empty snapshot when none exists yet."""
    controller = registry.get(vault_id)
    if controller is not None:
        return controller.snapshot()
    try:
        vaults.resolve_vault(vault_id)
    except (ValueError, VaultNotFoundError) as e:
        raise _vault_http_error(e)
    return SessionSnapshot(session_key=vault_id, state=SessionState.IDLE)


@router.post("/{vault_id}/session/prompts/{prompt_id}", response_model=PromptResolution)
async def respond_to_prompt(
    vault_id: str,
    prompt_id: str,
    response: PromptResponse = Body(...),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Answer a permission or question request.

    Returns 409 `prompt_not_found` when the id is not the outstanding request
    (already answered, aborted, or reset).
    """
    controller = registry.get(vault_id)
    resolution = controller.respond_to_prompt(prompt_id, response) if controller else None
    if resolution is None or not resolution.accepted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "prompt_not_found",
                "message": f"No outstanding request with id {prompt_id}",
            },
        )
    return resolution


@router.post("/{vault_id}/session/abort", response_model=AbortResponse)
async def abort_turn(vault_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Abort the turn in flight, if any."""
    controller = registry.get(vault_id)
    aborted = await controller.abort_current_turn() if controller else False
    return AbortResponse(aborted=aborted)


@router.delete("/{vault_id}/session", response_model=ResetResponse)
async def reset_session(vault_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Discard the session (and its token accounting) for this vault."""
    return ResetResponse(reset=await registry.reset(vault_id))


__all__ = [
    "router",
    "SessionEventChannel",
    "session_event_generator",
    "format_sse",
    "format_snapshot",
    "event_stream_response",
    "TERMINAL_EVENT_TYPES",
]
