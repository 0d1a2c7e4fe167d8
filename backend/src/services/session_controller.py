"""Session Controller - one state machine per session key.

The controller owns everything that outlives a single provider event: the
session state, the cross-turn StreamerState, the outstanding permission or
question request, and the provider session id used to resume the
conversation. Each accepted prompt runs as one asyncio task that feeds the
provider's event stream through a SessionStreamer and relays its events to
subscribers.

State machine:
    idle -> streaming -> (awaiting_permission | awaiting_question -> streaming)*
    streaming -> idle | error
    streaming | awaiting_* -> aborted -> idle (once the turn task settles)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..models.session import (
    BUSY_STATES,
    ErrorCode,
    ErrorEvent,
    PendingPrompt,
    PermissionRequestEvent,
    PermissionResponse,
    PromptKind,
    PromptResolution,
    PromptResolvedEvent,
    PromptResponse,
    PromptSubmission,
    QuestionItem,
    QuestionRequestEvent,
    ResponseEndEvent,
    ResponseStartEvent,
    SessionClearedEvent,
    SessionEvent,
    SessionEventCallback,
    SessionSnapshot,
    SessionState,
    StateChangedEvent,
    StreamerState,
    StreamingResult,
)
from ..models.vault import VaultInfo
from .agent_provider import AgentProvider, ProviderTurn, TurnRequest, describe_provider_failure
from .session_streamer import CancellationToken, SessionStreamer, compute_context_usage
from .transcript import TranscriptError, TranscriptService
from .vault import VaultService

logger = logging.getLogger(__name__)

ACCEPTING_STATES = frozenset({SessionState.IDLE, SessionState.ERROR})
RESUME_FAILED_MESSAGE = "Could not resume the previous conversation. A new session was started."
SHUTDOWN_GRACE_SECONDS = 5.0


class SessionControllerError(Exception):
    """Raised for controller misuse (e.g., a session key that cannot be opened)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


@dataclass
class PendingRequest:
    """An outstanding permission/question request and the future the provider awaits."""

    prompt: PendingPrompt
    future: asyncio.Future


def describe_permission(tool_name: str, tool_input: Dict[str, Any]) -> str:
    target = tool_input.get("file_path") or tool_input.get("path") or tool_input.get("command")
    if isinstance(target, str) and target:
        return f"Allow {tool_name} on {target}?"
    return f"Allow {tool_name}?"


def describe_questions(questions: List[QuestionItem]) -> str:
    if len(questions) == 1:
        return questions[0].question
    return f"The assistant has {len(questions)} questions"


class SessionController:
    """Owns the session for one key: state machine, subscribers, and the running turn."""

    def __init__(
        self,
        session_key: str,
        provider: AgentProvider,
        vault: VaultInfo,
        transcripts: Optional[TranscriptService] = None,
    ) -> None:
        self.session_key = session_key
        self.session_id = uuid.uuid4().hex
        self.provider = provider
        self.vault = vault
        self.transcripts = transcripts

        self._state = SessionState.IDLE
        self._streamer_state = StreamerState()
        self._subscribers: List[SessionEventCallback] = []
        self._pending: Optional[PendingRequest] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel: Optional[CancellationToken] = None
        self._turn: Optional[ProviderTurn] = None
        self._streamer: Optional[SessionStreamer] = None
        self._turn_id: Optional[str] = None
        self._last_result: Optional[StreamingResult] = None
        self._provider_session_id: Optional[str] = None
        self._transcript_path: Optional[Path] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def streamer_state(self) -> StreamerState:
        return self._streamer_state

    @property
    def pending_prompt(self) -> Optional[PendingPrompt]:
        return self._pending.prompt if self._pending else None

    @property
    def provider_session_id(self) -> Optional[str]:
        return self._provider_session_id

    @property
    def is_processing(self) -> bool:
        return self._state in BUSY_STATES

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> SessionSnapshot:
        """Current state plus the content accumulated by the running (or last) turn."""
        if self._streamer is not None and self.is_processing:
            partial = self._streamer.snapshot()
        else:
            partial = self._last_result
        return SessionSnapshot(
            session_key=self.session_key,
            state=self._state,
            provider_session_id=self._provider_session_id,
            turn_id=self._turn_id,
            content=partial.content if partial else "",
            tool_invocations=partial.tool_invocations if partial else [],
            pending_prompt=self.pending_prompt,
            context_usage=compute_context_usage(
                self._streamer_state.cumulative_tokens, self._streamer_state.context_window_size
            ),
            cumulative_tokens=self._streamer_state.cumulative_tokens,
            context_window_size=self._streamer_state.context_window_size,
            active_model_id=self._streamer_state.active_model_id,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: SessionEventCallback) -> Callable[[], None]:
        """Register ``callback`` for every SessionEvent; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: SessionEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Session subscriber failed on {event.type} for {self.session_key}")

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.debug(f"Session {self.session_key}: {self._state.value} -> {state.value}")
        self._state = state
        self._emit(StateChangedEvent(state=state))

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def submit_prompt(self, text: str) -> PromptSubmission:
        """
        Start a turn for ``text`` unless one is already in flight.

        Busy sessions reject instead of queueing. The state flips to streaming
        before this returns, so a second call in the same tick is rejected.
        A turn counts as in flight until its response_end has been emitted,
        even though the state is already idle or error by then.
        """
        if self._closed:
            return PromptSubmission(accepted=False, reason="closed")
        if not text or not text.strip():
            return PromptSubmission(accepted=False, reason="empty_prompt")
        if self._state not in ACCEPTING_STATES or self._turn_running():
            logger.info(f"Rejected prompt for {self.session_key}: session is {self._state.value}")
            return PromptSubmission(accepted=False, reason="busy")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise SessionControllerError(
                "submit_prompt must be called from a running event loop",
                {"session_key": self.session_key},
            ) from exc

        turn_id = uuid.uuid4().hex
        cancel = CancellationToken()
        self._turn_id = turn_id
        self._cancel = cancel
        self._streamer = None
        self._set_state(SessionState.STREAMING)
        self._task = loop.create_task(
            self._run_turn(turn_id, text, cancel), name=f"session-turn-{self.session_key}"
        )
        return PromptSubmission(accepted=True, turn_id=turn_id)

    def _turn_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_turn(self, turn_id: str, prompt: str, cancel: CancellationToken) -> None:
        started = time.monotonic()
        self._emit(ResponseStartEvent(turn_id=turn_id))
        self._record_user_message(prompt)

        streamer = SessionStreamer(turn_id, self._emit, self._streamer_state, cancel)
        self._streamer = streamer
        request = TurnRequest(
            session_key=self.session_key,
            vault=self.vault,
            prompt=prompt,
            can_use_tool=self._request_permission,
            ask_user_question=self._request_question,
            resume_session_id=self._provider_session_id,
        )

        failed = False
        try:
            result = await self._stream_turn(request, streamer, cancel)
        except Exception as exc:
            logger.error(
                f"Turn {turn_id} failed for {self.session_key}: {exc}",
                exc_info=True,
                extra={"session_key": self.session_key, "turn_id": turn_id},
            )
            failed = True
            self._emit(ErrorEvent(code=ErrorCode.STREAM_FAILED, message=describe_provider_failure(exc)))
            result = streamer.finish()
        finally:
            self._turn = None
            self._deny_pending()

        self._last_result = result
        self._record_assistant_message(result)

        if cancel.cancelled:
            final_state = SessionState.IDLE
        elif failed or result.error is not None:
            final_state = SessionState.ERROR
        else:
            final_state = SessionState.IDLE
        self._set_state(final_state)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Turn {turn_id} finished for {self.session_key} ({final_state.value}, {duration_ms}ms)",
            extra={"session_key": self.session_key, "turn_id": turn_id, "duration_ms": duration_ms},
        )
        self._emit(
            ResponseEndEvent(turn_id=turn_id, context_usage=result.context_usage, duration_ms=duration_ms)
        )

    async def _stream_turn(
        self, request: TurnRequest, streamer: SessionStreamer, cancel: CancellationToken
    ) -> StreamingResult:
        turn = await self.provider.start_turn(request)
        self._turn = turn
        self._track_provider_session(turn.session_id)
        try:
            if cancel.cancelled:
                await turn.interrupt()
            return await streamer.stream(turn.events())
        finally:
            await turn.close()

    def _track_provider_session(self, session_id: Optional[str]) -> None:
        requested = self._provider_session_id
        if requested and session_id and session_id != requested:
            logger.warning(
                f"Provider did not resume session {requested} for {self.session_key}; got {session_id}"
            )
            self._emit(ErrorEvent(code=ErrorCode.RESUME_FAILED, message=RESUME_FAILED_MESSAGE))
        self._provider_session_id = session_id or requested

    # ------------------------------------------------------------------
    # Human-in-the-loop requests (called by the provider mid-turn)
    # ------------------------------------------------------------------

    async def _request_permission(
        self, tool_use_id: str, tool_name: str, tool_input: Dict[str, Any]
    ) -> bool:
        if not self._can_pause(tool_use_id):
            return False
        prompt = PendingPrompt(
            id=tool_use_id,
            type=PromptKind.TOOL_PERMISSION,
            description=describe_permission(tool_name, tool_input or {}),
            tool_name=tool_name,
            input=tool_input,
        )
        future = self._open_request(prompt)
        self._emit(
            PermissionRequestEvent(
                id=prompt.id, description=prompt.description, tool_name=tool_name, input=tool_input
            )
        )
        self._set_state(SessionState.AWAITING_PERMISSION)
        return bool(await future)

    async def _request_question(self, tool_use_id: str, questions: List[QuestionItem]) -> Dict[str, str]:
        if not self._can_pause(tool_use_id):
            return {}
        prompt = PendingPrompt(
            id=tool_use_id,
            type=PromptKind.ASK_USER_QUESTION,
            description=describe_questions(questions),
            questions=questions,
        )
        future = self._open_request(prompt)
        self._emit(QuestionRequestEvent(id=prompt.id, description=prompt.description, questions=questions))
        self._set_state(SessionState.AWAITING_QUESTION)
        return dict(await future)

    def _can_pause(self, request_id: str) -> bool:
        if self._pending is not None:
            logger.warning(
                f"Denying request {request_id}: {self._pending.prompt.id} is still outstanding"
            )
            return False
        if self._cancel is None or self._cancel.cancelled or self._state != SessionState.STREAMING:
            logger.info(f"Denying request {request_id}: session {self.session_key} is {self._state.value}")
            return False
        return True

    def _open_request(self, prompt: PendingPrompt) -> asyncio.Future:
        future = asyncio.get_running_loop().create_future()
        self._pending = PendingRequest(prompt=prompt, future=future)
        return future

    def _take_pending(self, request_id: str, kind: PromptKind) -> Optional[PendingRequest]:
        pending = self._pending
        if pending is None or pending.prompt.id != request_id or pending.prompt.type != kind:
            logger.info(f"Ignoring stale {kind.value} response {request_id} for {self.session_key}")
            return None
        if pending.future.done():
            return None
        self._pending = None
        return pending

    def resolve_permission(self, request_id: str, allowed: bool) -> PromptResolution:
        """Answer the outstanding permission request; stale ids are rejected."""
        pending = self._take_pending(request_id, PromptKind.TOOL_PERMISSION)
        if pending is None:
            return PromptResolution(accepted=False, reason="not_found")
        pending.future.set_result(bool(allowed))
        self._emit(PromptResolvedEvent(id=request_id))
        self._set_state(SessionState.STREAMING)
        return PromptResolution(accepted=True)

    def resolve_question(self, request_id: str, answers: Dict[str, str]) -> PromptResolution:
        """Answer the outstanding question request; stale ids are rejected."""
        pending = self._take_pending(request_id, PromptKind.ASK_USER_QUESTION)
        if pending is None:
            return PromptResolution(accepted=False, reason="not_found")
        pending.future.set_result(dict(answers or {}))
        self._emit(PromptResolvedEvent(id=request_id))
        self._set_state(SessionState.STREAMING)
        return PromptResolution(accepted=True)

    def respond_to_prompt(self, request_id: str, response: PromptResponse) -> PromptResolution:
        if isinstance(response, PermissionResponse):
            return self.resolve_permission(request_id, response.allowed)
        return self.resolve_question(request_id, response.answers)

    def _deny_pending(self) -> None:
        pending = self._pending
        if pending is None:
            return
        self._pending = None
        if not pending.future.done():
            denial: Any = False if pending.prompt.type == PromptKind.TOOL_PERMISSION else {}
            pending.future.set_result(denial)
        self._emit(PromptResolvedEvent(id=pending.prompt.id))

    # ------------------------------------------------------------------
    # Abort / teardown
    # ------------------------------------------------------------------

    async def abort_current_turn(self) -> bool:
        """
        Cooperatively stop the running turn.

        Returns False when nothing is in flight. The state is ``aborted``
        until the turn task settles, then ``idle``.
        """
        if self._state not in (
            SessionState.STREAMING,
            SessionState.AWAITING_PERMISSION,
            SessionState.AWAITING_QUESTION,
        ):
            return False

        logger.info(f"Aborting turn {self._turn_id} for {self.session_key}")
        if self._cancel is not None:
            self._cancel.cancel()
        self._deny_pending()
        self._set_state(SessionState.ABORTED)

        turn = self._turn
        if turn is not None:
            try:
                await turn.interrupt()
            except Exception:
                logger.warning(f"Provider interrupt failed for {self.session_key}", exc_info=True)
        return True

    async def wait_for_turn(self, timeout: Optional[float] = None) -> bool:
        """Wait until the running turn task settles. Returns False on timeout."""
        task = self._task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        return bool(done)

    async def close(self) -> None:
        """Abort any turn, notify subscribers, and drop them. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.abort_current_turn()
        self._emit(SessionClearedEvent())
        self._subscribers.clear()
        self._streamer_state.reset()

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def _record_user_message(self, prompt: str) -> None:
        if self.transcripts is None:
            return
        try:
            if self._transcript_path is None:
                self._transcript_path = self.transcripts.initialize(self.vault, self.session_id, prompt)
            self.transcripts.append_user_message(self._transcript_path, prompt)
        except TranscriptError as exc:
            logger.warning(f"Transcript write failed for {self.session_key}: {exc.message}")

    def _record_assistant_message(self, result: StreamingResult) -> None:
        if self.transcripts is None or self._transcript_path is None:
            return
        try:
            self.transcripts.append_assistant_message(
                self._transcript_path, result.content, result.tool_invocations
            )
        except TranscriptError as exc:
            logger.warning(f"Transcript write failed for {self.session_key}: {exc.message}")


class SessionRegistry:
    """Maps session keys (vault ids) to their controllers.

    ``create_or_get`` is an atomic check-and-insert under a lock, so only one
    controller ever exists per key. ``reset`` closes the controller, waits for
    its turn, then removes it; the next ``create_or_get`` starts with fresh
    token accounting.
    """

    def __init__(
        self,
        provider: AgentProvider,
        vaults: VaultService,
        transcripts: Optional[TranscriptService] = None,
    ) -> None:
        self.provider = provider
        self.vaults = vaults
        self.transcripts = transcripts
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionController] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def create_or_get(self, key: str) -> SessionController:
        """
        Return the controller for ``key``, creating it on first use.

        Raises ValueError / VaultNotFoundError when ``key`` is not a vault.
        """
        with self._lock:
            controller = self._sessions.get(key)
            if controller is not None:
                return controller
            vault = self.vaults.resolve_vault(key)
            controller = SessionController(key, self.provider, vault, self.transcripts)
            self._sessions[key] = controller
            logger.info(f"Created session for {key}")
            return controller

    def get(self, key: str) -> Optional[SessionController]:
        with self._lock:
            return self._sessions.get(key)

    async def reset(self, key: str, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> bool:
        """
        Tear down the session for ``key``. Returns False if there was none.

        The closed controller stays registered until its turn settles (or
        ``grace_seconds`` pass), so the next ``create_or_get`` cannot start a
        turn for the same key while the old provider turn is still running.
        """
        controller = self.get(key)
        if controller is None:
            return False
        logger.info(f"Resetting session for {key}")
        await controller.close()
        if not await controller.wait_for_turn(timeout=grace_seconds):
            logger.warning(f"Turn for {key} did not settle before reset")
        with self._lock:
            if self._sessions.get(key) is controller:
                del self._sessions[key]
        return True

    async def close_all(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Close every session and wait briefly for running turns to settle."""
        with self._lock:
            controllers = list(self._sessions.values())
            self._sessions.clear()
        for controller in controllers:
            await controller.close()
        for controller in controllers:
            if not await controller.wait_for_turn(timeout=grace_seconds):
                logger.warning(f"Turn for {controller.session_key} did not settle before shutdown")


__all__ = [
    "SessionController",
    "SessionControllerError",
    "SessionRegistry",
    "PendingRequest",
    "describe_permission",
    "describe_questions",
]
