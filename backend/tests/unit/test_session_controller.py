"""Unit tests for the per-key session controller state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import pytest

from backend.src.models.session import (
    ErrorCode,
    ErrorEvent,
    PermissionRequestEvent,
    PermissionResponse,
    PromptKind,
    PromptResolvedEvent,
    QuestionItem,
    QuestionRequestEvent,
    QuestionResponse,
    ResponseEndEvent,
    ResponseStartEvent,
    SessionClearedEvent,
    SessionState,
    StateChangedEvent,
    ToolStatus,
)
from backend.src.models.vault import VaultInfo
from backend.src.services.agent_provider import (
    GENERIC_FAILURE_MESSAGE,
    AgentProvider,
    ProviderTurn,
    TurnRequest,
)
from backend.src.services.config import AppConfig
from backend.src.services.session_controller import SessionController, SessionControllerError
from backend.src.services.session_streamer import ABORTED_TOOL_OUTPUT, INCOMPLETE_TOOL_OUTPUT
from backend.src.services.transcript import TranscriptService

Script = Callable[[TurnRequest, "FakeTurn"], AsyncIterator[Any]]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTurn(ProviderTurn):
    def __init__(self, session_id: str, request: TurnRequest, script: Script) -> None:
        self.session_id = session_id
        self.request = request
        self.script = script
        self.interrupted = asyncio.Event()
        self.closed = False

    async def events(self) -> AsyncIterator[Any]:
        async for event in self.script(self.request, self):
            yield event

    async def interrupt(self) -> None:
        self.interrupted.set()

    async def close(self) -> None:
        self.closed = True


class FakeProvider(AgentProvider):
    name = "fake"

    def __init__(self, script: Script, session_ids: Optional[List[str]] = None) -> None:
        self.script = script
        self.session_ids = list(session_ids or [])
        self.requests: List[TurnRequest] = []
        self.turns: List[FakeTurn] = []
        self.start_error: Optional[Exception] = None

    async def start_turn(self, request: TurnRequest) -> FakeTurn:
        if self.start_error is not None:
            raise self.start_error
        self.requests.append(request)
        session_id = self.session_ids.pop(0) if self.session_ids else (request.resume_session_id or "provider-1")
        turn = FakeTurn(session_id, request, self.script)
        self.turns.append(turn)
        return turn


def text_turn(text: str = "Hello", usage: Optional[Dict[str, int]] = None) -> Script:
    async def script(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        yield {"type": "system", "subtype": "init", "model": "m"}
        yield {"type": "stream_event", "event": {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}}
        yield {
            "type": "stream_event",
            "event": {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        }
        yield {"type": "stream_event", "event": {"type": "content_block_stop", "index": 0}}
        yield {
            "type": "result",
            "subtype": "success",
            "usage": usage or {"input_tokens": 10, "output_tokens": 5},
            "modelUsage": {"m": {"contextWindow": 100}},
        }

    return script


def tool_use(tool_id: str, name: str) -> List[Dict[str, Any]]:
    return [
        {
            "type": "stream_event",
            "event": {
                "type": "content_block_start",
                "index": 0,
                "content_block": {"type": "tool_use", "id": tool_id, "name": name},
            },
        },
        {"type": "stream_event", "event": {"type": "content_block_stop", "index": 0}},
    ]


def tool_result(tool_id: str, content: Any) -> Dict[str, Any]:
    return {
        "type": "user",
        "message": {"content": [{"type": "tool_result", "tool_use_id": tool_id, "content": content}]},
    }


async def wait_until(predicate: Callable[[], bool], attempts: int = 500) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


@pytest.fixture
def vault(tmp_path: Path) -> VaultInfo:
    path = tmp_path / "notes"
    path.mkdir()
    return VaultInfo(id="notes", name="Notes", path=path, inbox_path=path / "00_Inbox")


def make_controller(vault: VaultInfo, provider: AgentProvider, **kwargs) -> tuple:
    controller = SessionController("notes", provider, vault, **kwargs)
    events: List[Any] = []
    controller.subscribe(events.append)
    return controller, events


def states(events: List[Any]) -> List[SessionState]:
    return [event.state for event in events if isinstance(event, StateChangedEvent)]


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_turn_is_bracketed_and_returns_to_idle(vault: VaultInfo) -> None:
    controller, events = make_controller(vault, FakeProvider(text_turn("Hi")))

    submission = controller.submit_prompt("Hello?")
    assert submission.accepted is True
    assert controller.state == SessionState.STREAMING

    await controller.wait_for_turn()

    assert controller.state == SessionState.IDLE
    assert events[0] == StateChangedEvent(state=SessionState.STREAMING)
    assert events[1] == ResponseStartEvent(turn_id=submission.turn_id)
    assert events[-2] == StateChangedEvent(state=SessionState.IDLE)
    end = events[-1]
    assert isinstance(end, ResponseEndEvent)
    assert end.turn_id == submission.turn_id
    assert end.context_usage == 15
    assert controller.snapshot().content == "Hi"


@pytest.mark.asyncio
async def test_second_submission_in_the_same_tick_is_rejected(vault: VaultInfo) -> None:
    controller, _ = make_controller(vault, FakeProvider(text_turn()))

    first = controller.submit_prompt("one")
    second = controller.submit_prompt("two")

    assert first.accepted is True
    assert second.accepted is False
    assert second.reason == "busy"
    await controller.wait_for_turn()


@pytest.mark.asyncio
async def test_resubmit_on_idle_waits_for_response_end(vault: VaultInfo) -> None:
    controller, events = make_controller(vault, FakeProvider(text_turn()))
    resubmissions: List[Any] = []

    def resubmit_when_idle(event: Any) -> None:
        if event == StateChangedEvent(state=SessionState.IDLE) and not resubmissions:
            resubmissions.append(controller.submit_prompt("next"))

    controller.subscribe(resubmit_when_idle)
    first = controller.submit_prompt("one")
    await controller.wait_for_turn()

    assert resubmissions[0].accepted is False
    assert resubmissions[0].reason == "busy"
    assert isinstance(events[-1], ResponseEndEvent)
    assert events[-1].turn_id == first.turn_id

    second = controller.submit_prompt("next")
    assert second.accepted is True
    await controller.wait_for_turn()
    bracket_ids = [event.turn_id for event in events if isinstance(event, (ResponseStartEvent, ResponseEndEvent))]
    assert bracket_ids == [first.turn_id, first.turn_id, second.turn_id, second.turn_id]


@pytest.mark.asyncio
async def test_blank_prompt_is_rejected_without_state_change(vault: VaultInfo) -> None:
    controller, events = make_controller(vault, FakeProvider(text_turn()))

    submission = controller.submit_prompt("   ")

    assert submission.accepted is False
    assert submission.reason == "empty_prompt"
    assert events == []


def test_submit_outside_event_loop_raises(vault: VaultInfo) -> None:
    controller = SessionController("notes", FakeProvider(text_turn()), vault)

    with pytest.raises(SessionControllerError):
        controller.submit_prompt("hello")
    assert controller.state == SessionState.IDLE


@pytest.mark.asyncio
async def test_token_accounting_persists_across_turns(vault: VaultInfo) -> None:
    controller, _ = make_controller(vault, FakeProvider(text_turn()))

    controller.submit_prompt("one")
    await controller.wait_for_turn()
    controller.submit_prompt("two")
    await controller.wait_for_turn()

    assert controller.streamer_state.cumulative_tokens == 30
    assert controller.streamer_state.active_model_id == "m"
    assert controller.snapshot().context_usage == 30


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_result_error_moves_to_error_and_allows_retry(vault: VaultInfo) -> None:
    async def failing(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        yield {"type": "result", "subtype": "error_max_turns", "errors": ["raw"]}

    provider = FakeProvider(failing)
    controller, events = make_controller(vault, provider)

    controller.submit_prompt("go")
    await controller.wait_for_turn()

    assert controller.state == SessionState.ERROR
    errors = [event for event in events if isinstance(event, ErrorEvent)]
    assert [error.code for error in errors] == [ErrorCode.MAX_TURNS]
    assert isinstance(events[-1], ResponseEndEvent)

    provider.script = text_turn()
    retry = controller.submit_prompt("again")
    assert retry.accepted is True
    await controller.wait_for_turn()
    assert controller.state == SessionState.IDLE


@pytest.mark.asyncio
async def test_stream_failure_surfaces_fixed_message(vault: VaultInfo) -> None:
    async def broken(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        yield {"type": "stream_event", "event": {"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}}
        yield {
            "type": "stream_event",
            "event": {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "partial"}},
        }
        raise RuntimeError("socket hang up at 0x7f")

    provider = FakeProvider(broken)
    controller, events = make_controller(vault, provider)

    controller.submit_prompt("go")
    await controller.wait_for_turn()

    assert controller.state == SessionState.ERROR
    error = next(event for event in events if isinstance(event, ErrorEvent))
    assert error.code == ErrorCode.STREAM_FAILED
    assert error.message == GENERIC_FAILURE_MESSAGE
    assert controller.snapshot().content == "partial"
    assert provider.turns[0].closed is True


@pytest.mark.asyncio
async def test_stream_failure_leaves_no_tool_running(vault: VaultInfo) -> None:
    async def broken(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        for event in tool_use("t1", "Search"):
            yield event
        raise RuntimeError("socket hang up")

    controller, _ = make_controller(vault, FakeProvider(broken))

    controller.submit_prompt("go")
    await controller.wait_for_turn()

    assert controller.state == SessionState.ERROR
    tools = controller.snapshot().tool_invocations
    assert [(tool.tool_use_id, tool.status) for tool in tools] == [("t1", ToolStatus.COMPLETE)]
    assert tools[0].output == INCOMPLETE_TOOL_OUTPUT


@pytest.mark.asyncio
async def test_turn_start_failure_uses_known_pattern_message(vault: VaultInfo) -> None:
    provider = FakeProvider(text_turn())
    provider.start_error = RuntimeError("429 rate_limit exceeded")
    controller, events = make_controller(vault, provider)

    controller.submit_prompt("go")
    await controller.wait_for_turn()

    error = next(event for event in events if isinstance(event, ErrorEvent))
    assert error.code == ErrorCode.STREAM_FAILED
    assert "Rate limit" in error.message
    assert controller.state == SessionState.ERROR
    assert isinstance(events[-1], ResponseEndEvent)


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_the_turn(vault: VaultInfo) -> None:
    controller, events = make_controller(vault, FakeProvider(text_turn()))

    def explode(event: Any) -> None:
        raise RuntimeError("subscriber bug")

    controller.subscribe(explode)
    controller.submit_prompt("go")
    await controller.wait_for_turn()

    assert controller.state == SessionState.IDLE
    assert isinstance(events[-1], ResponseEndEvent)


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(vault: VaultInfo) -> None:
    controller = SessionController("notes", FakeProvider(text_turn()), vault)
    received: List[Any] = []
    unsubscribe = controller.subscribe(received.append)

    unsubscribe()
    controller.submit_prompt("go")
    await controller.wait_for_turn()

    assert received == []


# ---------------------------------------------------------------------------
# Provider session continuity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_next_turn_resumes_provider_session(vault: VaultInfo) -> None:
    provider = FakeProvider(text_turn(), session_ids=["p-1"])
    controller, events = make_controller(vault, provider)

    controller.submit_prompt("one")
    await controller.wait_for_turn()
    controller.submit_prompt("two")
    await controller.wait_for_turn()

    assert provider.requests[0].resume_session_id is None
    assert provider.requests[1].resume_session_id == "p-1"
    assert controller.provider_session_id == "p-1"
    assert not any(isinstance(event, ErrorEvent) for event in events)


@pytest.mark.asyncio
async def test_resume_mismatch_emits_non_fatal_error(vault: VaultInfo) -> None:
    provider = FakeProvider(text_turn(), session_ids=["p-1", "p-2"])
    controller, events = make_controller(vault, provider)

    controller.submit_prompt("one")
    await controller.wait_for_turn()
    controller.submit_prompt("two")
    await controller.wait_for_turn()

    errors = [event for event in events if isinstance(event, ErrorEvent)]
    assert [error.code for error in errors] == [ErrorCode.RESUME_FAILED]
    assert controller.provider_session_id == "p-2"
    assert controller.state == SessionState.IDLE


# ---------------------------------------------------------------------------
# Permission / question pauses
# ---------------------------------------------------------------------------


def permission_script(decisions: List[bool]) -> Script:
    async def script(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        for event in tool_use("t1", "Write"):
            yield event
        allowed = await request.can_use_tool("t1", "Write", {"file_path": "a.md"})
        decisions.append(allowed)
        yield tool_result("t1", "written" if allowed else "denied")
        yield {"type": "result", "subtype": "success"}

    return script


@pytest.mark.asyncio
async def test_permission_round_trip(vault: VaultInfo) -> None:
    decisions: List[bool] = []
    controller, events = make_controller(vault, FakeProvider(permission_script(decisions)))

    controller.submit_prompt("write it")
    await wait_until(lambda: controller.state == SessionState.AWAITING_PERMISSION)

    pending = controller.pending_prompt
    assert pending.id == "t1"
    assert pending.type == PromptKind.TOOL_PERMISSION
    assert "a.md" in pending.description
    assert controller.snapshot().pending_prompt == pending

    stale = controller.resolve_permission("other", True)
    assert stale.accepted is False
    assert stale.reason == "not_found"
    assert controller.state == SessionState.AWAITING_PERMISSION

    assert controller.resolve_permission("t1", True).accepted is True
    assert controller.state == SessionState.STREAMING
    await controller.wait_for_turn()

    assert decisions == [True]
    assert states(events) == [
        SessionState.STREAMING,
        SessionState.AWAITING_PERMISSION,
        SessionState.STREAMING,
        SessionState.IDLE,
    ]
    request = next(event for event in events if isinstance(event, PermissionRequestEvent))
    assert request.tool_name == "Write"
    assert PromptResolvedEvent(id="t1") in events
    assert controller.resolve_permission("t1", True).accepted is False


@pytest.mark.asyncio
async def test_question_round_trip_via_prompt_response(vault: VaultInfo) -> None:
    answers_seen: List[Dict[str, str]] = []
    question = QuestionItem(question="Which note?", header="Note")

    async def script(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        for event in tool_use("q1", "AskUserQuestion"):
            yield event
        answers = await request.ask_user_question("q1", [question])
        answers_seen.append(answers)
        yield tool_result("q1", "answered")
        yield {"type": "result", "subtype": "success"}

    controller, events = make_controller(vault, FakeProvider(script))
    controller.submit_prompt("ask me")
    await wait_until(lambda: controller.state == SessionState.AWAITING_QUESTION)

    wrong_kind = controller.respond_to_prompt("q1", PermissionResponse(allowed=True))
    assert wrong_kind.accepted is False

    resolution = controller.respond_to_prompt("q1", QuestionResponse(answers={"Which note?": "Today"}))
    assert resolution.accepted is True
    await controller.wait_for_turn()

    assert answers_seen == [{"Which note?": "Today"}]
    request = next(event for event in events if isinstance(event, QuestionRequestEvent))
    assert request.description == "Which note?"
    assert request.questions == [question]


@pytest.mark.asyncio
async def test_second_request_while_pending_is_denied(vault: VaultInfo) -> None:
    outcomes: List[Any] = []

    async def script(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        first = asyncio.ensure_future(request.can_use_tool("t1", "Write", {}))
        await asyncio.sleep(0)
        outcomes.append(await request.can_use_tool("t2", "Write", {}))
        outcomes.append(await first)
        yield {"type": "result", "subtype": "success"}

    controller, _ = make_controller(vault, FakeProvider(script))
    controller.submit_prompt("go")
    await wait_until(lambda: len(outcomes) == 1)

    assert outcomes == [False]
    assert controller.pending_prompt.id == "t1"
    controller.resolve_permission("t1", True)
    await controller.wait_for_turn()
    assert outcomes == [False, True]


# ---------------------------------------------------------------------------
# Abort
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_abort_while_awaiting_permission_denies_and_settles(vault: VaultInfo) -> None:
    decisions: List[bool] = []
    provider = FakeProvider(permission_script(decisions))
    controller, events = make_controller(vault, provider)

    controller.submit_prompt("write it")
    await wait_until(lambda: controller.state == SessionState.AWAITING_PERMISSION)

    assert await controller.abort_current_turn() is True
    assert controller.state == SessionState.ABORTED
    assert controller.pending_prompt is None
    assert controller.submit_prompt("too soon").reason == "busy"

    await controller.wait_for_turn()

    assert decisions == [False]
    assert provider.turns[0].interrupted.is_set()
    assert controller.state == SessionState.IDLE
    assert states(events)[-2:] == [SessionState.ABORTED, SessionState.IDLE]
    assert isinstance(events[-1], ResponseEndEvent)
    tool = controller.snapshot().tool_invocations[0]
    assert tool.status == ToolStatus.COMPLETE
    assert tool.output == ABORTED_TOOL_OUTPUT
    assert controller.resolve_permission("t1", True).accepted is False


@pytest.mark.asyncio
async def test_abort_mid_stream_stops_event_delivery(vault: VaultInfo) -> None:
    async def slow(request: TurnRequest, turn: FakeTurn) -> AsyncIterator[Any]:
        for event in tool_use("t1", "Grep")[:1]:
            yield event
        await turn.interrupted.wait()
        yield tool_result("t1", "late")
        yield {"type": "result", "subtype": "success"}

    controller, events = make_controller(vault, FakeProvider(slow))
    controller.submit_prompt("search")
    await wait_until(lambda: controller.snapshot().tool_invocations != [])

    await controller.abort_current_turn()
    await controller.wait_for_turn()

    assert not any(getattr(event, "type", None) == "tool_end" for event in events)
    assert controller.snapshot().tool_invocations[0].output == ABORTED_TOOL_OUTPUT
    assert controller.state == SessionState.IDLE


@pytest.mark.asyncio
async def test_abort_when_idle_is_a_no_op(vault: VaultInfo) -> None:
    controller, events = make_controller(vault, FakeProvider(text_turn()))

    assert await controller.abort_current_turn() is False
    assert events == []


# ---------------------------------------------------------------------------
# Close / transcript
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_close_notifies_subscribers_and_rejects_new_prompts(vault: VaultInfo) -> None:
    controller, events = make_controller(vault, FakeProvider(text_turn()))
    controller.submit_prompt("go")
    await controller.wait_for_turn()

    await controller.close()
    await controller.close()

    assert [e for e in events if isinstance(e, SessionClearedEvent)] == [SessionClearedEvent()]
    assert controller.submit_prompt("again").reason == "closed"
    assert controller.streamer_state.cumulative_tokens == 0


@pytest.mark.asyncio
async def test_turns_are_written_to_the_transcript(vault: VaultInfo, tmp_path: Path) -> None:
    transcripts = TranscriptService(AppConfig(vaults_dir=tmp_path))
    controller, _ = make_controller(vault, FakeProvider(text_turn("Sure thing")), transcripts=transcripts)

    controller.submit_prompt("Plan my week")
    await controller.wait_for_turn()
    controller.submit_prompt("And next week?")
    await controller.wait_for_turn()

    files = list((vault.inbox_path / "chats").glob("*.md"))
    assert len(files) == 1
    text = files[0].read_text(encoding="utf-8")
    assert "title: Plan my week" in text
    assert text.count("] User") == 2
    assert text.count("] Assistant") == 2
    assert "Sure thing" in text
