"""Session Streamer - turns one provider event stream into SessionEvents.

Consumes the provider's message stream for a single turn and emits the
normalized events the transport understands. It tracks:
- In-flight content blocks (keyed by block index, removed on stop)
- Tool invocations and their input/output lifecycle
- Accumulated response text (deltas as preview, assistant message as truth)
- Cumulative token usage and context-window percentage

Nothing here survives a turn except the StreamerState passed in by the
caller. Provider-reported failures become ``error`` events; only the stream
iteration itself raising propagates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, Tuple

from ..models.provider import (
    AssistantMessage,
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    ResultMessage,
    StreamError,
    StreamEventMessage,
    SystemMessage,
    TextDelta,
    UserMessage,
    decode_provider_event,
)
from ..models.session import (
    ErrorCode,
    ErrorEvent,
    ResponseChunkEvent,
    SessionEvent,
    StreamerState,
    StreamingResult,
    ToolEndEvent,
    ToolInputEvent,
    ToolInvocation,
    ToolStartEvent,
    ToolStatus,
)

logger = logging.getLogger(__name__)

ABORTED_TOOL_OUTPUT = "[streaming aborted]"
INCOMPLETE_TOOL_OUTPUT = "[no result received]"
PARAGRAPH_SEPARATOR = "\n\n"

# Share of pre-compaction tokens assumed to survive a compact_boundary.
COMPACTION_RETENTION_RATIO = 0.3

RESULT_ERRORS: Dict[str, Tuple[ErrorCode, str]] = {
    "error_max_turns": (
        ErrorCode.MAX_TURNS,
        "Conversation reached maximum turns limit.",
    ),
    "error_max_budget_usd": (
        ErrorCode.MAX_BUDGET,
        "Conversation exceeded budget limit.",
    ),
    "error_max_structured_output_retries": (
        ErrorCode.STRUCTURED_OUTPUT_RETRIES,
        "Failed to generate structured output after maximum retries.",
    ),
    "error_during_execution": (
        ErrorCode.EXECUTION_ERROR,
        "An error occurred during execution.",
    ),
}

Emit = Callable[[SessionEvent], None]


class CancellationToken:
    """Cooperative cancellation flag checked once per consumed event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_context_usage(cumulative_tokens: int, context_window: Optional[int]) -> Optional[int]:
    """Percentage of the context window in use, clamped to [0, 100]."""
    if not context_window or context_window <= 0:
        return None
    usage = round_half_up(100 * cumulative_tokens / context_window)
    return max(0, min(100, usage))


def classify_result_error(subtype: str) -> ErrorEvent:
    """Map a non-success result subtype onto a fixed code and message."""
    code, message = RESULT_ERRORS.get(subtype, RESULT_ERRORS["error_during_execution"])
    return ErrorEvent(code=code, message=message)


@dataclass
class ContentBlockState:
    """Streaming state of one content block, keyed by its index."""

    index: int
    kind: str
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    pending_input_fragments: List[str] = field(default_factory=list)


class SessionStreamer:
    """Normalizes the provider event stream of a single turn.

    Args:
        turn_id: Identifier stamped on response chunks
        emit: Callback receiving each SessionEvent in arrival order
        state: Cross-turn token accounting, mutated in place
        cancel: Token observed before each event is processed
    """

    def __init__(
        self,
        turn_id: str,
        emit: Emit,
        state: StreamerState,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        self.turn_id = turn_id
        self.state = state
        self.cancel = cancel or CancellationToken()
        self._emit = emit
        self._chunks: List[str] = []
        self._tools: Dict[str, ToolInvocation] = {}
        self._blocks: Dict[int, ContentBlockState] = {}
        self._context_usage: Optional[int] = None
        self._error: Optional[ErrorEvent] = None
        self._aborted = False

    async def stream(self, events: AsyncIterable[Any]) -> StreamingResult:
        """Consume ``events`` until a result arrives, the stream ends, or cancellation."""
        async for raw in events:
            if self.cancel.cancelled:
                self._abort_running_tools()
                break

            event = decode_provider_event(raw)
            if event is None:
                continue

            logger.debug(f"Provider event: {event.type}", extra=_summarize_event(event))

            if isinstance(event, StreamEventMessage):
                self._handle_stream_event(event)
            elif isinstance(event, AssistantMessage):
                self._handle_assistant(event)
            elif isinstance(event, ResultMessage):
                self._handle_result(event)
                return self._finish()
            elif isinstance(event, UserMessage):
                self._handle_user(event)
            elif isinstance(event, SystemMessage):
                self._handle_system(event)

        return self.finish()

    def finish(self) -> StreamingResult:
        """Close out the turn so no tool is left running, and return the result.

        Also used when the provider stream raised part way through.
        """
        if self.cancel.cancelled and not self._aborted:
            self._abort_running_tools()
        return self._finish()

    def snapshot(self) -> StreamingResult:
        """Copy of what has been accumulated so far."""
        return StreamingResult(
            content="".join(self._chunks),
            tool_invocations=[tool.model_copy() for tool in self._tools.values()],
            context_usage=self._context_usage,
            error=self._error,
            aborted=self._aborted,
        )

    # ------------------------------------------------------------------
    # stream_event
    # ------------------------------------------------------------------

    def _handle_stream_event(self, message: StreamEventMessage) -> None:
        event = message.event

        if isinstance(event, StreamError):
            detail = event.error
            error_message = (detail.message or detail.type) if detail else None
            logger.warning("Stream error event received", extra={"error": error_message})
            self._send(
                ErrorEvent(
                    code=ErrorCode.PROVIDER_ERROR,
                    message=error_message or "Unknown provider error during streaming",
                )
            )
            return

        if isinstance(event, ContentBlockStart):
            self._start_block(event.index, event.content_block)
        elif isinstance(event, ContentBlockDelta):
            self._apply_delta(event)
        elif isinstance(event, ContentBlockStop):
            self._stop_block(event.index)

    def _start_block(self, index: int, block: ContentBlock) -> None:
        if block.type == "tool_use" and block.id and block.name:
            logger.info(f"Tool started: {block.name} ({block.id})")
            self._blocks[index] = ContentBlockState(
                index=index,
                kind="tool_use",
                tool_use_id=block.id,
                tool_name=block.name,
            )
            self._tools[block.id] = ToolInvocation(tool_use_id=block.id, tool_name=block.name)
            self._send(ToolStartEvent(tool_use_id=block.id, tool_name=block.name))
        elif block.type == "text":
            self._blocks[index] = ContentBlockState(index=index, kind="text")
            if self._tools:
                self._chunks.append(PARAGRAPH_SEPARATOR)

    def _apply_delta(self, event: ContentBlockDelta) -> None:
        delta = event.delta
        if isinstance(delta, TextDelta):
            if delta.text:
                self._chunks.append(delta.text)
                self._send(ResponseChunkEvent(turn_id=self.turn_id, content=delta.text))
        elif isinstance(delta, InputJsonDelta):
            block = self._blocks.get(event.index)
            if delta.partial_json and block is not None and block.kind == "tool_use":
                block.pending_input_fragments.append(delta.partial_json)

    def _stop_block(self, index: int) -> None:
        block = self._blocks.pop(index, None)
        if block is None or block.kind != "tool_use" or not block.tool_use_id:
            return

        raw_input = "".join(block.pending_input_fragments)
        try:
            parsed = json.loads(raw_input) if raw_input else {}
        except json.JSONDecodeError as exc:
            logger.warning(
                f"Failed to parse tool input JSON for {block.tool_use_id}: {exc}",
                extra={"input_length": len(raw_input)},
            )
            return

        logger.debug(f"Tool input complete for {block.tool_name} ({len(raw_input)} chars)")
        tracked = self._tools.get(block.tool_use_id)
        if tracked is not None:
            tracked.input = parsed
        self._send(ToolInputEvent(tool_use_id=block.tool_use_id, input=parsed))

    # ------------------------------------------------------------------
    # assistant / user / system
    # ------------------------------------------------------------------

    def _handle_assistant(self, event: AssistantMessage) -> None:
        complete = event.text()
        if complete:
            self._chunks = [complete]

    def _handle_user(self, event: UserMessage) -> None:
        for block in event.message.blocks:
            if block.type == "tool_result" and block.tool_use_id:
                self._complete_tool(block.tool_use_id, block.content, source="user event")

    def _handle_system(self, event: SystemMessage) -> None:
        if event.subtype == "compact_boundary" and event.compact_metadata is not None:
            pre_tokens = event.compact_metadata.pre_tokens
            estimated = round_half_up(pre_tokens * COMPACTION_RETENTION_RATIO)
            logger.info(
                f"Compact boundary: pre_tokens={pre_tokens}, "
                f"trigger={event.compact_metadata.trigger}, "
                f"resetting cumulative from {self.state.cumulative_tokens} to ~{estimated}"
            )
            self.state.cumulative_tokens = estimated
        elif event.subtype == "init" and event.model:
            self.state.active_model_id = event.model
            logger.info(f"Active model: {event.model}")

    # ------------------------------------------------------------------
    # result
    # ------------------------------------------------------------------

    def _handle_result(self, event: ResultMessage) -> None:
        if event.subtype != "success":
            error = classify_result_error(event.subtype)
            logger.warning(
                f"Provider result error: {event.subtype}",
                extra={"provider_errors": event.errors},
            )
            self._error = error
            self._send(error)

        if event.usage is not None:
            self._record_usage(event)

        self._reconcile_tools(event.embedded_blocks)

    def _record_usage(self, event: ResultMessage) -> None:
        turn_tokens = event.usage.total if event.usage else 0
        self.state.cumulative_tokens += turn_tokens

        window = self._resolve_context_window(event)
        if window is None:
            return

        self.state.context_window_size = window
        self._context_usage = compute_context_usage(self.state.cumulative_tokens, window)
        logger.debug(
            f"Context usage: {self.state.cumulative_tokens}/{window} = {self._context_usage}% "
            f"(turn: +{turn_tokens}, model: {self.state.active_model_id})"
        )

    def _resolve_context_window(self, event: ResultMessage) -> Optional[int]:
        candidates: List[str] = []
        if self.state.active_model_id:
            candidates.append(self.state.active_model_id)
        candidates.extend(event.model_usage.keys())

        for model_name in candidates:
            stats = event.model_usage.get(model_name)
            if stats is not None and stats.context_window and stats.context_window > 0:
                return stats.context_window
        return self.state.context_window_size

    def _reconcile_tools(self, blocks: List[ContentBlock]) -> None:
        """Recover tool lifecycle from the result payload when events were lost."""
        for block in blocks:
            if block.type == "tool_use" and block.id and block.name:
                existing = self._tools.get(block.id)
                if existing is None:
                    logger.debug(f"Tool {block.name} ({block.id}) tracked from result event (fallback)")
                    self._tools[block.id] = ToolInvocation(
                        tool_use_id=block.id,
                        tool_name=block.name,
                        input=block.input,
                    )
                    self._send(ToolStartEvent(tool_use_id=block.id, tool_name=block.name))
                    if block.input is not None:
                        self._send(ToolInputEvent(tool_use_id=block.id, input=block.input))
                elif existing.input is None and block.input is not None:
                    existing.input = block.input
                    self._send(ToolInputEvent(tool_use_id=block.id, input=block.input))
            elif block.type == "tool_result" and block.tool_use_id:
                self._complete_tool(block.tool_use_id, block.content, source="result event")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _complete_tool(self, tool_use_id: str, output: Any, source: str) -> None:
        tracked = self._tools.get(tool_use_id)
        if tracked is None:
            logger.warning(f"Ignoring result for unknown tool {tool_use_id} ({source})")
            return
        if tracked.status == ToolStatus.COMPLETE:
            return

        logger.info(f"Tool completed ({source}): {tool_use_id}")
        tracked.output = output
        tracked.status = ToolStatus.COMPLETE
        self._send(ToolEndEvent(tool_use_id=tool_use_id, output=output))

    def _abort_running_tools(self) -> None:
        logger.debug("Streaming aborted")
        self._aborted = True
        for tool in self._tools.values():
            if tool.status == ToolStatus.RUNNING:
                tool.status = ToolStatus.COMPLETE
                tool.output = ABORTED_TOOL_OUTPUT

    def _finish(self) -> StreamingResult:
        for tool in self._tools.values():
            if tool.status == ToolStatus.RUNNING:
                logger.warning(f"Tool {tool.tool_name} ({tool.tool_use_id}) ended without a result")
                tool.status = ToolStatus.COMPLETE
                tool.output = INCOMPLETE_TOOL_OUTPUT
        self._blocks.clear()
        return self.snapshot()

    def _send(self, event: SessionEvent) -> None:
        self._emit(event)


def _summarize_event(event: Any) -> Dict[str, Any]:
    summary: Dict[str, Any] = {"event_type": event.type}
    if isinstance(event, StreamEventMessage):
        inner = event.event
        summary["stream_type"] = inner.type
        if hasattr(inner, "index"):
            summary["index"] = inner.index
        if isinstance(inner, ContentBlockStart):
            summary["block_type"] = inner.content_block.type
        elif isinstance(inner, ContentBlockDelta):
            summary["delta_type"] = inner.delta.type
    elif isinstance(event, (ResultMessage, SystemMessage)):
        summary["subtype"] = event.subtype
    return summary


async def stream_provider_events(
    events: AsyncIterable[Any],
    turn_id: str,
    emit: Emit,
    state: StreamerState,
    cancel: Optional[CancellationToken] = None,
) -> StreamingResult:
    """Normalize one turn of provider events; see SessionStreamer."""
    return await SessionStreamer(turn_id, emit, state, cancel).stream(events)


__all__ = [
    "ABORTED_TOOL_OUTPUT",
    "INCOMPLETE_TOOL_OUTPUT",
    "COMPACTION_RETENTION_RATIO",
    "CancellationToken",
    "ContentBlockState",
    "SessionStreamer",
    "classify_result_error",
    "compute_context_usage",
    "round_half_up",
    "stream_provider_events",
]
