"""Mock agent provider for local development and end-to-end tests.

Enabled with AGENT_PROVIDER=mock. Produces provider-shaped messages (the same
shapes a real agent backend streams) without calling any API:
- prompts mentioning "read" or "file" trigger a Read tool call
- prompts mentioning "write" or "save" trigger a Write tool call that asks
  for permission first
- prompts mentioning "ask me" or "clarify" trigger a clarification question
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List

from ..models.session import QuestionItem, QuestionOption
from .agent_provider import AgentProvider, ProviderTurn, TurnRequest

logger = logging.getLogger(__name__)

MOCK_MODEL = "mock-agent-1"
MOCK_CONTEXT_WINDOW = 200_000

MOCK_RESPONSES: Dict[str, str] = {
    "default": (
        "This is a mock response from the vault assistant. In production, this "
        "would be a real AI response based on your vault context."
    ),
    "greeting": "Hello! I'm running in mock mode. I can help you test the chat interface.",
    "help": "I'm a mock assistant. Try asking me to read a file, save a note, or ask you something.",
    "read": "I found the file you requested. Here's what I can see in the mock file content.",
    "write_allowed": "I saved the note to your vault.",
    "write_denied": "Understood, I did not write anything.",
}


def _stream_event(event: Dict[str, Any], session_id: str) -> Dict[str, Any]:
    return {"type": "stream_event", "event": event, "session_id": session_id}


class MockProviderTurn(ProviderTurn):
    """One scripted turn."""

    def __init__(self, request: TurnRequest, chunk_delay: float = 0.03) -> None:
        self.session_id = request.resume_session_id or f"mock_session_{uuid.uuid4().hex[:12]}"
        self._request = request
        self._chunk_delay = chunk_delay
        self._interrupted = False
        self._index = 0

    async def interrupt(self) -> None:
        logger.info(f"Mock turn interrupted ({self.session_id})")
        self._interrupted = True

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        prompt = self._request.prompt.lower()
        response = MOCK_RESPONSES["default"]
        if "hello" in prompt or prompt.startswith("hi"):
            response = MOCK_RESPONSES["greeting"]
        elif "help" in prompt:
            response = MOCK_RESPONSES["help"]

        yield {"type": "system", "subtype": "init", "model": MOCK_MODEL, "session_id": self.session_id}

        if "read" in prompt or "file" in prompt:
            async for event in self._tool_call("Read", {"file_path": "/mock/example.md"}):
                yield event
            if self._interrupted:
                return
            yield self._tool_result(
                self._last_tool_id, "# Mock File Content\n\nThis is simulated file content for testing."
            )
            response = MOCK_RESPONSES["read"]

        if "write" in prompt or "save" in prompt:
            tool_input = {"file_path": "00_Inbox/mock-note.md", "content": "Saved by the mock assistant."}
            async for event in self._tool_call("Write", tool_input):
                yield event
            if self._interrupted:
                return
            allowed = await self._request.can_use_tool(self._last_tool_id, "Write", tool_input)
            if self._interrupted:
                return
            output = "File written" if allowed else "Permission denied by user"
            yield self._tool_result(self._last_tool_id, output)
            response = MOCK_RESPONSES["write_allowed" if allowed else "write_denied"]

        if "ask me" in prompt or "clarify" in prompt:
            questions = [
                QuestionItem(
                    question="Which note should I focus on?",
                    header="Note",
                    options=[
                        QuestionOption(label="Today", description="Today's daily note"),
                        QuestionOption(label="Inbox", description="Everything in the inbox"),
                    ],
                )
            ]
            tool_input = {"questions": [q.model_dump(by_alias=True) for q in questions]}
            async for event in self._tool_call("AskUserQuestion", tool_input):
                yield event
            if self._interrupted:
                return
            answers = await self._request.ask_user_question(self._last_tool_id, questions)
            if self._interrupted:
                return
            yield self._tool_result(self._last_tool_id, json.dumps(answers))
            choice = answers.get(questions[0].question) or "nothing in particular"
            response = f"Thanks, I'll focus on {choice}."

        async for event in self._text(response):
            yield event
        if self._interrupted:
            return

        yield {
            "type": "assistant",
            "message": {"model": MOCK_MODEL, "content": [{"type": "text", "text": response}]},
            "session_id": self.session_id,
        }
        yield {
            "type": "result",
            "subtype": "success",
            "session_id": self.session_id,
            "usage": {
                "input_tokens": len(self._request.prompt) // 4 + 200,
                "output_tokens": len(response) // 4,
            },
            "modelUsage": {MOCK_MODEL: {"contextWindow": MOCK_CONTEXT_WINDOW}},
        }

    async def _tool_call(self, name: str, tool_input: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        index = self._next_index()
        self._last_tool_id = f"toolu_mock_{uuid.uuid4().hex[:12]}"
        yield _stream_event(
            {
                "type": "content_block_start",
                "index": index,
                "content_block": {"type": "tool_use", "id": self._last_tool_id, "name": name, "input": {}},
            },
            self.session_id,
        )
        encoded = json.dumps(tool_input)
        midpoint = len(encoded) // 2
        for fragment in (encoded[:midpoint], encoded[midpoint:]):
            if self._interrupted:
                return
            yield _stream_event(
                {
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": fragment},
                },
                self.session_id,
            )
            await asyncio.sleep(self._chunk_delay)
        yield _stream_event({"type": "content_block_stop", "index": index}, self.session_id)

    def _tool_result(self, tool_use_id: str, content: Any) -> Dict[str, Any]:
        return {
            "type": "user",
            "message": {
                "content": [{"type": "tool_result", "tool_use_id": tool_use_id, "content": content}]
            },
            "session_id": self.session_id,
        }

    async def _text(self, response: str) -> AsyncIterator[Dict[str, Any]]:
        index = self._next_index()
        yield _stream_event(
            {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}},
            self.session_id,
        )
        words: List[str] = response.split(" ")
        for position, word in enumerate(words):
            if self._interrupted:
                return
            chunk = word if position == 0 else f" {word}"
            yield _stream_event(
                {
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "text_delta", "text": chunk},
                },
                self.session_id,
            )
            await asyncio.sleep(self._chunk_delay)
        yield _stream_event({"type": "content_block_stop", "index": index}, self.session_id)

    def _next_index(self) -> int:
        index = self._index
        self._index += 1
        return index


class MockAgentProvider(AgentProvider):
    """Scripted provider; see module docstring for the prompt triggers."""

    name = "mock"

    def __init__(self, chunk_delay: float = 0.03) -> None:
        self.chunk_delay = chunk_delay

    async def start_turn(self, request: TurnRequest) -> MockProviderTurn:
        logger.info(f"Starting mock turn for {request.session_key}")
        return MockProviderTurn(request, chunk_delay=self.chunk_delay)


__all__ = ["MockAgentProvider", "MockProviderTurn", "MOCK_MODEL", "MOCK_CONTEXT_WINDOW"]
