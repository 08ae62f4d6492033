"""
Stream Event Parser
===================

Parses newline-delimited JSON emitted by executor CLIs on stdout:
- session init events (capture a resumable session id)
- assistant message / content delta events (accumulated text)
- a terminal result event (overrides accumulated text when it carries text)
- error events

Lines that are not JSON objects are counted and ignored.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


class StreamEventType(str, Enum):
    INIT = "init"
    CONTENT = "content"
    RESULT = "result"
    ERROR = "error"
    OTHER = "other"


@dataclass
class StreamEvent:
    """One decoded stdout line."""
    event_type: StreamEventType
    raw: dict[str, Any]
    text: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class StreamEventParser:
    """Stateful accumulator for one invocation's stdout."""

    chunks: list[str] = field(default_factory=list)
    result_text: Optional[str] = None
    session_id: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    stats: Optional[dict[str, Any]] = None
    event_count: int = 0
    ignored_lines: int = 0

    @property
    def text(self) -> str:
        if self.result_text is not None:
            return self.result_text
        return "".join(self.chunks)

    @property
    def has_content(self) -> bool:
        return self.result_text is not None or bool(self.chunks)

    def feed_line(self, line: str) -> Optional[StreamEvent]:
        line = line.strip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except (ValueError, RecursionError):
            self.ignored_lines += 1
            return None
        if not isinstance(data, dict):
            self.ignored_lines += 1
            return None

        self.event_count += 1
        event = self._decode(data)

        if event.session_id and not self.session_id:
            self.session_id = event.session_id
        if event.event_type == StreamEventType.CONTENT and event.text:
            self.chunks.append(event.text)
        elif event.event_type == StreamEventType.RESULT and event.text is not None:
            self.result_text = event.text
        elif event.event_type == StreamEventType.ERROR and event.text:
            self.errors.append(event.text)
        return event

    def _decode(self, data: dict[str, Any]) -> StreamEvent:
        kind = data.get("type")
        session_id = data.get("session_id") if isinstance(data.get("session_id"), str) else None

        if kind == "init" or (kind == "system" and data.get("subtype") in (None, "init")):
            return StreamEvent(StreamEventType.INIT, data, session_id=session_id)

        if kind == "assistant":
            return StreamEvent(
                StreamEventType.CONTENT,
                data,
                text=_message_text(data.get("message")),
                session_id=session_id,
            )

        if kind == "message":
            if data.get("role", "assistant") != "assistant":
                return StreamEvent(StreamEventType.OTHER, data, session_id=session_id)
            content = data.get("content")
            return StreamEvent(
                StreamEventType.CONTENT,
                data,
                text=content if isinstance(content, str) else _message_text(data),
                session_id=session_id,
            )

        if kind == "content_block_delta":
            delta = data.get("delta") or {}
            text = delta.get("text") if isinstance(delta, dict) else None
            return StreamEvent(StreamEventType.CONTENT, data, text=text)

        if kind == "result":
            if isinstance(data.get("stats"), dict):
                self.stats = data["stats"]
            result = data.get("result")
            if data.get("is_error") and isinstance(result, str):
                return StreamEvent(StreamEventType.ERROR, data, text=result, session_id=session_id)
            return StreamEvent(
                StreamEventType.RESULT,
                data,
                text=result if isinstance(result, str) else None,
                session_id=session_id,
            )

        if kind == "error":
            message = data.get("message") or data.get("error")
            if isinstance(message, dict):
                message = message.get("message")
            return StreamEvent(StreamEventType.ERROR, data, text=str(message) if message else "unknown error")

        return StreamEvent(StreamEventType.OTHER, data, session_id=session_id)


def _message_text(message: Any) -> Optional[str]:
    """Extract text from a message body (string or list of content blocks)."""
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "".join(parts) or None
    return None
