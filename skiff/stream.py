"""Reassembly of streamed completions into content and tool calls.

A streamed completion arrives as a sequence of deltas. Text deltas are
concatenated. Tool-call deltas carry an id on the first fragment of each
call; later fragments carry a piece of the argument text and either no id
or the same id again. A different id starts the next call. This relies on
frames being delivered in order and exactly once, which holds for a single
HTTP response stream.
"""

import json
import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class ToolCallInvocation:
    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict:
        """OpenAI ``tool_calls`` entry for the assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class StreamResult:
    content: str = ""
    tool_calls: list[ToolCallInvocation] = field(default_factory=list)
    finish_reason: str | None = None
    usage: dict | None = None
    cancelled: bool = False


@dataclass
class _PendingCall:
    id: str
    name: str | None
    fragments: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects content and tool-call fragments in arrival order."""

    def __init__(self):
        self._content: list[str] = []
        self._pending: _PendingCall | None = None
        self._completed: list[ToolCallInvocation] = []

    def add_content(self, text: str | None) -> None:
        if text:
            self._content.append(text)

    def add_tool_delta(
        self, id: str | None, name: str | None, arguments: str | None
    ) -> None:
        if id and (self._pending is None or id != self._pending.id):
            self._flush()
            self._pending = _PendingCall(id=id, name=name or None)
            if arguments:
                self._pending.fragments.append(arguments)
            return

        if self._pending is None:
            logger.debug("dropping tool-call fragment with no pending call")
            return
        if name and not self._pending.name:
            self._pending.name = name
        if arguments:
            self._pending.fragments.append(arguments)

    def _flush(self) -> None:
        pending = self._pending
        if pending is None:
            return
        self._completed.append(
            ToolCallInvocation(
                id=pending.id,
                name=pending.name or "",
                arguments="".join(pending.fragments),
            )
        )
        self._pending = None

    def finish(self) -> StreamResult:
        self._flush()
        return StreamResult(
            content="".join(self._content), tool_calls=list(self._completed)
        )


def _get(obj, key, default=None):
    """Field access that works for both dicts and attribute objects."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def usage_to_dict(usage) -> dict | None:
    if usage is None:
        return None
    if isinstance(usage, dict):
        return usage
    return {
        key: getattr(usage, key, 0) or 0
        for key in ("prompt_tokens", "completion_tokens", "total_tokens")
    }


def iter_sse_frames(lines):
    """Decode ``data: {...}`` server-sent-event lines into dicts.

    Transport-neutral entry point for callers that read an OpenAI-style
    stream themselves instead of going through litellm (a raw HTTP client,
    a recorded session replayed from disk).

    Blank lines, comments and undecodable payloads are skipped. Iteration
    stops at the ``data: [DONE]`` terminator.
    """
    for raw in lines:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        line = raw.strip()
        if not line or line.startswith(":") or not line.startswith("data:"):
            continue
        payload = line[len("data:") :].strip()
        if payload == DONE_SENTINEL:
            return
        try:
            yield json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("skipping undecodable SSE payload: %r", payload[:200])


class StreamDecoder:
    """Feeds streamed frames into a ToolCallAccumulator.

    Frames may be litellm chunk objects or plain dicts; raw SSE text lines
    go through decode_sse(). The cancel event is checked between frames;
    once set, everything gathered so far is discarded.
    """

    def __init__(self, cancel_event: threading.Event | None = None, on_content=None):
        self.cancel_event = cancel_event or threading.Event()
        self.on_content = on_content

    def decode(self, frames) -> StreamResult:
        acc = ToolCallAccumulator()
        finish_reason = None
        usage = None

        try:
            for frame in frames:
                if self.cancel_event.is_set():
                    return StreamResult(cancelled=True)

                frame_usage = _get(frame, "usage")
                if frame_usage:
                    usage = usage_to_dict(frame_usage)

                choices = _get(frame, "choices") or []
                if not choices:
                    continue
                choice = choices[0]
                delta = _get(choice, "delta")

                text = _get(delta, "content")
                if text:
                    acc.add_content(text)
                    if self.on_content is not None:
                        self.on_content(text)

                for tc in _get(delta, "tool_calls") or []:
                    function = _get(tc, "function")
                    acc.add_tool_delta(
                        _get(tc, "id"),
                        _get(function, "name"),
                        _get(function, "arguments"),
                    )

                reason = _get(choice, "finish_reason")
                if reason:
                    finish_reason = reason
        except KeyboardInterrupt:
            self.cancel_event.set()
            return StreamResult(cancelled=True)

        if self.cancel_event.is_set():
            return StreamResult(cancelled=True)

        result = acc.finish()
        result.finish_reason = finish_reason
        result.usage = usage
        return result

    def decode_sse(self, lines) -> StreamResult:
        """Decode raw server-sent-event lines (bytes or str) from any transport."""
        return self.decode(iter_sse_frames(lines))
