"""Normalise provider stream frames into one small set of internal events.

Two envelopes are understood:

* Anthropic-style ``{"type": "content_block_delta", "delta": {"type": "text_delta", "text": ...}}``
  (``thinking_delta`` carries reasoning text; ``message_stop`` ends the stream);
* OpenAI-style ``{"choices": [{"delta": {"content": ...}, "finish_reason": ...}]}``
  (``reasoning`` / ``reasoning_content`` carry reasoning text).

Everything else (pings, message_start, usage-only chunks) maps to no events.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class StreamEnd:
    reason: str = "stop"


StreamEvent = TextDelta | ThinkingDelta | StreamEnd


def normalize_frame(payload: dict[str, Any]) -> list[StreamEvent]:
    """Map one decoded frame to zero or more internal events."""
    frame_type = payload.get("type")
    if frame_type == "content_block_delta":
        return _content_block_delta(payload.get("delta") or {})
    if frame_type == "message_stop":
        return [StreamEnd()]
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        return _choice_delta(choices[0] or {})
    return []


def _content_block_delta(delta: dict[str, Any]) -> list[StreamEvent]:
    delta_type = delta.get("type")
    if delta_type == "text_delta" and delta.get("text"):
        return [TextDelta(delta["text"])]
    if delta_type == "thinking_delta" and delta.get("thinking"):
        return [ThinkingDelta(delta["thinking"])]
    return []


def _choice_delta(choice: dict[str, Any]) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    delta = choice.get("delta") or {}
    reasoning = delta.get("reasoning") or delta.get("reasoning_content")
    if isinstance(reasoning, str) and reasoning:
        events.append(ThinkingDelta(reasoning))
    content = delta.get("content")
    if isinstance(content, str) and content:
        events.append(TextDelta(content))
    finish_reason = choice.get("finish_reason")
    if finish_reason:
        events.append(StreamEnd(str(finish_reason)))
    return events

