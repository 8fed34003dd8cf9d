"""Incremental parser for the structured multi-advisor payload.

The payload is one JSON object::

    {"type": "advisor_response", "advisors": [{"id": ..., "name": ..., "response": ...}]}

but it arrives a few characters at a time. IncrementalAdvisorParser keeps the
scanner state (container stack, in-string flag, pending escape) between
feed() calls, so each character is looked at once. Records are reported as
soon as their name is known and grow while their response streams in.
"""

import json
import logging
import string
from dataclasses import dataclass, field
from typing import Any

from advisor_council.models import ParsedRecord

logger = logging.getLogger(__name__)

PAYLOAD_TYPE = "advisor_response"

_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_HEX = frozenset(string.hexdigits)
_FENCE = "```json"
_RECORD_FIELDS = ("name", "response", "id")


@dataclass
class _Frame:
    kind: str                  # "{" or "["
    role: str = ""             # "root", "advisors", "record" or ""
    key: str | None = None
    awaiting_key: bool = True


@dataclass
class _OpenRecord:
    name: str | None = None
    id: str | None = None
    response: list[str] = field(default_factory=list)


class IncrementalAdvisorParser:
    """Stateful scanner over a growing advisor payload.

    Text before the first ``{`` (a code fence, a preamble) and anything after
    the root object closes is ignored. Once the root object closes the
    collected JSON is parsed in full; if it has the expected shape the parser
    becomes ``validated`` and the full-parse records replace the scanned ones.
    """

    def __init__(self) -> None:
        self._stack: list[_Frame] = []
        self._closed = False
        self._validated = False
        self._json_parts: list[str] = []

        self._in_string = False
        self._escape = False
        self._unicode: str | None = None
        self._high_surrogate: int | None = None
        self._string_target: str | None = None
        self._string_chars: list[str] = []

        self._complete: list[ParsedRecord] = []
        self._open: _OpenRecord | None = None
        self._final: list[ParsedRecord] | None = None

    @property
    def closed(self) -> bool:
        """True once the root object's closing brace has been seen."""
        return self._closed

    @property
    def validated(self) -> bool:
        return self._validated

    @property
    def records(self) -> list[ParsedRecord]:
        if self._final is not None:
            return list(self._final)
        records = list(self._complete)
        if self._open is not None and self._open.name is not None:
            records.append(
                ParsedRecord(
                    name=self._open.name,
                    content="".join(self._open.response),
                    is_complete=False,
                    id=self._open.id,
                )
            )
        return records

    def feed(self, delta: str) -> list[ParsedRecord]:
        """Consume the next piece of the stream and return all records so far."""
        if self._closed or not delta:
            return self.records

        segment_start = 0 if self._stack else None
        segment_end = len(delta)
        for index, ch in enumerate(delta):
            if not self._stack:
                if ch == "{":
                    self._stack.append(_Frame("{", role="root"))
                    segment_start = index
                continue
            if self._in_string:
                self._string_char(ch)
            elif ch == '"':
                self._open_string()
            elif ch in "{[":
                self._open_container(ch)
            elif ch in "}]":
                self._close_container()
                if self._closed:
                    segment_end = index + 1
                    break
            elif ch == ":":
                top = self._stack[-1]
                if top.kind == "{":
                    top.awaiting_key = False
            elif ch == ",":
                top = self._stack[-1]
                if top.kind == "{":
                    top.awaiting_key = True
                    top.key = None

        if segment_start is not None:
            self._json_parts.append(delta[segment_start:segment_end])
        if self._closed:
            self._finish()
        return self.records

    # -- containers --------------------------------------------------------

    def _open_container(self, kind: str) -> None:
        top = self._stack[-1]
        role = ""
        if kind == "[" and top.role == "root" and top.key == "advisors":
            role = "advisors"
        elif kind == "{" and top.role == "advisors":
            role = "record"
            self._open = _OpenRecord()
        self._stack.append(_Frame(kind, role=role, awaiting_key=kind == "{"))

    def _close_container(self) -> None:
        frame = self._stack.pop()
        if frame.role == "record" and self._open is not None:
            if self._open.name is not None:
                self._complete.append(
                    ParsedRecord(
                        name=self._open.name,
                        content="".join(self._open.response),
                        is_complete=True,
                        id=self._open.id,
                    )
                )
            self._open = None
        if not self._stack:
            self._closed = True

    # -- strings -----------------------------------------------------------

    def _open_string(self) -> None:
        top = self._stack[-1]
        self._in_string = True
        self._string_chars = []
        if top.kind == "{" and top.awaiting_key:
            self._string_target = "key"
        elif top.role == "record" and top.key in _RECORD_FIELDS:
            self._string_target = top.key
        else:
            self._string_target = None

    def _close_string(self) -> None:
        self._flush_surrogate()
        self._in_string = False
        text = "".join(self._string_chars)
        target = self._string_target
        if target == "key":
            self._stack[-1].key = text
        elif target == "name" and self._open is not None:
            self._open.name = text
        elif target == "id" and self._open is not None:
            self._open.id = text
        self._string_target = None
        self._string_chars = []

    def _string_char(self, ch: str) -> None:
        if self._unicode is not None:
            if ch in _HEX:
                self._unicode += ch
                if len(self._unicode) == 4:
                    code = int(self._unicode, 16)
                    self._unicode = None
                    self._emit_code(code)
                return
            # Malformed \u escape: keep what was collected, then handle ch normally
            self._emit("\\u" + self._unicode)
            self._unicode = None
        if self._escape:
            self._escape = False
            if ch == "u":
                self._unicode = ""
            else:
                self._emit(_ESCAPES.get(ch, ch))
            return
        if ch == "\\":
            self._escape = True
        elif ch == '"':
            self._close_string()
        else:
            self._emit(ch)

    def _emit_code(self, code: int) -> None:
        if 0xD800 <= code <= 0xDBFF:
            self._flush_surrogate()
            self._high_surrogate = code
        elif 0xDC00 <= code <= 0xDFFF and self._high_surrogate is not None:
            high = self._high_surrogate
            self._high_surrogate = None
            self._append(chr(0x10000 + ((high - 0xD800) << 10) + (code - 0xDC00)))
        else:
            self._emit(chr(code))

    def _emit(self, text: str) -> None:
        self._flush_surrogate()
        self._append(text)

    def _flush_surrogate(self) -> None:
        if self._high_surrogate is not None:
            high = self._high_surrogate
            self._high_surrogate = None
            self._append(chr(high))

    def _append(self, text: str) -> None:
        if self._string_target == "response" and self._open is not None:
            self._open.response.append(text)
        elif self._string_target is not None:
            self._string_chars.append(text)

    # -- completion --------------------------------------------------------

    def _finish(self) -> None:
        text = "".join(self._json_parts)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.debug("Closed advisor payload is not valid JSON: %s", exc)
            return
        records = records_from_payload(payload)
        if records is None:
            logger.debug("Closed payload does not have the advisor_response shape")
            return
        self._final = records
        self._validated = True


def records_from_payload(payload: Any) -> list[ParsedRecord] | None:
    """Complete records from an already-decoded payload, or None if the shape is wrong.

    Entries without a string name are skipped; a missing or non-string
    response reads as empty.
    """
    if not isinstance(payload, dict) or payload.get("type") != PAYLOAD_TYPE:
        return None
    advisors = payload.get("advisors")
    if not isinstance(advisors, list):
        return None
    records: list[ParsedRecord] = []
    for entry in advisors:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            continue
        response = entry.get("response")
        entry_id = entry.get("id")
        records.append(
            ParsedRecord(
                name=entry["name"],
                content=response if isinstance(response, str) else "",
                is_complete=True,
                id=entry_id if isinstance(entry_id, str) else None,
            )
        )
    return records


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` (or bare ```) fence, if any."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    body = stripped[3:]
    newline = body.find("\n")
    if newline != -1 and not body[:newline].lstrip().startswith("{"):
        body = body[newline + 1:]
    elif body[:4].lower() == "json":
        body = body[4:]
    end = body.rfind("```")
    if end != -1:
        body = body[:end]
    return body.strip()


def parse_advisor_payload(buffer: str) -> list[ParsedRecord]:
    """Parse a (possibly incomplete) payload buffer in one shot. Pure.

    A complete, well-formed payload yields only complete records. Otherwise
    the buffer is scanned and an unfinished trailing record comes back
    partial. A buffer with no ``advisors`` array yet yields [].
    """
    try:
        records = records_from_payload(json.loads(strip_code_fence(buffer)))
    except json.JSONDecodeError:
        records = None
    if records is not None:
        return records
    parser = IncrementalAdvisorParser()
    return parser.feed(buffer)


def detect_format(text: str) -> str | None:
    """Classify the start of a single-stream response.

    Returns "structured", "plain", or None while the text is still too short
    to tell (blank, or a prefix of an opening ```json fence).
    """
    stripped = text.lstrip()
    if not stripped:
        return None
    if looks_structured(stripped):
        return "structured"
    if len(stripped) < len(_FENCE) and _FENCE.startswith(stripped.lower()):
        return None
    return "plain"


def looks_structured(text: str) -> bool:
    stripped = text.lstrip()
    if stripped.startswith("{") or stripped[: len(_FENCE)].lower() == _FENCE:
        return True
    return len(stripped) >= 20 and '"type"' in stripped and f'"{PAYLOAD_TYPE}"' in stripped
