"""Stream sessions: drive one provider stream end to end and own its slots.

AdvisorStreamSession streams one advisor's plain-text answer into one slot.
CombinedStreamSession streams a single response that may carry every
advisor's answer as a structured payload, auto-detecting the format and
routing each parsed record to its advisor's slot.

Sessions never raise provider, transport or timeout errors: they become
errored slots. Only cancellation propagates, after the slots are marked.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from advisor_council.models import AdvisorSlot, ParsedRecord, slugify
from advisor_council.parser import PAYLOAD_TYPE, IncrementalAdvisorParser, detect_format, looks_structured
from advisor_council.providers.base import AIProvider, ChatRequest, ErrorKind, ProviderError
from advisor_council.providers.frames import StreamEnd, StreamEvent, TextDelta, ThinkingDelta

logger = logging.getLogger(__name__)

SlotCallback = Callable[[AdvisorSlot], None]

ASSISTANT_SLOT_ID = "assistant"
ASSISTANT_SLOT_NAME = "Assistant"

CANCELLED_MESSAGE = "cancelled"

_PAYLOAD_MARKER = f'"{PAYLOAD_TYPE}"'
# Chars before a new delta searched for a marker split across deltas
_MARKER_WINDOW = len(_PAYLOAD_MARKER)
_PAYLOAD_OPENER = '{"type":' + _PAYLOAD_MARKER


class _StreamSession(ABC):
    """Shared stream loop: retry before first byte, per-session timeout, error capture."""

    def __init__(
        self,
        provider: AIProvider,
        on_update: SlotCallback | None = None,
        timeout_sec: float | None = None,
        connect_retries: int = 1,
    ) -> None:
        self._provider = provider
        self._on_update = on_update
        self._timeout_sec = timeout_sec
        self._connect_retries = connect_retries
        self._received = False
        self._ended = False

    async def _run(self, request: ChatRequest) -> None:
        try:
            await self._consume(request)
        except ProviderError as exc:
            logger.warning("Provider %s failed: %s", self._provider.name(), exc)
            self._fail(exc.summary)
        except asyncio.CancelledError:
            self._fail(CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            logger.warning("Provider %s unexpected failure: %s", self._provider.name(), exc)
            self._fail(f"unexpected error: {exc}")
        else:
            if not self._ended:
                logger.debug("Stream from %s closed without an end marker", self._provider.name())
            self._finish()

    async def _consume(self, request: ChatRequest) -> None:
        if not self._timeout_sec:
            await self._drive(request)
            return
        try:
            await asyncio.wait_for(self._drive(request), timeout=self._timeout_sec)
        except TimeoutError as exc:
            raise ProviderError(
                self._provider.name(),
                f"Session timed out after {self._timeout_sec}s",
                kind=ErrorKind.TIMEOUT,
            ) from exc

    async def _drive(self, request: ChatRequest) -> None:
        attempt = 0
        while True:
            try:
                async for event in self._provider.stream(request):
                    self._received = True
                    if isinstance(event, StreamEnd):
                        self._ended = True
                    else:
                        self._on_event(event)
                return
            except ProviderError as exc:
                retryable = exc.kind is ErrorKind.TRANSPORT and not self._received
                if not retryable or attempt >= self._connect_retries:
                    raise
                attempt += 1
                logger.warning(
                    "Provider %s connection failed before first byte, retrying (%d/%d)",
                    self._provider.name(),
                    attempt,
                    self._connect_retries,
                )

    def _emit(self, slot: AdvisorSlot) -> None:
        if self._on_update is not None:
            self._on_update(slot)

    @abstractmethod
    def _on_event(self, event: StreamEvent) -> None:
        """Apply one text or thinking event to the session's slots."""

    @abstractmethod
    def _finish(self) -> None:
        """Complete the slots after the stream ended normally."""

    @abstractmethod
    def _fail(self, message: str) -> None:
        """Mark every slot that is still open as errored with ``message``."""


class AdvisorStreamSession(_StreamSession):
    """One advisor, one stream, plain-text content."""

    def __init__(
        self,
        provider: AIProvider,
        slot: AdvisorSlot,
        on_update: SlotCallback | None = None,
        timeout_sec: float | None = None,
        connect_retries: int = 1,
        reasoning: bool = False,
    ) -> None:
        super().__init__(provider, on_update, timeout_sec, connect_retries)
        self._slot = slot
        self._reasoning = reasoning
        self._content = slot.content
        self._thinking = slot.thinking or ""

    @property
    def slot(self) -> AdvisorSlot:
        return self._slot

    async def run(self, request: ChatRequest) -> AdvisorSlot:
        await self._run(request)
        return self._slot

    def _set(self, slot: AdvisorSlot) -> None:
        if slot is not self._slot:
            self._slot = slot
            self._emit(slot)

    def _on_event(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self._content += event.text
            self._set(self._slot.with_content(self._content))
        elif isinstance(event, ThinkingDelta) and self._reasoning:
            self._thinking += event.text
            self._set(self._slot.with_thinking(self._thinking))

    def _finish(self) -> None:
        if not self._slot.content:
            self._set(self._slot.fail("empty response"))
            return
        self._set(self._slot.complete())
        logger.info(
            "Advisor %s complete: ~%d output tokens",
            self._slot.name,
            self._slot.output_tokens,
        )

    def _fail(self, message: str) -> None:
        self._set(self._slot.fail(message))


class CombinedStreamSession(_StreamSession):
    """One stream carrying every advisor's answer, structured or plain.

    Slots start as the expected advisors. Parsed records are matched to them
    by case-insensitive name; records for unknown names get a new slot.
    Plain text, or text preceding a late-detected payload, streams into the
    ``assistant`` slot.
    """

    def __init__(
        self,
        provider: AIProvider,
        slots: dict[str, AdvisorSlot],
        on_update: SlotCallback | None = None,
        timeout_sec: float | None = None,
        connect_retries: int = 1,
    ) -> None:
        super().__init__(provider, on_update, timeout_sec, connect_retries)
        self._slots = dict(slots)
        self._expected = set(slots)
        self._by_name = {slot.name.casefold(): advisor_id for advisor_id, slot in slots.items()}
        self._record_slots: list[str] = []
        self._parser = IncrementalAdvisorParser()
        self._mode: str | None = None
        self._buffer = ""

    @property
    def slots(self) -> dict[str, AdvisorSlot]:
        return dict(self._slots)

    @property
    def raw_text(self) -> str:
        return self._buffer

    @property
    def validated(self) -> bool:
        return self._parser.validated

    async def run(self, request: ChatRequest) -> dict[str, AdvisorSlot]:
        await self._run(request)
        return self.slots

    def _set(self, slot: AdvisorSlot) -> None:
        if self._slots.get(slot.advisor_id) is not slot:
            self._slots[slot.advisor_id] = slot
            self._emit(slot)

    def _on_event(self, event: StreamEvent) -> None:
        if not isinstance(event, TextDelta):
            return
        self._buffer += event.text
        if self._mode is None:
            mode = detect_format(self._buffer)
            if mode == "structured":
                self._start_structured()
            elif mode == "plain":
                self._mode = mode
                self._show_plain(self._visible_plain())
        elif self._mode == "plain":
            tail = self._buffer[-(len(event.text) + _MARKER_WINDOW):]
            if _PAYLOAD_MARKER in tail and looks_structured(self._buffer):
                logger.debug("Structured payload detected after %d chars of text", len(self._buffer))
                self._start_structured()
            else:
                self._show_plain(self._visible_plain())
        else:
            self._apply(self._parser.feed(event.text))

    def _start_structured(self) -> None:
        start = self._payload_start()
        if start:
            # The assistant slot keeps the preamble and completes at stream end
            self._show_plain(self._buffer[:start])
        self._mode = "structured"
        self._apply(self._parser.feed(self._buffer[start:]))

    def _payload_start(self) -> int:
        """Index of the `{` opening the payload after a preamble, else 0.

        Braces in a preamble must not become the parser's root object.
        """
        if self._buffer.lstrip().startswith(("{", "`")):
            return 0
        marker_at = self._buffer.rfind(_PAYLOAD_MARKER)
        if marker_at == -1:
            return 0
        marker_end = marker_at + len(_PAYLOAD_MARKER)
        start = self._buffer.rfind("{", 0, marker_end)
        while start != -1:
            if "".join(self._buffer[start:marker_end].split()) == _PAYLOAD_OPENER:
                return start
            start = self._buffer.rfind("{", 0, start)
        return 0

    def _visible_plain(self) -> str:
        """Buffer text safe to show as plain content.

        A trailing `{` that may still open an advisor payload is held back
        until it either completes the opener or stops matching it.
        """
        start = self._buffer.rfind("{")
        if start != -1:
            squeezed = "".join(self._buffer[start:].split())
            if _PAYLOAD_OPENER.startswith(squeezed) or squeezed.startswith(_PAYLOAD_OPENER):
                return self._buffer[:start]
        return self._buffer

    def _show_plain(self, text: str) -> None:
        slot = self._slots.get(ASSISTANT_SLOT_ID)
        if slot is None:
            if not text:
                return
            slot = AdvisorSlot(advisor_id=ASSISTANT_SLOT_ID, name=ASSISTANT_SLOT_NAME)
        self._set(slot.with_content(text))

    def _close_plain(self) -> None:
        slot = self._slots.get(ASSISTANT_SLOT_ID)
        if slot is not None:
            self._set(slot.complete())

    def _slot_for(self, index: int, record: ParsedRecord) -> str:
        if index < len(self._record_slots):
            return self._record_slots[index]
        advisor_id = self._by_name.get(record.name.casefold())
        if advisor_id is None or advisor_id in self._record_slots:
            advisor_id = slugify(record.name) or f"advisor-{index + 1}"
            if advisor_id in self._slots:
                advisor_id = f"{advisor_id}-{index + 1}"
            self._slots[advisor_id] = AdvisorSlot(advisor_id=advisor_id, name=record.name)
            logger.debug("Record %d names unexpected advisor %r", index, record.name)
        self._record_slots.append(advisor_id)
        return advisor_id

    def _apply(self, records: list[ParsedRecord]) -> None:
        for index, record in enumerate(records):
            advisor_id = self._slot_for(index, record)
            slot = self._slots[advisor_id].with_content(record.content)
            if record.is_complete:
                slot = slot.complete()
            self._set(slot)

    def _finish(self) -> None:
        if self._mode == "plain":
            self._show_plain(self._buffer)
            self._close_plain()
            self._drop_untouched()
            return
        if self._mode is None:
            if not self._buffer.strip():
                self._fail("empty response")
                return
            self._mode = "plain"
            self._show_plain(self._buffer)
            self._close_plain()
            self._drop_untouched()
            return

        if not self._parser.validated:
            logger.warning(
                "Structured response from %s never validated (%d chars); keeping raw text",
                self._provider.name(),
                len(self._buffer),
            )
            if not self._record_slots:
                self._show_plain(self._buffer)
                self._close_plain()
                self._drop_untouched()
                return

        for advisor_id, slot in list(self._slots.items()):
            if slot.completed:
                continue
            if advisor_id in self._record_slots:
                self._set(slot.fail("incomplete response"))
            elif advisor_id in self._expected:
                logger.warning("Advisor %s missing from structured response", slot.name)
                self._set(slot.fail("missing from response"))
            else:
                self._set(slot.complete())

    def _drop_untouched(self) -> None:
        """Plain-text answers replace the per-advisor slots that never received anything."""
        for advisor_id in list(self._slots):
            slot = self._slots[advisor_id]
            if advisor_id in self._expected and not slot.content and not slot.completed:
                del self._slots[advisor_id]

    def _fail(self, message: str) -> None:
        for slot in list(self._slots.values()):
            if not slot.completed:
                self._set(slot.fail(message))
