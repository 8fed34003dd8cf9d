"""Turn orchestration: parallel advisor streams fanned out and merged into one Turn."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from config.config_loader import DefaultsConfig, PromptsConfig
from advisor_council.context import (
    ContextWindow,
    advisor_system_prompt,
    build_context_window,
    build_reference_block,
    combined_system_prompt,
)
from advisor_council.models import Advisor, AdvisorSlot, Message, Turn
from advisor_council.providers.base import AIProvider, ChatRequest
from advisor_council.session import CANCELLED_MESSAGE, AdvisorStreamSession, CombinedStreamSession
from advisor_council.store import COMBINED_HISTORY_ID, ConversationStore

logger = logging.getLogger(__name__)

TurnCallback = Callable[[Turn], None]

# Share of max_tokens given to extended thinking in reasoning mode
_THINKING_SHARE = 0.6


class OrchestrationError(Exception):
    """Raised before any stream starts when a turn cannot run at all."""


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, asyncio.CancelledError):
        return CANCELLED_MESSAGE
    return f"unexpected error: {exc!r}"


class TurnOrchestrator:
    """Runs one Turn at a time and keeps the live Turn value.

    Every slot change replaces the whole Turn (``Turn.with_slot``) and is
    reported through ``on_update``. Sessions only ever write their own
    slots, and all writes happen on the event loop, so no lock is needed.
    """

    def __init__(
        self,
        providers: dict[str, AIProvider],
        defaults: DefaultsConfig,
        prompts: PromptsConfig,
        on_update: TurnCallback | None = None,
    ) -> None:
        self._providers = providers
        self._defaults = defaults
        self._prompts = prompts
        self._on_update = on_update
        self._turn: Turn | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def turn(self) -> Turn | None:
        return self._turn

    @property
    def is_open(self) -> bool:
        return self._turn is not None and not self._turn.all_completed

    def cancel(self) -> None:
        """Stop consuming every still-open stream; their slots end ERRORED ("cancelled")."""
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            logger.info("Cancelling %d open advisor stream(s)", len(pending))
        for task in pending:
            task.cancel()

    async def run_turn(
        self,
        user_message: str,
        advisors: list[Advisor],
        histories: dict[str, list[Message]] | None = None,
        previous_turn: Turn | None = None,
    ) -> Turn:
        """Stream every active advisor concurrently and return the completed Turn.

        Args:
            user_message: The new user message.
            advisors: Configured advisors; inactive ones are skipped.
            histories: Each advisor's own prior messages keyed by advisor id.
            previous_turn: Last completed Turn, source of the reference blocks.

        Returns:
            Turn with one completed (possibly errored) slot per active advisor.

        Raises:
            OrchestrationError: Empty message, no active advisors, or a turn
                already open. Nothing is launched in that case.
        """
        active = self._check_can_start(user_message, advisors)
        histories = histories or {}

        self._set_turn(Turn.start(active, user_message, mode="parallel"))
        logger.info("Starting turn with %d advisors", len(active))

        self._tasks = [
            asyncio.create_task(
                self._run_advisor(advisor, user_message, histories.get(advisor.id, []), previous_turn),
                name=f"advisor-{advisor.id}",
            )
            for advisor in active
        ]
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._tasks = []

        for advisor, result in zip(active, results):
            if isinstance(result, BaseException):
                # Sessions mark their own slots; this only covers failures outside one
                slot = self._current().slots[advisor.id]
                if not slot.completed:
                    self._replace_slot(slot.fail(_failure_message(result)))

        turn = self._current()
        succeeded = sum(1 for s in turn.slots.values() if not s.errored)
        logger.info("Turn complete: %d/%d advisors succeeded", succeeded, len(turn.slots))
        return turn

    async def run_single_stream_turn(
        self,
        user_message: str,
        advisors: list[Advisor],
        history: list[Message] | None = None,
        provider_name: str | None = None,
    ) -> Turn:
        """Ask one model to answer for every active advisor in one structured stream.

        Raises:
            OrchestrationError: As for run_turn, or if the provider is unavailable.
        """
        active = self._check_can_start(user_message, advisors)
        provider_name = provider_name or self._defaults.provider
        provider = self._providers.get(provider_name)
        if provider is None:
            raise OrchestrationError(f"Provider '{provider_name}' is not available")

        self._set_turn(Turn.start(active, user_message, mode="single"))
        system = combined_system_prompt(self._prompts.combined, active)
        window = build_context_window(
            history or [],
            user_message,
            self._defaults.context_limit,
            system=system,
            timestamps=self._defaults.timestamp_history,
        )
        session = CombinedStreamSession(
            provider,
            self._current().slots,
            on_update=self._replace_slot,
            timeout_sec=self._defaults.session_timeout_sec,
            connect_retries=self._defaults.connect_retries,
        )
        logger.info("Starting single-stream turn via %s for %d advisors", provider.name(), len(active))

        self._tasks = [asyncio.create_task(session.run(self._request(window)), name="advisor-combined")]
        try:
            (result,) = await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._tasks = []

        slots = session.slots
        if isinstance(result, BaseException):
            # Cancelled before the session started, or failed outside it
            for advisor_id, slot in slots.items():
                if not slot.completed:
                    slots[advisor_id] = slot.fail(_failure_message(result))

        turn = replace(
            self._current(),
            slots=slots,
            raw_text=session.raw_text,
            validated=session.validated,
        )
        self._set_turn(turn)
        logger.info(
            "Single-stream turn complete: %d slot(s), validated=%s",
            len(turn.slots),
            turn.validated,
        )
        return turn

    async def run_for_conversation(
        self,
        store: ConversationStore,
        conversation_id: str,
        user_message: str,
        advisors: list[Advisor],
        previous_turn: Turn | None = None,
    ) -> Turn:
        """Load histories from ``store``, run a turn in the configured mode, append it."""
        if self._defaults.mode == "single":
            history = store.load_history(conversation_id, COMBINED_HISTORY_ID)
            turn = await self.run_single_stream_turn(user_message, advisors, history)
        else:
            histories = {a.id: store.load_history(conversation_id, a.id) for a in advisors if a.active}
            turn = await self.run_turn(user_message, advisors, histories, previous_turn)
        store.append_turn(conversation_id, turn)
        return turn

    async def _run_advisor(
        self,
        advisor: Advisor,
        user_message: str,
        history: list[Message],
        previous_turn: Turn | None,
    ) -> AdvisorSlot:
        slot = self._current().slots[advisor.id]
        provider_name = advisor.provider or self._defaults.provider
        provider = self._providers.get(provider_name)
        if provider is None:
            logger.warning("Advisor %s: provider '%s' unavailable", advisor.name, provider_name)
            failed = slot.fail(f"provider '{provider_name}' unavailable")
            self._replace_slot(failed)
            return failed

        reference = None
        if self._defaults.reference_block:
            reference = build_reference_block(
                previous_turn,
                advisor.id,
                self._prompts.reference_header,
                self._defaults.reference_chars,
            )
        window = build_context_window(
            history,
            user_message,
            self._defaults.context_limit,
            system=advisor_system_prompt(self._prompts.advisor, advisor),
            reference_block=reference,
            timestamps=self._defaults.timestamp_history,
        )
        logger.debug(
            "Advisor %s: ~%d input tokens, %d history messages, reference=%s",
            advisor.name,
            window.total_cost,
            len(window.history),
            window.reference_block is not None,
        )
        slot = replace(slot, input_tokens=window.total_cost)
        self._replace_slot(slot)

        session = AdvisorStreamSession(
            provider,
            slot,
            on_update=self._replace_slot,
            timeout_sec=self._defaults.session_timeout_sec,
            connect_retries=self._defaults.connect_retries,
            reasoning=self._defaults.reasoning_mode,
        )
        return await session.run(self._request(window))

    def _request(self, window: ContextWindow) -> ChatRequest:
        max_tokens = self._defaults.max_tokens
        thinking_budget = int(max_tokens * _THINKING_SHARE) if self._defaults.reasoning_mode else None
        return ChatRequest(
            system=window.system,
            messages=window.to_messages(),
            max_tokens=max_tokens,
            thinking_budget=thinking_budget,
        )

    def _check_can_start(self, user_message: str, advisors: list[Advisor]) -> list[Advisor]:
        if not user_message.strip():
            raise OrchestrationError("Empty message")
        active = [a for a in advisors if a.active]
        if not active:
            raise OrchestrationError("No active advisors")
        ids = [a.id for a in active]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise OrchestrationError(f"Duplicate advisor id(s): {', '.join(duplicates)}")
        if self.is_open:
            raise OrchestrationError("A turn is already in progress")
        return active

    def _current(self) -> Turn:
        assert self._turn is not None
        return self._turn

    def _set_turn(self, turn: Turn) -> None:
        self._turn = turn
        if self._on_update is not None:
            self._on_update(turn)

    def _replace_slot(self, slot: AdvisorSlot) -> None:
        self._set_turn(self._current().with_slot(slot))
