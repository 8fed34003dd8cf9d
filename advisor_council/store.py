"""Conversation store interface and the in-memory store used by the CLI."""

import logging
import uuid
from typing import Protocol

from advisor_council.models import Message, Turn

logger = logging.getLogger(__name__)

# History key for single-stream turns, which answer for all advisors at once
COMBINED_HISTORY_ID = "__combined__"


class ConversationStore(Protocol):
    def append_turn(self, conversation_id: str, turn: Turn) -> None: ...

    def load_history(self, conversation_id: str, advisor_id: str) -> list[Message]: ...


def combined_history_content(turn: Turn) -> str:
    """Assistant message text stored for a single-stream turn.

    A validated payload is kept as one ``**Name**: response`` block per
    advisor; anything else is kept as the raw streamed text.
    """
    if not turn.validated:
        return turn.raw_text.strip()
    return "\n\n".join(
        f"**{slot.name}**: {slot.content}"
        for slot in turn.slots.values()
        if not slot.errored and slot.content
    )


class InMemoryConversationStore:
    """Per-advisor histories and completed turns, keyed by conversation id."""

    def __init__(self) -> None:
        self._histories: dict[str, dict[str, list[Message]]] = {}
        self._turns: dict[str, list[Turn]] = {}

    def create(self) -> str:
        conversation_id = uuid.uuid4().hex
        self._histories[conversation_id] = {}
        self._turns[conversation_id] = []
        return conversation_id

    def delete(self, conversation_id: str) -> None:
        self._histories.pop(conversation_id, None)
        self._turns.pop(conversation_id, None)

    def append_turn(self, conversation_id: str, turn: Turn) -> None:
        """Append a completed turn as user + assistant messages per advisor.

        Errored slots contribute only the user message, which the context
        builder later leaves out as an unanswered exchange.

        Raises:
            KeyError: Unknown conversation id.
            ValueError: The turn is still open.
        """
        if conversation_id not in self._histories:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        if not turn.all_completed:
            raise ValueError("Cannot store a turn that is still streaming")

        histories = self._histories[conversation_id]
        user = Message(role="user", content=turn.user_message, produced_at=turn.started_at)

        if turn.mode == "single":
            entries = histories.setdefault(COMBINED_HISTORY_ID, [])
            entries.append(user)
            content = combined_history_content(turn)
            if content:
                entries.append(Message(role="assistant", content=content))
        else:
            for slot in turn.slots.values():
                entries = histories.setdefault(slot.advisor_id, [])
                entries.append(user)
                if not slot.errored:
                    entries.append(Message(role="assistant", content=slot.content))

        self._turns[conversation_id].append(turn)
        logger.debug("Stored turn %d for conversation %s", len(self._turns[conversation_id]), conversation_id)

    def load_history(self, conversation_id: str, advisor_id: str) -> list[Message]:
        return list(self._histories.get(conversation_id, {}).get(advisor_id, []))

    def turns(self, conversation_id: str) -> list[Turn]:
        return list(self._turns.get(conversation_id, []))

    def last_turn(self, conversation_id: str) -> Turn | None:
        turns = self._turns.get(conversation_id)
        return turns[-1] if turns else None
