"""Value types shared by the engine: messages, advisors, slots, turns, parsed records.

Slots and turns are immutable; every update returns a new value so the
orchestrator can swap the whole Turn when any one slot changes.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from advisor_council.tokens import estimate_tokens


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def slugify(name: str) -> str:
    """Advisor id fallback: lower-cased name with whitespace runs as dashes."""
    return "-".join(name.lower().split())


@dataclass(frozen=True)
class Message:
    role: str              # "user" or "assistant"
    content: str
    produced_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Advisor:
    id: str
    name: str
    instructions: str
    provider: str = ""     # key into AppConfig.models
    active: bool = True


@dataclass
class ModelResponse:
    provider: str
    model: str
    content: str
    latency_sec: float
    token_count: int | None


class SlotState(Enum):
    EMPTY = "empty"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass(frozen=True)
class AdvisorSlot:
    advisor_id: str
    name: str
    content: str = ""
    thinking: str | None = None
    state: SlotState = SlotState.EMPTY
    error_message: str | None = None
    input_tokens: int = 0  # estimated cost of the request that produced this slot

    @property
    def completed(self) -> bool:
        return self.state in (SlotState.COMPLETED, SlotState.ERRORED)

    @property
    def errored(self) -> bool:
        return self.state is SlotState.ERRORED

    @property
    def output_tokens(self) -> int:
        return estimate_tokens(self.content)

    def with_content(self, content: str) -> "AdvisorSlot":
        """Return a STREAMING copy carrying ``content``.

        Raises ValueError if ``content`` does not extend the current content.
        Terminal slots are returned unchanged.
        """
        if self.completed:
            return self
        if not content.startswith(self.content):
            raise ValueError(f"Slot {self.advisor_id}: content may only grow by appending")
        if content == self.content and self.state is SlotState.STREAMING:
            return self
        return replace(self, content=content, state=SlotState.STREAMING)

    def with_thinking(self, thinking: str) -> "AdvisorSlot":
        if self.completed:
            return self
        return replace(self, thinking=thinking, state=SlotState.STREAMING)

    def complete(self) -> "AdvisorSlot":
        if self.completed:
            return self
        return replace(self, state=SlotState.COMPLETED)

    def fail(self, message: str) -> "AdvisorSlot":
        """Mark the slot ERRORED. Streamed content is kept; an empty slot shows the error."""
        if self.completed:
            return self
        return replace(
            self,
            content=self.content or f"Error: {message}",
            state=SlotState.ERRORED,
            error_message=message,
        )


@dataclass(frozen=True)
class Turn:
    slots: dict[str, AdvisorSlot]
    started_at: datetime = field(default_factory=utcnow)
    user_message: str = ""
    mode: str = "parallel"         # "parallel" or "single"
    raw_text: str = ""             # single mode: the whole streamed payload
    validated: bool = False        # single mode: payload parsed as complete JSON

    @classmethod
    def start(cls, advisors: list[Advisor], user_message: str, mode: str = "parallel") -> "Turn":
        slots = {a.id: AdvisorSlot(advisor_id=a.id, name=a.name) for a in advisors}
        return cls(slots=slots, user_message=user_message, mode=mode)

    @property
    def all_completed(self) -> bool:
        return all(slot.completed for slot in self.slots.values())

    def with_slot(self, slot: AdvisorSlot) -> "Turn":
        return replace(self, slots={**self.slots, slot.advisor_id: slot})


@dataclass(frozen=True)
class ParsedRecord:
    name: str
    content: str
    is_complete: bool
    id: str | None = None

    @property
    def is_partial(self) -> bool:
        return not self.is_complete
