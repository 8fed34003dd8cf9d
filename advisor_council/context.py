"""Context window builder: fit one advisor's history into a token budget.

History is trimmed oldest-first, one user/assistant exchange at a time, so the
retained conversation never contains half of an exchange. The optional
reference block (what the other advisors said last turn) is dropped only once
no history is left to trim.
"""

import logging
from dataclasses import dataclass, field
from datetime import timezone

from advisor_council.models import Advisor, Message, Turn
from advisor_council.tokens import estimate_tokens

logger = logging.getLogger(__name__)

# Joins the reference block to the new user message; counted in the block's cost
_REFERENCE_SEPARATOR = "\n\n"


@dataclass
class ContextWindow:
    system: str
    user_message: str
    history: list[Message] = field(default_factory=list)
    reference_block: str | None = None
    total_cost: int = 0
    dropped_exchanges: int = 0
    reference_dropped: bool = False
    timestamps: bool = True

    def to_messages(self) -> list[dict[str, str]]:
        """Render the provider message list: history, then one final user turn.

        The reference block is prepended to the final user turn so roles keep
        alternating.
        """
        messages = [
            {"role": m.role, "content": render_history_message(m, self.timestamps)}
            for m in self.history
        ]
        final = self.user_message
        if self.reference_block:
            final = self.reference_block + _REFERENCE_SEPARATOR + final
        messages.append({"role": "user", "content": final})
        return messages


def render_history_message(message: Message, timestamps: bool = True) -> str:
    if not timestamps:
        return message.content
    stamp = message.produced_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M")
    return f"[{stamp}] {message.content}"


def pair_exchanges(history: list[Message]) -> list[tuple[Message, Message]]:
    """Group history into (user, assistant) exchanges.

    A user message without a reply (e.g. the advisor failed that turn) and an
    assistant message without a preceding user message are left out.
    Blank messages are ignored.
    """
    exchanges: list[tuple[Message, Message]] = []
    pending_user: Message | None = None
    for message in history:
        if not message.content.strip():
            continue
        if message.role == "user":
            pending_user = message
        elif message.role == "assistant" and pending_user is not None:
            exchanges.append((pending_user, message))
            pending_user = None
    return exchanges


def build_context_window(
    history: list[Message],
    user_message: str,
    budget: int,
    system: str = "",
    reference_block: str | None = None,
    timestamps: bool = True,
) -> ContextWindow:
    """Build the smallest-change message list for one advisor that fits ``budget``.

    Args:
        history: This advisor's own prior messages, oldest first.
        user_message: The new user message.
        budget: Maximum estimated token cost of the whole request.
        system: The advisor's system/instructions text.
        reference_block: Optional digest of the other advisors' last answers.
        timestamps: Prefix history messages with their timestamp.

    Returns:
        ContextWindow whose total_cost never exceeds ``budget``, except when
        system text plus the new message alone already exceed it; then only
        the new message is kept.
    """
    fixed = estimate_tokens(system) + estimate_tokens(user_message)

    if fixed > budget:
        logger.debug("Fixed cost %d exceeds budget %d; sending the new message only", fixed, budget)
        return ContextWindow(
            system=system,
            user_message=user_message,
            total_cost=fixed,
            dropped_exchanges=len(pair_exchanges(history)),
            reference_dropped=reference_block is not None,
            timestamps=timestamps,
        )

    reference_cost = 0
    if reference_block:
        reference_cost = estimate_tokens(reference_block + _REFERENCE_SEPARATOR)
    available = budget - fixed - reference_cost

    exchanges = pair_exchanges(history)
    costs = [
        estimate_tokens(render_history_message(u, timestamps))
        + estimate_tokens(render_history_message(a, timestamps))
        for u, a in exchanges
    ]
    history_cost = sum(costs)

    start = 0
    while start < len(exchanges) and history_cost > available:
        history_cost -= costs[start]
        start += 1

    reference_dropped = False
    if history_cost > available and reference_block:
        # History is already empty here; the block itself does not fit
        reference_block = None
        reference_cost = 0
        reference_dropped = True

    kept = [m for exchange in exchanges[start:] for m in exchange]
    window = ContextWindow(
        system=system,
        user_message=user_message,
        history=kept,
        reference_block=reference_block or None,
        total_cost=fixed + reference_cost + history_cost,
        dropped_exchanges=start,
        reference_dropped=reference_dropped,
        timestamps=timestamps,
    )
    if start or reference_dropped:
        logger.debug(
            "Context trimmed: dropped %d exchange(s), reference dropped=%s, cost %d/%d",
            start,
            reference_dropped,
            window.total_cost,
            budget,
        )
    return window


def build_reference_block(
    previous_turn: Turn | None,
    advisor_id: str,
    header: str,
    max_chars: int = 800,
) -> str | None:
    """Digest of the other advisors' completed answers from the previous turn.

    Errored slots and the advisor's own slot are skipped. Returns None when
    there is nothing to reference.
    """
    if previous_turn is None:
        return None
    parts: list[str] = []
    for slot in previous_turn.slots.values():
        if slot.advisor_id == advisor_id or slot.errored or not slot.content.strip():
            continue
        text = slot.content.strip()
        if len(text) > max_chars:
            text = text[:max_chars].rstrip() + "..."
        parts.append(f"**{slot.name}**: {text}")
    if not parts:
        return None
    return "\n\n".join([header, *parts])


def advisor_system_prompt(template: str, advisor: Advisor) -> str:
    return template.format(name=advisor.name, instructions=advisor.instructions).strip()


def combined_system_prompt(template: str, advisors: list[Advisor]) -> str:
    """System prompt asking one model to answer for every advisor as JSON."""
    roster = "\n".join(f"- {a.name} (id: {a.id}): {a.instructions}" for a in advisors)
    return template.format(advisors=roster).strip()
