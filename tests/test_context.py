"""Tests for advisor_council/context.py: literal histories, literal budgets."""

from datetime import datetime, timezone

import pytest

from advisor_council.context import (
    advisor_system_prompt,
    build_context_window,
    build_reference_block,
    combined_system_prompt,
    pair_exchanges,
    render_history_message,
)
from advisor_council.models import Advisor, Message, Turn
from advisor_council.tokens import estimate_tokens

_T0 = datetime(2026, 1, 2, 3, 4, tzinfo=timezone.utc)


def _exchanges(count: int) -> list[Message]:
    """``count`` exchanges of 10 + 10 tokens each, numbered so they can be told apart."""
    history: list[Message] = []
    for i in range(count):
        history.append(Message("user", f"{i:02d}" + "u" * 38, _T0))
        history.append(Message("assistant", f"{i:02d}" + "a" * 38, _T0))
    return history


def _recomputed_cost(window) -> int:
    messages = window.to_messages()
    return estimate_tokens(window.system) + sum(
        estimate_tokens(m["content"]) for m in messages[:-1]
    ) + (
        estimate_tokens(window.user_message)
        + (estimate_tokens(window.reference_block + "\n\n") if window.reference_block else 0)
    )


def test_empty_history_sends_only_the_new_message():
    window = build_context_window([], "hello", budget=100, timestamps=False)
    assert window.to_messages() == [{"role": "user", "content": "hello"}]
    assert window.total_cost == estimate_tokens("hello")


def test_keeps_everything_when_it_fits():
    window = build_context_window(_exchanges(3), "hello", budget=1000, timestamps=False)
    assert len(window.history) == 6
    assert window.dropped_exchanges == 0
    assert window.total_cost == 2 + 60


def test_trims_oldest_exchanges_first():
    history = _exchanges(5)
    # "hello" costs 2, leaving 60 for three 20-token exchanges
    window = build_context_window(history, "hello", budget=62, timestamps=False)
    assert window.history == history[4:]
    assert window.dropped_exchanges == 2
    assert window.total_cost == 62


@pytest.mark.parametrize("budget", [0, 5, 21, 22, 41, 63, 99, 150, 1000])
def test_budget_invariant(budget):
    window = build_context_window(
        _exchanges(6),
        "hello",
        budget=budget,
        system="s" * 16,
        reference_block="r" * 30,
        timestamps=True,
    )
    fixed = estimate_tokens("s" * 16) + estimate_tokens("hello")
    if fixed <= budget:
        assert window.total_cost <= budget
    assert window.total_cost == _recomputed_cost(window)


def test_pair_integrity_after_trimming():
    history = _exchanges(4)
    history.insert(2, Message("user", "never answered", _T0))
    window = build_context_window(history, "hello", budget=45, timestamps=False)
    roles = [m.role for m in window.history]
    assert roles == ["user", "assistant"] * (len(roles) // 2)
    assert all(m.content != "never answered" for m in window.history)


def test_pair_exchanges_drops_orphans_and_blanks():
    u1, a1 = Message("user", "q1", _T0), Message("assistant", "r1", _T0)
    u2 = Message("user", "q2 (advisor failed)", _T0)
    u3, a3 = Message("user", "q3", _T0), Message("assistant", "r3", _T0)
    stray = Message("assistant", "stray", _T0)
    blank = Message("assistant", "   ", _T0)
    assert pair_exchanges([u1, a1, u2, u3, blank, a3, stray]) == [(u1, a1), (u3, a3)]


def test_reference_block_is_prepended_to_final_user_turn():
    window = build_context_window([], "hello", budget=100, reference_block="REF", timestamps=False)
    assert window.to_messages() == [{"role": "user", "content": "REF\n\nhello"}]
    assert window.total_cost == estimate_tokens("hello") + estimate_tokens("REF\n\n")


def test_history_is_dropped_before_the_reference_block():
    # 78 chars + separator = 20 tokens of reference, leaving 40 for history
    window = build_context_window(
        _exchanges(5), "hello", budget=62, reference_block="r" * 78, timestamps=False
    )
    assert window.reference_block == "r" * 78
    assert len(window.history) == 4
    assert window.total_cost == 62


def test_reference_block_dropped_only_when_history_is_gone():
    window = build_context_window(
        _exchanges(5), "hello", budget=10, reference_block="r" * 78, timestamps=False
    )
    assert window.history == []
    assert window.reference_block is None
    assert window.reference_dropped
    assert window.total_cost == 2


def test_degenerate_case_sends_new_message_alone():
    window = build_context_window(
        _exchanges(2), "hello", budget=50, system="s" * 400, reference_block="REF", timestamps=False
    )
    assert window.history == []
    assert window.reference_block is None
    assert window.to_messages() == [{"role": "user", "content": "hello"}]
    assert window.total_cost == 100 + 2
    assert window.dropped_exchanges == 2


def test_timestamps_prefix_history_and_count_toward_cost():
    msg = Message("user", "hi", _T0)
    assert render_history_message(msg) == "[2026-01-02T03:04] hi"
    assert render_history_message(msg, timestamps=False) == "hi"

    history = [msg, Message("assistant", "hello", _T0)]
    window = build_context_window(history, "next", budget=1000)
    assert window.to_messages()[0]["content"] == "[2026-01-02T03:04] hi"
    assert window.total_cost == (
        estimate_tokens("[2026-01-02T03:04] hi")
        + estimate_tokens("[2026-01-02T03:04] hello")
        + estimate_tokens("next")
    )


def _previous_turn() -> Turn:
    advisors = [
        Advisor("ada", "Ada", ""),
        Advisor("grace", "Grace", ""),
        Advisor("marcus", "Marcus", ""),
    ]
    turn = Turn.start(advisors, "earlier question")
    turn = turn.with_slot(turn.slots["ada"].with_content("A" * 1000).complete())
    turn = turn.with_slot(turn.slots["grace"].fail("rate limited"))
    return turn.with_slot(turn.slots["marcus"].with_content("Stay calm.").complete())


def test_reference_block_skips_own_and_errored_slots():
    block = build_reference_block(_previous_turn(), "ada", "=== OTHERS ===")
    assert block == "=== OTHERS ===\n\n**Marcus**: Stay calm."


def test_reference_block_truncates_long_answers():
    block = build_reference_block(_previous_turn(), "grace", "HDR", max_chars=800)
    assert block is not None
    assert f"**Ada**: {'A' * 800}..." in block
    assert "**Marcus**: Stay calm." in block


def test_reference_block_none_without_previous_turn_or_content():
    assert build_reference_block(None, "ada", "HDR") is None
    only_self = Turn.start([Advisor("ada", "Ada", "")], "q")
    only_self = only_self.with_slot(only_self.slots["ada"].with_content("mine").complete())
    assert build_reference_block(only_self, "ada", "HDR") is None


def test_system_prompts():
    ada = Advisor("ada", "Ada", "Be practical.")
    grace = Advisor("grace", "Grace", "Be sceptical.")
    assert advisor_system_prompt("You are {name}. {instructions}", ada) == "You are Ada. Be practical."
    combined = combined_system_prompt("Advisors:\n{advisors}\n", [ada, grace])
    assert combined == (
        "Advisors:\n- Ada (id: ada): Be practical.\n- Grace (id: grace): Be sceptical."
    )
