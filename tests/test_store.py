"""Tests for advisor_council/store.py."""

import dataclasses

import pytest

from advisor_council.models import Advisor, Turn
from advisor_council.store import COMBINED_HISTORY_ID, InMemoryConversationStore, combined_history_content

_ADVISORS = [Advisor("ada", "Ada", ""), Advisor("grace", "Grace", "")]


def _finished_turn() -> Turn:
    turn = Turn.start(_ADVISORS, "Should I move?")
    turn = turn.with_slot(turn.slots["ada"].with_content("Yes.").complete())
    return turn.with_slot(turn.slots["grace"].fail("rate limited"))


def test_append_turn_splits_per_advisor():
    store = InMemoryConversationStore()
    cid = store.create()
    store.append_turn(cid, _finished_turn())

    ada = store.load_history(cid, "ada")
    assert [(m.role, m.content) for m in ada] == [("user", "Should I move?"), ("assistant", "Yes.")]
    # The failed advisor keeps only the unanswered user message
    grace = store.load_history(cid, "grace")
    assert [(m.role, m.content) for m in grace] == [("user", "Should I move?")]
    assert store.last_turn(cid) is not None


def test_open_turn_is_rejected():
    store = InMemoryConversationStore()
    cid = store.create()
    with pytest.raises(ValueError):
        store.append_turn(cid, Turn.start(_ADVISORS, "Hi"))
    assert store.turns(cid) == []


def test_unknown_conversation():
    store = InMemoryConversationStore()
    with pytest.raises(KeyError):
        store.append_turn("nope", _finished_turn())
    assert store.load_history("nope", "ada") == []
    assert store.last_turn("nope") is None


def test_load_history_returns_a_copy():
    store = InMemoryConversationStore()
    cid = store.create()
    store.append_turn(cid, _finished_turn())
    store.load_history(cid, "ada").clear()
    assert len(store.load_history(cid, "ada")) == 2


def test_delete():
    store = InMemoryConversationStore()
    cid = store.create()
    store.append_turn(cid, _finished_turn())
    store.delete(cid)
    assert store.turns(cid) == []


def _single_turn(validated: bool) -> Turn:
    turn = Turn.start(_ADVISORS, "Hi", mode="single")
    turn = turn.with_slot(turn.slots["ada"].with_content("A.").complete())
    turn = turn.with_slot(turn.slots["grace"].fail("missing from response"))
    return dataclasses.replace(turn, raw_text='  {"type": "advisor_response"}  ', validated=validated)


def test_combined_history_content():
    assert combined_history_content(_single_turn(True)) == "**Ada**: A."
    assert combined_history_content(_single_turn(False)) == '{"type": "advisor_response"}'


def test_single_mode_turn_stored_once():
    store = InMemoryConversationStore()
    cid = store.create()
    store.append_turn(cid, _single_turn(True))
    history = store.load_history(cid, COMBINED_HISTORY_ID)
    assert [(m.role, m.content) for m in history] == [("user", "Hi"), ("assistant", "**Ada**: A.")]
    assert store.load_history(cid, "ada") == []
