"""Tests for advisor_council/output.py."""

import dataclasses
from pathlib import Path

import pytest
from rich.console import Console
from rich.markdown import Markdown
from rich.text import Text

from advisor_council.models import Advisor, AdvisorSlot, Turn
from advisor_council.output import _slug, render_slot, render_turn, save_transcript


def test_slug_basic():
    assert _slug("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    long_text = "a" * 100
    assert len(_slug(long_text)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


@pytest.fixture
def finished_turn() -> Turn:
    advisors = [Advisor("ada", "Ada", ""), Advisor("grace", "Grace", "")]
    turn = Turn.start(advisors, "Should I take the job?")
    turn = turn.with_slot(
        dataclasses.replace(turn.slots["ada"], input_tokens=120).with_content("## Yes\nTake it.").complete()
    )
    return turn.with_slot(turn.slots["grace"].fail("rate limited (HTTP 429: slow down)"))


def _render(renderable) -> str:
    console = Console(width=100, record=True)
    console.print(renderable)
    return console.export_text()


def test_render_slot_uses_markdown_only_when_completed():
    streaming = AdvisorSlot("ada", "Ada").with_content("**half")
    assert isinstance(render_slot(streaming).renderable.renderables[-1], Text)
    done = streaming.with_content("**half**").complete()
    assert isinstance(render_slot(done).renderable.renderables[-1], Markdown)


def test_render_slot_shows_thinking_and_state():
    slot = AdvisorSlot("ada", "Ada").with_thinking("weighing options").with_content("Answer")
    text = _render(render_slot(slot))
    assert "weighing options" in text
    assert "streaming" in text
    assert "Ada" in text


def test_render_turn_shows_errors(finished_turn: Turn):
    text = _render(render_turn(finished_turn))
    assert "Take it." in text
    assert "rate limited" in text


def test_save_transcript_creates_file(tmp_path: Path, finished_turn: Turn):
    saved = save_transcript([finished_turn], tmp_path / "output")
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.name.endswith("_should-i-take-the-job.md")


def test_save_transcript_creates_output_dir(tmp_path: Path, finished_turn: Turn):
    output_dir = tmp_path / "nested" / "output"
    assert not output_dir.exists()
    save_transcript([finished_turn], output_dir)
    assert output_dir.exists()


def test_save_transcript_content(tmp_path: Path, finished_turn: Turn):
    second = dataclasses.replace(finished_turn, user_message="And the salary?")
    saved = save_transcript([finished_turn, second], tmp_path)
    content = saved.read_text(encoding="utf-8")
    assert "# Advisor Council: Should I take the job?" in content
    assert "**Advisors:** Ada, Grace" in content
    assert "**Turns:** 2" in content
    assert "## Turn 1" in content and "## Turn 2" in content
    assert "> And the salary?" in content
    assert "## Yes\nTake it." in content
    assert "*~120 input / ~4 output tokens*" in content
    assert "failed: rate limited (HTTP 429: slow down)" in content


def test_save_transcript_slug_override(tmp_path: Path, finished_turn: Turn):
    saved = save_transcript([finished_turn], tmp_path, slug_override="weekly")
    assert saved.name.endswith("_weekly.md")
