"""Rich rendering of live turns and markdown transcript export."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console, Group
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from advisor_council.models import AdvisorSlot, SlotState, Turn

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATE_STYLES: dict[SlotState, tuple[str, str]] = {
    SlotState.EMPTY: ("dim", "waiting"),
    SlotState.STREAMING: ("cyan", "streaming"),
    SlotState.COMPLETED: ("green", "done"),
    SlotState.ERRORED: ("red", "error"),
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _slot_subtitle(slot: AdvisorSlot) -> str:
    _, label = _STATE_STYLES[slot.state]
    if slot.errored and slot.error_message:
        return f"{label}: {slot.error_message}"
    if slot.content:
        return f"{label} · ~{slot.output_tokens} tokens"
    return label


def render_slot(slot: AdvisorSlot) -> Panel:
    """One advisor panel. Finished answers render as markdown, live ones as text."""
    style, _ = _STATE_STYLES[slot.state]
    parts = []
    if slot.thinking:
        parts.append(Text(slot.thinking, style="dim italic"))
    if slot.state is SlotState.COMPLETED:
        parts.append(Markdown(slot.content))
    elif slot.content:
        parts.append(Text(slot.content))
    else:
        parts.append(Text("thinking..." if slot.state is SlotState.EMPTY else "", style="dim"))
    return Panel(
        Group(*parts),
        title=f"[bold]{slot.name}[/bold]",
        subtitle=_slot_subtitle(slot),
        border_style=style,
    )


def render_turn(turn: Turn) -> Group:
    """All slots of a turn, in slot order, for rich.live.Live."""
    return Group(*(render_slot(slot) for slot in turn.slots.values()))


def print_turn_summary(turn: Turn) -> None:
    """Print the finished turn with a one-line footer."""
    console.print(Rule("[bold cyan]Advisors[/bold cyan]"))
    console.print(render_turn(turn))
    errored = [s.name for s in turn.slots.values() if s.errored]
    footer = f"{len(turn.slots)} advisor(s) | mode: {turn.mode}"
    if turn.mode == "single":
        footer += f" | structured: {'yes' if turn.validated else 'no'}"
    if errored:
        footer += f" | failed: {', '.join(errored)}"
    console.print(Text(footer, style="dim"))


def save_transcript(
    turns: list[Turn],
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save the conversation as a markdown file.

    Args:
        turns: Completed turns, oldest first. Must not be empty.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the first user message.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    first = turns[0]
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(first.user_message)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    advisors = sorted({slot.name for turn in turns for slot in turn.slots.values()})
    lines: list[str] = [
        f"# Advisor Council: {first.user_message[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Advisors:** {', '.join(advisors)}",
        f"**Turns:** {len(turns)}",
        f"**Mode:** {first.mode}",
        "",
        "---",
        "",
    ]

    for number, turn in enumerate(turns, start=1):
        lines.append(f"## Turn {number}")
        lines.append("")
        lines.append(f"> {turn.user_message}")
        lines.append("")
        for slot in turn.slots.values():
            lines.append(f"### {slot.name}")
            lines.append("")
            lines.append(slot.content)
            lines.append("")
            meta = f"*~{slot.input_tokens} input / ~{slot.output_tokens} output tokens"
            if slot.errored:
                meta += f" | failed: {slot.error_message}"
            lines.append(meta + "*")
            lines.append("")

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
