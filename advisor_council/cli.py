"""Click CLI: loads config, builds providers, streams advisor turns to the terminal."""

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.live import Live
from rich.logging import RichHandler

from config.config_loader import AppConfig, DefaultsConfig, load_config
from advisor_council.healthcheck import providers_in_use, run_health_checks
from advisor_council.models import Advisor, Turn
from advisor_council.orchestrator import OrchestrationError, TurnOrchestrator
from advisor_council.output import print_turn_summary, render_turn, save_transcript
from advisor_council.providers.anthropic import AnthropicProvider
from advisor_council.providers.base import AIProvider
from advisor_council.providers.openai_provider import OpenAIProvider
from advisor_council.store import InMemoryConversationStore

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
}

_QUIT_COMMANDS = {"", "/quit", "/exit"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by model name."""
    providers: dict[str, AIProvider] = {}
    for name in config.available_providers:
        model_cfg = config.models[name]
        if model_cfg.sdk not in PROVIDER_CLASSES:
            logging.warning("Provider '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = PROVIDER_CLASSES[model_cfg.sdk](model_cfg)
        except Exception as exc:
            logging.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _select_advisors(config: AppConfig, advisors_arg: str | None) -> list[Advisor]:
    """Active advisors from config, or exactly those named by --advisors (by id or name)."""
    if not advisors_arg:
        return config.active_advisors()
    wanted = [w.strip().casefold() for w in advisors_arg.split(",") if w.strip()]
    selected: list[Advisor] = []
    for key in wanted:
        match = next(
            (a for a in config.advisors if key in (a.id.casefold(), a.name.casefold())),
            None,
        )
        if match is None:
            console.print(f"[yellow]Unknown advisor '{key}', skipping[/yellow]")
            continue
        selected.append(dataclasses.replace(match, active=True))
    return selected


def _effective_defaults(
    defaults: DefaultsConfig,
    single_stream: bool,
    reasoning: bool,
    context_limit: int | None,
) -> DefaultsConfig:
    """CLI flags win over settings.yaml."""
    return dataclasses.replace(
        defaults,
        mode="single" if single_stream else defaults.mode,
        reasoning_mode=reasoning or defaults.reasoning_mode,
        context_limit=context_limit if context_limit is not None else defaults.context_limit,
    )


async def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results = await run_health_checks(all_providers)

    failed_names: list[str] = []
    for name in sorted(results):
        result = results[name]
        if result.ok:
            console.print(f"  [green]OK  [/green] {name} [dim]({result.latency_sec:.1f}s)[/dim]")
        else:
            short_err = result.error.splitlines()[0][:120] if result.error else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(
        f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}"
    )
    console.print(f"Working providers: {', '.join(sorted(working))}")

    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


class _LiveTurnView:
    """Receives Turn updates from the orchestrator and redraws the live panel."""

    def __init__(self) -> None:
        self.live: Live | None = None

    def update(self, turn: Turn) -> None:
        if self.live is not None:
            self.live.update(render_turn(turn))


async def _run_one_turn(
    orchestrator: TurnOrchestrator,
    view: _LiveTurnView,
    store: InMemoryConversationStore,
    conversation_id: str,
    question: str,
    advisors: list[Advisor],
) -> Turn | None:
    """Stream one turn with live rendering, then print the final panels."""
    previous = store.last_turn(conversation_id)
    try:
        with Live(console=console, refresh_per_second=12, transient=True) as live:
            view.live = live
            turn = await orchestrator.run_for_conversation(
                store, conversation_id, question, advisors, previous_turn=previous
            )
    except OrchestrationError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        return None
    finally:
        view.live = None
    print_turn_summary(turn)
    return turn


async def _run_session(
    config: AppConfig,
    defaults: DefaultsConfig,
    advisors: list[Advisor],
    first_question: str | None,
    chat: bool,
    skip_health_check: bool,
    output_dir: Path,
) -> Path | None:
    """Health check, then one turn (or a chat loop); returns the transcript path."""
    all_providers = _build_all_providers(config)
    if not all_providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        in_use = providers_in_use(advisors, defaults.mode, defaults.provider)
        to_check = {n: p for n, p in all_providers.items() if n in in_use}
        if to_check:
            working = await _check_and_filter_providers(to_check)
            all_providers = {
                n: p for n, p in all_providers.items() if n in working or n not in to_check
            }

    view = _LiveTurnView()
    orchestrator = TurnOrchestrator(all_providers, defaults, config.prompts, on_update=view.update)
    store = InMemoryConversationStore()
    conversation_id = store.create()

    names = ", ".join(a.name for a in advisors)
    console.print(f"\n[bold cyan]Advisor Council[/bold cyan]: {len(advisors)} advisors ({defaults.mode} mode)")
    console.print(f"Advisors: {names}\n")

    question = first_question
    while True:
        if question is None:
            question = (await asyncio.to_thread(click.prompt, "You", default="", show_default=False)).strip()
            if question in _QUIT_COMMANDS:
                break
        await _run_one_turn(orchestrator, view, store, conversation_id, question, advisors)
        if not chat:
            break
        question = None

    turns = store.turns(conversation_id)
    if not turns:
        return None
    saved_path = save_transcript(turns, output_dir)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


@click.command()
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read question from .md file")
@click.option("--advisors", "advisors_arg", default=None, help="Comma-separated advisor ids or names (default: active advisors)")
@click.option("--single-stream", is_flag=True, help="One model answers for all advisors as one structured stream")
@click.option("--reasoning", is_flag=True, help="Request and show extended thinking")
@click.option("--context-limit", default=None, type=int, help="Estimated-token budget per request (default: from config)")
@click.option("--output", "output_path", default=None, help="Transcript directory (default: from config)")
@click.option("--chat", is_flag=True, help="Keep asking for follow-up messages until an empty line or /quit")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    question: str | None,
    question_file: str | None,
    advisors_arg: str | None,
    single_stream: bool,
    reasoning: bool,
    context_limit: int | None,
    output_path: str | None,
    chat: bool,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Advisor Council -- ask several AI advisors at once and watch them answer.

    \b
    Examples:
      advisor-council "Should I take the job offer?"
      advisor-council "Plan my week" --advisors ada,grace
      advisor-council "Review this idea" --single-stream
      advisor-council --file question.md --reasoning
      advisor-council --chat
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if question_file:
        question = Path(question_file).read_text(encoding="utf-8").strip()
    if not question and not chat:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument, --file, or --chat.")
        sys.exit(1)

    advisors = _select_advisors(config, advisors_arg)
    if not advisors:
        console.print("[bold red]Error:[/bold red] No active advisors. Check settings.yaml or --advisors.")
        sys.exit(1)

    defaults = _effective_defaults(config.defaults, single_stream, reasoning, context_limit)
    output_dir = Path(output_path) if output_path else defaults.output_dir

    asyncio.run(
        _run_session(
            config=config,
            defaults=defaults,
            advisors=advisors,
            first_question=question or None,
            chat=chat,
            skip_health_check=skip_health_check,
            output_dir=output_dir,
        )
    )


if __name__ == "__main__":
    main()
