"""Click CLI: config loading, roster construction, queries, follow-ups, history and cache."""

import asyncio
import json
import logging
import sys
from collections.abc import Coroutine
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from peer_review.cache import ResultCache, build_cache
from peer_review.errors import FollowupLimitError, PeerReviewError
from peer_review.events import STAGE_START, PipelineEvent
from peer_review.followup import FollowupEngine, context_from_result, estimate_followup_cost
from peer_review.healthcheck import run_health_checks
from peer_review.history import DEFAULT_USER, HistoryLedger, JsonFileLedgerStore
from peer_review.models import FollowupContext, HistoryFilter
from peer_review.output import (
    history_table,
    print_cache_report,
    print_followup,
    print_history_stats,
    print_result,
    print_suggestions,
    save_to_file,
)
from peer_review.providers.anthropic import AnthropicProvider
from peer_review.providers.base import AIProvider
from peer_review.providers.gemini import GeminiProvider
from peer_review.providers.openai_provider import OpenAIProvider
from peer_review.retry import RetryPolicy
from peer_review.roster import ModelRoster
from peer_review.serialization import followup_context_from_dict, to_dict
from peer_review.service import PeerReviewService
from peer_review.suggestions import generate_suggestions

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

T = TypeVar("T")

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
}

_STAGE_LABELS = {
    "generate": "Generating initial answers...",
    "review": "Cross-reviewing answers...",
    "rate": "Rating refined answers...",
    "aggregate": "Aggregating scores...",
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _fail(message: str) -> NoReturn:
    console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning engine errors into a single message and exit code 1."""
    try:
        return asyncio.run(coro)
    except PeerReviewError as exc:
        _fail(str(exc))


def _build_roster(config: AppConfig) -> ModelRoster:
    """Instantiate every roster member. Exits if any of them is unavailable."""
    missing = [n for n in config.defaults.roster if n not in config.available_providers]
    if missing:
        keys = ", ".join(config.models[n].api_key_env for n in missing)
        _fail(f"Roster members without API keys: {', '.join(missing)}. Set {keys} in .env.")

    providers: list[AIProvider] = []
    for name in config.defaults.roster:
        model_cfg = config.models[name]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            _fail(f"Provider '{name}' uses unknown sdk '{model_cfg.sdk}'")
        providers.append(provider_cls(model_cfg))
    return ModelRoster(providers)


def _build_ledger(config: AppConfig) -> HistoryLedger:
    return HistoryLedger(
        JsonFileLedgerStore(config.defaults.history_file),
        max_per_user=config.defaults.max_history_per_user,
    )


def _build_cache(config: AppConfig) -> ResultCache:
    return build_cache(config.redis_url, config.defaults.cache_ttl_sec, config.defaults.cache_file)


def _retry_policy(config: AppConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.defaults.retry_attempts,
        base_delay_sec=config.defaults.retry_base_delay_sec,
    )


def _build_followups(config: AppConfig, roster: ModelRoster) -> FollowupEngine:
    return FollowupEngine(
        roster,
        retry=_retry_policy(config),
        max_followups=config.defaults.max_followups,
        full_run_cost=config.defaults.full_run_cost,
        cost_multiplier=config.defaults.followup_cost_multiplier,
    )


def _build_service(config: AppConfig, roster: ModelRoster) -> PeerReviewService:
    return PeerReviewService(
        roster=roster,
        prompts=config.prompts,
        cache=_build_cache(config),
        ledger=_build_ledger(config),
        followups=_build_followups(config, roster),
        retry=_retry_policy(config),
        timeout_sec=config.defaults.pipeline_timeout_sec,
    )


def _check_roster(roster: ModelRoster) -> None:
    """Ping every member; every one is required, so any failure exits."""
    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(list(roster)))

    failed: list[str] = []
    for name in roster.names():
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed.append(name)
    console.print()

    if failed:
        _fail(f"Every roster member must respond; failed: {', '.join(failed)}")


def _date_to_ts(value: datetime | None, end_of_day: bool = False) -> float | None:
    if value is None:
        return None
    if end_of_day:
        value = value.replace(hour=23, minute=59, second=59)
    return value.timestamp()


async def _followup_loop(service: PeerReviewService, context: FollowupContext) -> FollowupContext:
    """Interactive follow-up turns until the user stops or the chain limit is hit."""
    engine = service.followups
    print_suggestions(generate_suggestions(context))
    console.print(f"[dim]Follow-ups cost about ${engine.estimate_cost():.2f} each. Empty line to stop.[/dim]")

    while engine.remaining(context) > 0:
        question = click.prompt("\nFollow-up", default="", show_default=False).strip()
        if not question:
            break
        followup = await service.followup(question, context)
        print_followup(followup, engine.max_followups)
        context = followup.context

    if engine.remaining(context) == 0:
        console.print(f"[yellow]Follow-up limit reached ({engine.max_followups} per query).[/yellow]")
    return context


async def _ask(
    service: PeerReviewService,
    query: str,
    user_id: str,
    output_dir: Path | None,
    interactive: bool,
) -> None:
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Checking cache...", total=None)

            def on_event(event: PipelineEvent) -> None:
                if event.kind == STAGE_START:
                    progress.update(task, description=_STAGE_LABELS.get(event.stage, event.stage))

            entry = await service.submit_entry(query, user_id, on_event=on_event)

        result = entry.result
        print_result(result, show_rounds=not result.from_cache)
        console.print(f"\n[dim]History id: {entry.id}[/dim]")

        if output_dir is not None:
            saved = save_to_file(result, output_dir)
            console.print(f"[dim]Saved to: {saved}[/dim]")

        context = context_from_result(result)
        if interactive:
            await _followup_loop(service, context)
        else:
            print_suggestions(generate_suggestions(context))
    finally:
        await service.cache.backend.close()


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """Peer Review Council -- multi-model answers, cross-review and scoring.

    \b
    Examples:
      peer-review ask "Implement a binary search in Python"
      peer-review ask "Debounce a React input" --followup
      peer-review followup <history-id> "How do I test this?"
      peer-review history list --search binary --min-score 7
      peer-review cost
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
        ctx.obj = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


@main.command()
@click.argument("query")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True, help="History owner")
@click.option("--save", is_flag=True, help="Write a markdown transcript to the output directory")
@click.option("--followup", "interactive", is_flag=True, help="Ask follow-up questions after the answer")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.pass_obj
def ask(config: AppConfig, query: str, user_id: str, save: bool, interactive: bool, skip_health_check: bool) -> None:
    """Answer QUERY with generate, cross-review and rating rounds."""
    roster = _build_roster(config)
    if not skip_health_check:
        _check_roster(roster)

    service = _build_service(config, roster)
    console.print(f"\n[bold cyan]Peer Review Council[/bold cyan] — {', '.join(roster.names())}")
    console.print(f"Query: [italic]{query[:80]}{'...' if len(query) > 80 else ''}[/italic]\n")

    _run(_ask(service, query, user_id, config.defaults.output_dir if save else None, interactive))


@main.command()
@click.argument("entry_id")
@click.argument("question")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True)
@click.option("--context-file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="JSON file holding the follow-up chain; created or updated after each turn")
@click.pass_obj
def followup(config: AppConfig, entry_id: str, question: str, user_id: str, context_file: Path | None) -> None:
    """Ask QUESTION as a follow-up to history entry ENTRY_ID."""

    async def _go() -> None:
        if context_file is not None and context_file.exists():
            context = followup_context_from_dict(json.loads(context_file.read_text(encoding="utf-8")))
        else:
            entry = await _build_ledger(config).get_by_id(entry_id, user_id)
            if entry is None:
                _fail(f"History entry not found: {entry_id}")
            context = context_from_result(entry.result)

        engine = _build_followups(config, _build_roster(config))
        try:
            result = await engine.process(question, context)
        except FollowupLimitError as exc:
            _fail(f"{exc}. Start a new query instead.")
        print_followup(result, engine.max_followups)

        if context_file is not None:
            context_file.parent.mkdir(parents=True, exist_ok=True)
            context_file.write_text(json.dumps(to_dict(result.context), indent=2), encoding="utf-8")
            console.print(f"[dim]Context saved to: {context_file}[/dim]")

    _run(_go())


@main.command()
@click.pass_obj
def cost(config: AppConfig) -> None:
    """Print the estimated cost of one follow-up."""
    estimate = estimate_followup_cost(config.defaults.full_run_cost, config.defaults.followup_cost_multiplier)
    click.echo(json.dumps({"estimated_cost": round(estimate, 4)}))


@main.command()
@click.pass_obj
def check(config: AppConfig) -> None:
    """Ping every roster member."""
    _check_roster(_build_roster(config))
    console.print("[green]All providers responded.[/green]")


@main.group()
def history() -> None:
    """Browse and manage query history."""


@history.command("list")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True)
@click.option("--search", default=None, help="Substring of query or best answer")
@click.option("--min-score", type=float, default=None)
@click.option("--max-score", type=float, default=None)
@click.option("--since", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--until", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.pass_obj
def history_list(
    config: AppConfig,
    user_id: str,
    search: str | None,
    min_score: float | None,
    max_score: float | None,
    since: datetime | None,
    until: datetime | None,
) -> None:
    flt = HistoryFilter(
        start_date=_date_to_ts(since),
        end_date=_date_to_ts(until, end_of_day=True),
        min_score=min_score,
        max_score=max_score,
        search_query=search,
    )
    entries = _run(_build_ledger(config).list_entries(user_id, flt))
    console.print(history_table(entries))


@history.command("show")
@click.argument("entry_id")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True)
@click.pass_obj
def history_show(config: AppConfig, entry_id: str, user_id: str) -> None:
    entry = _run(_build_ledger(config).get_by_id(entry_id, user_id))
    if entry is None:
        _fail(f"History entry not found: {entry_id}")
    console.print(f"[bold]{entry.query}[/bold]")
    print_result(entry.result)


@history.command("delete")
@click.argument("entry_id")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True)
@click.pass_obj
def history_delete(config: AppConfig, entry_id: str, user_id: str) -> None:
    if not _run(_build_ledger(config).delete_by_id(entry_id, user_id)):
        _fail(f"History entry not found: {entry_id}")
    console.print("History entry deleted")


@history.command("clear")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True)
@click.confirmation_option(prompt="Delete all history for this user?")
@click.pass_obj
def history_clear(config: AppConfig, user_id: str) -> None:
    removed = _run(_build_ledger(config).clear(user_id))
    console.print(f"History cleared ({removed} entries)")


@history.command("stats")
@click.option("--user", "user_id", default=DEFAULT_USER, show_default=True)
@click.pass_obj
def history_stats(config: AppConfig, user_id: str) -> None:
    print_history_stats(_run(_build_ledger(config).stats(user_id)))


@main.group()
def cache() -> None:
    """Inspect or clear the result cache (Redis when REDIS_URL is set, else the cache file)."""


@cache.command("stats")
@click.pass_obj
def cache_stats(config: AppConfig) -> None:
    async def _go():
        result_cache = _build_cache(config)
        try:
            return await result_cache.stats()
        finally:
            await result_cache.backend.close()

    print_cache_report(_run(_go()))


@cache.command("clear")
@click.pass_obj
def cache_clear(config: AppConfig) -> None:
    async def _go() -> None:
        result_cache = _build_cache(config)
        try:
            await result_cache.clear_all()
        finally:
            await result_cache.backend.close()

    _run(_go())
    console.print("Cache cleared")


if __name__ == "__main__":
    main()
