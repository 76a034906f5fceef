"""Rich console output and markdown file save for peer-review results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from peer_review.cache import CacheReport
from peer_review.models import Answer, FollowupResult, HistoryEntry, HistoryStats, Result

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(content: str, words: int = 50) -> str:
    """Return first N words of a text."""
    all_words = content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def print_answers(title: str, answers: list[Answer]) -> None:
    console.print(Rule(f"[bold cyan]{title}[/bold cyan]"))
    for answer in answers:
        console.print(
            Panel(_preview(answer.content), title=f"[bold]{answer.provider}[/bold]", border_style="dim")
        )


def score_table(result: Result) -> Table:
    table = Table(title="Aggregated scores")
    table.add_column("Provider")
    table.add_column("Mean score", justify="right")
    for rating in result.ratings:
        table.add_column(f"by {rating.from_provider}", justify="right")
    for key, score in result.aggregated_scores.items():
        marker = " *" if key == result.best_provider else ""
        cells = [
            f"{r.scores[key]:.1f}" if key in r.scores else "-"
            for r in result.ratings
        ]
        table.add_row(f"{key}{marker}", f"{score:.2f}", *cells)
    return table


def print_result(result: Result, show_rounds: bool = True) -> None:
    """Print answer previews, the score table and the winning answer."""
    if show_rounds:
        print_answers("Initial Answers", result.initials)
        print_answers("Peer-Reviewed Answers", result.finals)
    console.print(score_table(result))
    for rating in result.ratings:
        if not rating.scores:
            console.print(f"[yellow]{rating.from_provider} returned unstructured feedback[/yellow]")
    source = "cache" if result.from_cache else "fresh run"
    console.print(Rule("[bold green]Best Answer[/bold green]"))
    console.print(
        Text(
            f"Provider: {result.best_provider} | "
            f"Score: {result.aggregated_scores.get(result.best_provider, 0.0):.2f}/10 | "
            f"Source: {source}",
            style="dim",
        )
    )
    console.print(Markdown(result.best_answer))


def print_followup(followup: FollowupResult, max_followups: int) -> None:
    turn = len(followup.context.followup_chain)
    console.print(Rule(f"[bold cyan]Follow-up {turn}/{max_followups} ({followup.provider})[/bold cyan]"))
    console.print(Markdown(followup.answer))
    console.print(Text(f"Estimated cost: ${followup.estimated_cost:.2f}", style="dim"))


def print_suggestions(suggestions: list[str]) -> None:
    if not suggestions:
        return
    console.print("\n[bold]Suggested follow-ups:[/bold]")
    for s in suggestions:
        console.print(f"  • {s}")


def history_table(entries: list[HistoryEntry]) -> Table:
    table = Table(title=f"History ({len(entries)} entries)")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("When")
    table.add_column("Query")
    table.add_column("Best")
    table.add_column("Score", justify="right")
    table.add_column("Cache")
    for e in entries:
        best = e.result.best_provider
        table.add_row(
            e.id,
            _format_time(e.timestamp),
            _preview(e.query, words=12),
            best,
            f"{e.result.aggregated_scores.get(best, 0.0):.2f}",
            "hit" if e.cache_hit else "miss",
        )
    return table


def print_history_stats(stats: HistoryStats) -> None:
    console.print(
        f"Queries: {stats.total_queries} | Cache hits: {stats.cache_hits} "
        f"({stats.cache_hit_rate:.1f}%) | Avg best score: {stats.avg_score:.2f}"
    )
    if stats.provider_performance:
        table = Table(title="Provider performance")
        table.add_column("Provider")
        table.add_column("Runs", justify="right")
        table.add_column("Mean score", justify="right")
        for key, perf in sorted(stats.provider_performance.items()):
            table.add_row(key, str(perf.count), f"{perf.mean_score:.2f}")
        console.print(table)


def print_cache_report(report: CacheReport) -> None:
    console.print(
        f"Entries: {report.size} | Lookups: {report.total_queries} | "
        f"Hits: {report.hits} | Misses: {report.misses} | Hit rate: {report.hit_rate:.2f}%"
    )


def save_to_file(result: Result, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the full peer-review transcript as a markdown file.

    Args:
        result: The completed Result.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the query text.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(result.query)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    best_score = result.aggregated_scores.get(result.best_provider, 0.0)
    lines: list[str] = [
        f"# Peer Review: {result.query[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Panel:** {', '.join(a.provider for a in result.initials)}",
        f"**Best:** {result.best_provider} ({best_score:.2f}/10)",
        f"**From cache:** {'yes' if result.from_cache else 'no'}",
        "",
        "---",
        "",
    ]

    for heading, answers in (("Initial Answers", result.initials), ("Peer-Reviewed Answers", result.finals)):
        lines.append(f"## {heading}")
        lines.append("")
        for answer in answers:
            lines.append(f"### {answer.provider.title()}")
            lines.append("")
            lines.append(answer.content)
            lines.append("")

    lines.append("## Ratings")
    lines.append("")
    for rating in result.ratings:
        scores = ", ".join(f"{k}: {v:g}" for k, v in rating.scores.items()) or "unparsed"
        lines.append(f"- **{rating.from_provider}** — {scores}")
        if rating.feedback:
            lines.append(f"  > {_preview(rating.feedback, words=60)}")
    lines.append("")
    lines.append("| Provider | Mean score |")
    lines.append("|---|---|")
    for key, score in result.aggregated_scores.items():
        lines.append(f"| {key} | {score:.2f} |")
    lines.append("")

    lines += [
        f"## Best Answer (by {result.best_provider})",
        "",
        result.best_answer,
        "",
    ]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Result saved to: %s", filepath)
    return filepath
