"""Rich console output, JSON shaping and markdown file save for deliberation results."""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from hivemind.errors import CATEGORY_LABELS, UNKNOWN
from hivemind.models import DeliberationResult, ErrorRecord, ModelResponse
from hivemind.usage import format_cost, format_duration, format_tokens

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _response_preview(response: ModelResponse, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = response.content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _error_line(record: ErrorRecord) -> str:
    label = CATEGORY_LABELS.get(record.category, CATEGORY_LABELS[UNKNOWN])
    return f"{record.provider} ({label}, round {record.round_number} {record.stage}): {record.message}"


def result_to_dict(result: DeliberationResult, consensus_only: bool = False) -> dict[str, Any]:
    """Shape a result for JSON output. Failed providers are always included."""
    data: dict[str, Any] = {
        "consensus": result.consensus,
        "rounds": result.rounds,
        "providers": result.providers,
        "judge": result.judge,
    }
    if not consensus_only:
        data["analysis"] = {
            "hasConsensus": result.analysis.has_consensus,
            "agreements": result.analysis.agreements,
            "divergences": result.analysis.divergences,
            "confidence": result.analysis.confidence,
            "parseFailed": result.analysis.parse_failed,
        }
        data["responses"] = [
            {
                "provider": r.provider,
                "model": r.model,
                "content": r.content,
                "round": r.round_number,
            }
            for rnd in result.round_history
            for r in rnd.responses
        ]
    if result.errors:
        data["errors"] = [
            {
                "provider": e.provider,
                "message": e.message,
                "category": e.category,
                "retryable": e.retryable,
                "round": e.round_number,
                "stage": e.stage,
            }
            for e in result.errors
        ]
    return data


def print_round_summary(round_num: int, responses: list[ModelResponse]) -> None:
    """Print a brief summary of round responses to the console."""
    console.print(Rule(f"[bold cyan]Round {round_num} Summary[/bold cyan]"))
    for resp in responses:
        preview = _response_preview(resp)
        console.print(
            Panel(
                Text(preview),
                title=f"[bold]{resp.provider}[/bold] ({resp.model})",
                subtitle=f"{resp.latency_sec:.1f}s",
                border_style="dim",
            )
        )


def print_errors(errors: list[ErrorRecord]) -> None:
    if not errors:
        return
    console.print(Rule("[bold yellow]Provider Failures[/bold yellow]"))
    for record in errors:
        console.print(Text(_error_line(record), style="yellow"))


def print_consensus(result: DeliberationResult) -> None:
    """Print the consensus to the console using Rich markdown."""
    console.print(Rule("[bold green]Hivemind Consensus[/bold green]"))
    answered = {r.provider for rnd in result.round_history for r in rnd.responses}
    console.print(
        Text(
            f"Judge: {result.judge or 'none (single response)'} | "
            f"Providers: {len(answered)}/{len(result.providers)} answered | "
            f"Rounds: {result.rounds} | "
            f"Confidence: {result.analysis.confidence:.2f} | "
            f"Duration: {result.total_duration_sec:.1f}s",
            style="dim",
        )
    )
    if result.analysis.parse_failed:
        console.print(Text("Judge verdict could not be parsed; divergences assumed.", style="yellow"))
    console.print(Markdown(result.consensus))


def print_usage(snapshot: dict[str, Any]) -> None:
    """Print session and monthly usage tables."""
    session = snapshot["session"]
    monthly = snapshot["monthly"]
    for title, block in (
        (f"Session ({format_duration(session['duration_sec'])})", session),
        (f"Month {monthly['month']}", monthly),
    ):
        table = Table(title=title)
        table.add_column("Provider")
        table.add_column("Requests", justify="right")
        table.add_column("Input", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("Cost", justify="right")
        for name, usage in block["providers"].items():
            table.add_row(
                name,
                str(usage["requests"]),
                format_tokens(usage["input_tokens"]),
                format_tokens(usage["output_tokens"]),
                format_cost(usage["cost"]),
            )
        table.add_row(
            "[bold]total[/bold]",
            str(block["total_requests"]),
            "",
            format_tokens(block["total_tokens"]),
            format_cost(block["total_cost"]),
        )
        console.print(table)


def save_to_file(result: DeliberationResult, output_dir: Path, slug_override: str | None = None) -> Path:
    """Save the full deliberation transcript as a markdown file.

    Args:
        result: The completed DeliberationResult.
        output_dir: Directory to save the file in.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the question text.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(result.question)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    analysis = result.analysis
    lines: list[str] = [
        f"# Hivemind: {result.question[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Providers:** {', '.join(result.providers)}",
        f"**Judge:** {result.judge or 'none (single response)'}",
        f"**Rounds:** {result.rounds}",
        f"**Consensus:** {'yes' if analysis.has_consensus else 'no'} (confidence {analysis.confidence:.2f})",
        f"**Duration:** {result.total_duration_sec:.1f}s",
        "",
        "---",
        "",
    ]

    for rnd in result.round_history:
        round_label = "Initial Responses" if rnd.number == 1 else "Refinement"
        lines.append(f"## Round {rnd.number}: {round_label}")
        lines.append("")
        for resp in rnd.responses:
            lines.append(f"### {resp.provider.title()} ({resp.model})")
            lines.append("")
            lines.append(resp.content)
            lines.append("")
            lines.append(f"*Latency: {resp.latency_sec:.2f}s*")
            lines.append("")

    if analysis.agreements or analysis.divergences:
        lines += ["## Analysis", ""]
        lines += [f"- Agreement: {a}" for a in analysis.agreements]
        lines += [f"- Divergence: {d}" for d in analysis.divergences]
        lines.append("")

    if result.errors:
        lines += ["## Provider Failures", ""]
        lines += [f"- {_error_line(e)}" for e in result.errors]
        lines.append("")

    lines += [
        "## Consensus",
        "",
        result.consensus,
        "",
    ]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Deliberation saved to: %s", filepath)
    return filepath
