"""Click CLI: config loading, provider selection, deliberation and output."""

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from hivemind.deliberation import ask as run_ask
from hivemind.errors import DeliberationError
from hivemind.healthcheck import run_health_checks
from hivemind.models import DeliberationStatus, PriorResponse, StreamCallbacks
from hivemind.output import (
    print_consensus,
    print_errors,
    print_round_summary,
    print_usage,
    result_to_dict,
    save_to_file,
)
from hivemind.providers.anthropic import AnthropicProvider
from hivemind.providers.base import AIProvider
from hivemind.providers.gemini import GeminiProvider
from hivemind.providers.openai_provider import OpenAIProvider
from hivemind.usage import UsageTracker, format_cost, format_tokens

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

USER_ENV_FILE = Path.home() / ".config" / "hivemind" / ".env"

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google-genai": GeminiProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


def _parse_model_overrides(values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated provider=model options."""
    overrides: dict[str, str] = {}
    for value in values:
        provider, sep, model = value.partition("=")
        if not sep or not provider.strip() or not model.strip():
            raise click.BadParameter(f"Expected provider=model, got '{value}'", param_hint="--model")
        overrides[provider.strip()] = model.strip()
    return overrides


def _build_all_providers(
    config: AppConfig,
    model_overrides: dict[str, str] | None = None,
) -> dict[str, AIProvider]:
    """Build all providers with an API key. Returns dict keyed by name."""
    model_overrides = model_overrides or {}
    providers: dict[str, AIProvider] = {}
    for name, model_cfg in config.models.items():
        if name not in config.available_providers:
            continue
        provider_class = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_class is None:
            logger.warning("Provider '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        if name in model_overrides:
            model_cfg = dataclasses.replace(model_cfg, model=model_overrides[name])
        try:
            providers[name] = provider_class(model_cfg, config.api_keys[name])
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _determine_panel(config: AppConfig, models_arg: str | None) -> list[str]:
    """--models overrides the configured panel; an empty panel means every model."""
    if models_arg:
        return [m.strip() for m in models_arg.split(",") if m.strip()]
    return config.defaults.panel or list(config.models)


def _load_prior_responses(path: Path) -> list[PriorResponse]:
    """Read a JSON list of {"provider", "content"} objects, skipping malformed entries."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("responses", [])
    if not isinstance(raw, list):
        raise click.BadParameter("Expected a JSON list of responses", param_hint="--previous")
    prior: list[PriorResponse] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        provider = entry.get("provider")
        content = entry.get("content")
        if isinstance(provider, str) and isinstance(content, str):
            prior.append(PriorResponse(provider=provider, content=content))
    return prior


def _build_usage_tracker(config: AppConfig) -> UsageTracker:
    return UsageTracker(config.pricing, config.defaults.usage_file)


def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run key checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(all_providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {escape(short_err)}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the key check.")
        sys.exit(1)

    console.print(
        f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}"
    )
    console.print(f"Working providers: {', '.join(sorted(working))}")

    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _prepare(verbose: bool) -> AppConfig:
    # Model responses may contain characters the Windows console codepage can't encode.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    load_dotenv(USER_ENV_FILE)
    _setup_logging(verbose)
    try:
        return load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)


@click.group()
def main() -> None:
    """Hivemind -- ask several models, let them deliberate, get one answer."""


@main.command("ask")
@click.argument("question", required=False)
@click.option("--file", "question_file", type=click.Path(exists=True, path_type=Path),
              help="Read question from a file")
@click.option("--context-file", type=click.Path(exists=True, path_type=Path),
              help="File whose contents are sent as shared context")
@click.option("--previous", "previous_file", type=click.Path(exists=True, path_type=Path),
              help="JSON file of previous model responses for a follow-up")
@click.option("--max-rounds", default=None, type=click.IntRange(min=1),
              help="Maximum deliberation rounds (default: from config)")
@click.option("--models", default=None, help="Comma-separated provider list, overrides the panel")
@click.option("--model", "model_overrides", multiple=True, help="Override a model: provider=model")
@click.option("--judge", default=None, help="Preferred judge provider (default: from config)")
@click.option("--consensus-only", is_flag=True, help="Only output the consensus")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.option("--output", "output_path", default=None, help="Transcript directory (default: from config)")
@click.option("--no-save", is_flag=True, help="Do not write a markdown transcript")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API key check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def ask_command(
    question: str | None,
    question_file: Path | None,
    context_file: Path | None,
    previous_file: Path | None,
    max_rounds: int | None,
    models: str | None,
    model_overrides: tuple[str, ...],
    judge: str | None,
    consensus_only: bool,
    as_json: bool,
    output_path: str | None,
    no_save: bool,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Ask every configured model and synthesize a consensus.

    \b
    Examples:
      hivemind ask "Should we use REST or GraphQL?"
      hivemind ask "Review this function" --context-file utils.py --max-rounds 2
      hivemind ask "Reconsider" --previous last.json --models openai,google --json
    """
    config = _prepare(verbose)

    if question_file:
        question_text = question_file.read_text(encoding="utf-8").strip()
    elif question:
        question_text = question
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    if not question_text.strip():
        console.print("[bold red]Error:[/bold red] The question is empty.")
        sys.exit(1)

    context = context_file.read_text(encoding="utf-8") if context_file else None
    prior = _load_prior_responses(previous_file) if previous_file else None

    all_providers = _build_all_providers(config, _parse_model_overrides(model_overrides))
    panel_names = _determine_panel(config, models)
    panel = {n: all_providers[n] for n in panel_names if n in all_providers}

    if not panel:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        panel = _check_and_filter_providers(panel)

    judge_preference = list(config.defaults.judge_preference)
    if judge:
        judge_preference = [judge] + [n for n in judge_preference if n != judge]

    usage = _build_usage_tracker(config)
    effective_rounds = max_rounds if max_rounds is not None else config.defaults.max_rounds

    if not as_json:
        console.print(f"\n[bold cyan]Hivemind[/bold cyan]: {len(panel)} models, up to {effective_rounds} rounds")
        console.print(f"Panel: {', '.join(panel)}")
        console.print(f"Question: [italic]{question_text[:80]}{'...' if len(question_text) > 80 else ''}[/italic]\n")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
        disable=as_json,
    ) as progress:
        task = progress.add_task("Querying models...", total=None)

        def on_status(status: DeliberationStatus) -> None:
            progress.update(task, description=status.message)

        try:
            result = asyncio.run(
                run_ask(
                    question_text,
                    list(panel.values()),
                    context=context,
                    prior_responses=prior,
                    max_rounds=effective_rounds,
                    judge_preference=judge_preference,
                    consensus_threshold=config.defaults.consensus_threshold,
                    retry=config.retry,
                    usage=usage,
                    on_status=on_status,
                )
            )
        except DeliberationError as exc:
            progress.stop()
            console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
            sys.exit(1)

    if as_json:
        click.echo(json.dumps(result_to_dict(result, consensus_only=consensus_only), indent=2))
        return

    if not consensus_only:
        for rnd in result.round_history:
            print_round_summary(rnd.number, rnd.responses)
    print_errors(result.errors)
    print_consensus(result)

    session = usage.snapshot()["session"]
    console.print(
        f"\n[dim]{session['total_requests']} calls, "
        f"~{format_tokens(session['total_tokens'])} tokens, "
        f"~{format_cost(session['total_cost'])}[/dim]"
    )

    if not no_save:
        output_dir = Path(output_path) if output_path else config.defaults.output_dir
        saved_path = save_to_file(result, output_dir)
        console.print(f"[dim]Saved to: {saved_path}[/dim]")


@main.command("solo")
@click.argument("provider_name")
@click.argument("question")
@click.option("--model", default=None, help="Model override for this provider")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def solo_command(provider_name: str, question: str, model: str | None, verbose: bool) -> None:
    """Ask a single provider and stream its answer."""
    config = _prepare(verbose)
    overrides = {provider_name: model} if model else {}
    providers = _build_all_providers(config, overrides)
    provider = providers.get(provider_name)
    if provider is None:
        console.print(f"[bold red]Error:[/bold red] Provider '{provider_name}' is not available.")
        sys.exit(1)

    usage = _build_usage_tracker(config)
    callbacks = StreamCallbacks(
        on_token=lambda token: console.print(token, end="", markup=False, highlight=False),
        on_complete=lambda _content: console.print(),
    )
    messages = [{"role": "user", "content": question}]
    try:
        content = asyncio.run(provider.chat(messages, callbacks=callbacks))
    except Exception as exc:
        console.print(f"\n[bold red]Error:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    usage.record_text(provider_name, question, content)


@main.command("status")
@click.option("--offline", is_flag=True, help="Only report which keys are set, skip validation")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def status_command(offline: bool, verbose: bool) -> None:
    """Show which providers have keys and whether the keys are accepted."""
    config = _prepare(verbose)
    providers = _build_all_providers(config)
    results: dict[str, tuple[bool, str]] = {}
    if providers and not offline:
        results = asyncio.run(run_health_checks(providers))

    for name, model_cfg in config.models.items():
        if name not in config.available_providers:
            console.print(f"  [dim]----[/dim] {name}: no key (set {model_cfg.api_key_env})")
        elif name not in results:
            console.print(f"  [cyan]KEY [/cyan] {name} ({model_cfg.model})")
        elif results[name][0]:
            console.print(f"  [green]OK  [/green] {name} ({model_cfg.model})")
        else:
            console.print(f"  [red]FAIL[/red] {name}: {escape(results[name][1])}")

    ready = bool(config.available_providers)
    console.print(f"\nReady: {'yes' if ready else 'no'}")
    if not ready:
        sys.exit(1)


@main.command("usage")
@click.option("--reset", is_flag=True, help="Clear the persisted monthly usage")
def usage_command(reset: bool) -> None:
    """Show token usage and estimated cost for the current month."""
    config = _prepare(verbose=False)
    tracker = _build_usage_tracker(config)
    if reset:
        tracker.reset_monthly()
        console.print("Monthly usage reset.")
        return
    print_usage(tracker.snapshot())


if __name__ == "__main__":
    main()
