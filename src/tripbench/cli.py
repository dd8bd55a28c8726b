from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tripbench.client import PROVIDERS, GenerationClient
from tripbench.config import Settings
from tripbench.errors import TripBenchError
from tripbench.output import OUTPUT_FORMATS, render_session, render_sessions, render_telemetry
from tripbench.preferences import parse_target_id
from tripbench.service import BenchmarkService
from tripbench.store import BenchmarkStore, FileStore
from tripbench.template import default_template, load_template, scenario_from_mask

app = typer.Typer(no_args_is_help=True)
console = Console()

DEFAULT_STORE_PATH = Path.home() / ".tripbench" / "store.json"

T = TypeVar("T")


def _configure_logging(settings: Settings, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _open_store(settings: Settings) -> BenchmarkStore:
    return FileStore(settings.store_path or DEFAULT_STORE_PATH)


def _check_format(output_format: str) -> None:
    if output_format.lower() not in OUTPUT_FORMATS:
        raise typer.BadParameter("Output must be one of: table, json, csv.")


def _execute(
    action: Callable[[BenchmarkService], Awaitable[T]],
    verbose: bool = False,
) -> T:
    settings = Settings()
    _configure_logging(settings, verbose)

    async def _run() -> T:
        store = _open_store(settings)
        async with GenerationClient(settings) as client:
            service = BenchmarkService(store, client, settings)
            result = await action(service)
            await service.runner.drain()
            return result

    try:
        return asyncio.run(_run())
    except TripBenchError as exc:
        console.print(f"[red]{exc.code}: {exc.message}[/red]")
        if exc.details:
            console.print(f"[dim]{exc.details}[/dim]")
        raise typer.Exit(code=1) from exc


def _parse_targets(values: list[str]) -> list[dict[str, str]]:
    targets = []
    for value in values:
        parsed = parse_target_id(value)
        if parsed is None:
            raise typer.BadParameter(f"Targets look like provider:model, got '{value}'.")
        targets.append({"provider": parsed[0], "model": parsed[1]})
    return targets


@app.command()
def run(
    prompt: str | None = typer.Option(None, "--prompt", "-p", help="Free-text trip request"),
    preset: str | None = typer.Option(None, "--preset", help="Scenario preset id from preferences"),
    template: Path | None = typer.Option(None, "--template", "-t", help="Prompt template rendered from the preset"),
    targets: list[str] = typer.Option([], "--model", "-m", help="Targets as provider:model (default: preferences)"),
    run_count: int = typer.Option(1, "--runs", "-n", help="Runs per target (1-3)"),
    concurrency: int = typer.Option(5, "--concurrency", "-c", help="Parallel runs (1-5)"),
    session_id: str | None = typer.Option(None, "--session", "-s", help="Append runs to an existing session"),
    name: str | None = typer.Option(None, "--name", help="Session name"),
    start_date: str | None = typer.Option(None, "--start-date", help="Trip start date (YYYY-MM-DD)"),
    round_trip: bool | None = typer.Option(None, "--round-trip/--one-way", help="Close the loop back to the first city"),
    output_format: str = typer.Option("table", "--output", "-o", help="table|json|csv"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Benchmark itinerary generation across providers and models."""
    _check_format(output_format)
    if not prompt and not preset:
        raise typer.BadParameter("Pass --prompt or --preset.")

    async def _run(service: BenchmarkService) -> dict[str, Any]:
        preferences = (await service.preferences())["preferences"]
        if prompt:
            scenario: dict[str, Any] = {"prompt": prompt}
        else:
            match = next((item for item in preferences["presets"] if item["id"] == preset), None)
            if match is None:
                raise typer.BadParameter(f"Unknown preset '{preset}'.")
            renderer = load_template(template) if template else default_template()
            built = scenario_from_mask(match["mask"], renderer)
            scenario = {
                "prompt": built.prompt,
                "startDate": built.start_date,
                "roundTrip": built.round_trip,
                "input": built.input,
            }
        if start_date:
            scenario["startDate"] = start_date
        if round_trip is not None:
            scenario["roundTrip"] = round_trip

        chosen = _parse_targets(targets) if targets else _parse_targets(preferences["modelTargets"])
        console.print(f"[dim]Running {len(chosen)} target(s) x {run_count} run(s)...[/dim]")
        body = {
            "scenario": scenario,
            "targets": chosen,
            "runCount": run_count,
            "concurrency": concurrency,
            "sessionId": session_id,
            "sessionName": name,
        }
        return await service.run(body)

    render_session(_execute(_run, verbose), output_format)


@app.command()
def get(
    session: str | None = typer.Argument(None, help="Session id or share token (omit to list recent sessions)"),
    output_format: str = typer.Option("table", "--output", "-o", help="table|json|csv"),
) -> None:
    """Show a session with its runs, or list recent sessions."""
    _check_format(output_format)
    payload = _execute(lambda service: service.get(session))
    if session:
        render_session(payload, output_format)
    else:
        render_sessions(payload, output_format)


@app.command()
def cancel(
    run_id: str | None = typer.Option(None, "--run", "-r", help="Run id to cancel"),
    session_id: str | None = typer.Option(None, "--session", "-s", help="Cancel every active run in a session"),
) -> None:
    """Cancel queued or running runs."""
    payload = _execute(lambda service: service.cancel({"runId": run_id, "sessionId": session_id}))
    console.print(f"Cancelled {payload['cancelled']} run(s).")
    render_session(payload, "table")


@app.command()
def rate(
    run_id: str = typer.Argument(..., help="Run id"),
    rating: str = typer.Argument(..., help="good|medium|bad|none"),
) -> None:
    """Record a satisfaction rating on a run."""
    value = None if rating.lower() in ("none", "null", "clear") else rating
    payload = _execute(lambda service: service.rate({"runId": run_id, "rating": value}))
    console.print(f"Rated {payload['run']['label']} #{payload['run']['run_index']}: {payload['run']['satisfaction_rating']}")


@app.command()
def cleanup(
    session_id: str = typer.Argument(..., help="Session id"),
    mode: str = typer.Option("both", "--mode", help="delete-linked-trips|delete-session-data|both"),
) -> None:
    """Delete generated trips and/or session data."""
    payload = _execute(lambda service: service.cleanup({"sessionId": session_id, "mode": mode}))
    deleted = payload["deleted"]
    console.print(f"Deleted {deleted['trips']} trip(s), {deleted['runs']} run(s), {deleted['sessions']} session(s).")


@app.command()
def telemetry(
    source: str = typer.Option("all", "--source", help="all|create_trip|benchmark"),
    provider: str | None = typer.Option(None, "--provider", help="Only this provider"),
    window_hours: int = typer.Option(168, "--window", "-w", help="Look-back window in hours (1-2160)"),
    output_format: str = typer.Option("table", "--output", "-o", help="table|json|csv"),
) -> None:
    """Summarize generation telemetry."""
    _check_format(output_format)
    payload = _execute(
        lambda service: service.telemetry({"source": source, "provider": provider, "windowHours": window_hours})
    )
    render_telemetry(payload, output_format)


@app.command()
def export(
    run_id: str | None = typer.Option(None, "--run", "-r", help="Export one run as JSON"),
    session: str | None = typer.Option(None, "--session", "-s", help="Export a session as ZIP"),
    include_logs: bool = typer.Option(False, "--include-logs", help="Add scenario, prompt and run logs"),
    directory: Path = typer.Option(Path("."), "--dir", "-d", help="Output directory"),
) -> None:
    """Write run or session exports to disk."""
    query = {"run": run_id, "session": session, "includeLogs": include_logs}
    exported = _execute(lambda service: service.export(query))
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / exported.filename
    target.write_bytes(exported.content)
    console.print(f"Wrote {target} ({len(exported.content)} bytes)")


@app.command()
def preferences(
    update: Path | None = typer.Option(None, "--update", "-u", help="JSON file with preferences to save"),
) -> None:
    """Show or update benchmark preferences."""
    body = json.loads(update.read_text()) if update else None
    payload = _execute(lambda service: service.preferences(body))
    prefs = payload["preferences"]
    console.print("[bold]Targets:[/bold] " + ", ".join(prefs["modelTargets"]))
    table = Table(title="Scenario presets")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Destinations")
    for item in prefs["presets"]:
        marker = " *" if item["id"] == prefs["selectedPresetId"] else ""
        table.add_row(item["id"] + marker, item["name"], item["kind"], item["mask"]["destinations"])
    console.print(table)


@app.command()
def models() -> None:
    """List the enabled provider models."""
    table = Table(title="Enabled Models")
    table.add_column("Target")
    table.add_column("Provider")
    table.add_column("Input $/1M", justify="right")
    table.add_column("Output $/1M", justify="right")
    for name, provider in PROVIDERS.items():
        for model in sorted(provider.allowed_models):
            pricing = provider.pricing.get(model)
            table.add_row(
                f"{name}:{model}",
                provider.display_name,
                f"{pricing.input:.2f}" if pricing else "n/a",
                f"{pricing.output:.2f}" if pricing else "n/a",
            )
    console.print(table)
