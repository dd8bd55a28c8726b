from __future__ import annotations

import csv
import json
import sys
from typing import Any, Iterable

from rich.console import Console
from rich.table import Table
from rich.text import Text

OUTPUT_FORMATS = ("table", "json", "csv")

_STATUS_STYLES = {"completed": "green", "failed": "red", "running": "yellow", "queued": "dim"}

_RUN_FIELDS = [
    "id",
    "provider",
    "model",
    "run_index",
    "status",
    "latency_ms",
    "schema_valid",
    "cost_usd",
    "trip_id",
    "satisfaction_rating",
    "error_message",
]

_MODEL_FIELDS = [
    "provider",
    "model",
    "total",
    "success",
    "failed",
    "success_rate",
    "average_latency_ms",
    "average_cost_usd",
    "total_cost_usd",
    "cost_per_second_usd",
]


def render_session(payload: dict[str, Any], output_format: str) -> None:
    output_format = output_format.lower()
    if output_format == "json":
        _render_json(payload)
    elif output_format == "csv":
        _render_csv(payload.get("runs", []), _RUN_FIELDS)
    else:
        _render_runs_table(payload)


def render_sessions(payload: dict[str, Any], output_format: str) -> None:
    sessions = payload.get("sessions", [])
    output_format = output_format.lower()
    if output_format == "json":
        _render_json(payload)
    elif output_format == "csv":
        _render_csv(sessions, ["id", "name", "share_token", "flow", "created_at"])
    else:
        table = Table(title="Recent Benchmark Sessions")
        table.add_column("Session")
        table.add_column("Name")
        table.add_column("Share token")
        table.add_column("Flow")
        table.add_column("Created")
        for session in sessions:
            table.add_row(
                session["id"], session.get("name") or "", session["share_token"], session["flow"], session["created_at"]
            )
        Console().print(table)


def render_telemetry(payload: dict[str, Any], output_format: str) -> None:
    output_format = output_format.lower()
    if output_format == "json":
        _render_json(payload)
    elif output_format == "csv":
        _render_csv(payload.get("models", []), _MODEL_FIELDS)
    else:
        _render_telemetry_tables(payload)


def _render_runs_table(payload: dict[str, Any]) -> None:
    console = Console()
    session = payload.get("session") or {}
    title = session.get("name") or session.get("id") or "Benchmark Runs"
    table = Table(title=f"{title}")
    table.add_column("Target")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Valid")
    table.add_column("Cost", justify="right")
    table.add_column("Error")

    for run in payload.get("runs", []):
        table.add_row(
            run["label"],
            str(run["run_index"]),
            Text(run["status"], style=_STATUS_STYLES.get(run["status"], "")),
            _format_latency(run.get("latency_ms")),
            _format_flag(run.get("schema_valid")),
            _format_cost(run.get("cost_usd")),
            _clip(run.get("error_message") or "", 60),
        )
    console.print(table)

    summary = payload.get("summary")
    if summary:
        console.print(
            f"[dim]{summary['completed']}/{summary['total']} completed, {summary['failed']} failed, "
            f"{summary['running']} running, {summary['queued']} queued | "
            f"avg latency {_format_latency(summary.get('average_latency_ms'))} | "
            f"total cost {_format_cost(summary.get('total_cost_usd'))}[/dim]"
        )
    if session.get("share_token"):
        console.print(f"[dim]Share token: {session['share_token']}[/dim]")


def _render_telemetry_tables(payload: dict[str, Any]) -> None:
    console = Console()
    summary = payload["summary"]
    filters = payload.get("filters", {})
    console.print(
        f"[bold]{summary['total']}[/bold] events over {filters.get('window_hours')}h "
        f"(source={filters.get('source')}, provider={filters.get('provider') or 'all'}) | "
        f"success rate {summary['success_rate']:.2f}% | "
        f"avg latency {_format_latency(summary.get('average_latency_ms'))} | "
        f"total cost {_format_cost(summary.get('total_cost_usd'))}"
    )

    table = Table(title="Models")
    table.add_column("Model")
    table.add_column("Runs", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg latency", justify="right")
    table.add_column("Avg cost", justify="right")
    table.add_column("Cost/s", justify="right")
    for point in payload.get("models", []):
        table.add_row(
            point["key"],
            str(point["total"]),
            f"{point['success_rate']:.1f}%",
            _format_latency(point.get("average_latency_ms")),
            _format_cost(point.get("average_cost_usd")),
            _format_cost(point.get("cost_per_second_usd")),
        )
    console.print(table)

    rankings = payload.get("rankings", {})
    for name, title in (("fastest", "Fastest"), ("cheapest", "Cheapest"), ("most_efficient", "Most efficient")):
        entries = rankings.get(name) or []
        if entries:
            console.print(f"[bold]{title}:[/bold] " + ", ".join(entry["key"] for entry in entries))


def _render_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2))
    sys.stdout.write("\n")


def _render_csv(rows: Iterable[dict[str, Any]], fieldnames: list[str]) -> None:
    writer = csv.DictWriter(sys.stdout, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)


def _format_latency(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.0f}ms"


def _format_cost(cost: float | None) -> str:
    if cost is None:
        return "n/a"
    return f"${cost:.4f}"


def _format_flag(value: bool | None) -> Text:
    if value is None:
        return Text("-", style="dim")
    return Text("yes", style="green") if value else Text("no", style="red")


def _clip(value: str, limit: int) -> str:
    return value if len(value) <= limit else value[: limit - 3] + "..."
