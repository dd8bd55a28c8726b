from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

from tripbench.archive import build_zip_archive
from tripbench.models import BenchmarkRun, BenchmarkSession, utcnow
from tripbench.runner import summarize_runs

_UNSAFE_RE = re.compile(r"[^a-z0-9._-]+")

_LOG_FIELDS = (
    "provider",
    "model",
    "run_index",
    "status",
    "started_at",
    "finished_at",
    "latency_ms",
    "schema_valid",
    "validation_errors",
    "usage",
    "cost_usd",
    "error_message",
    "request_payload",
    "raw_output",
    "normalized_trip",
)


def sanitize_filename_segment(value: str) -> str:
    cleaned = re.sub(r"-+", "-", _UNSAFE_RE.sub("-", value.lower())).strip("-")
    return cleaned or "run"


def run_file_name(run: BenchmarkRun) -> str:
    provider = sanitize_filename_segment(run.provider or "provider")
    model = sanitize_filename_segment(run.model or "model")
    return f"{provider}__{model}__run-{run.run_index}.json"


def run_log_file_name(run: BenchmarkRun) -> str:
    return run_file_name(run).removesuffix(".json") + ".log.json"


def _dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _log_row(run: BenchmarkRun) -> dict[str, Any]:
    data = run.model_dump(mode="json")
    return {"run_id": run.id, **{name: data[name] for name in _LOG_FIELDS}}


def export_run(run: BenchmarkRun, now: datetime | None = None) -> tuple[str, str]:
    """Single-run JSON document and its download name."""
    payload = {"run": run.model_dump(mode="json"), "exported_at": (now or utcnow()).isoformat()}
    return f"benchmark-run-{run.id}.json", _dumps(payload)


def export_session(
    session: BenchmarkSession,
    runs: list[BenchmarkRun],
    include_logs: bool = False,
    now: datetime | None = None,
) -> tuple[str, bytes]:
    """Bundle a session's runs (and optionally their logs) into a ZIP archive."""
    now = now or utcnow()
    exported_at = now.isoformat()
    session_ref = {"id": session.id, "share_token": session.share_token, "name": session.name}

    files: list[tuple[str, str]] = []
    for run in runs:
        document = {"session": session_ref, "run": run.model_dump(mode="json"), "exported_at": exported_at}
        files.append((run_file_name(run), _dumps(document)))

    if include_logs:
        scenario = session.scenario
        files.append(("scenario.json", _dumps(scenario.model_dump(mode="json", exclude_none=True))))
        if scenario.prompt.strip():
            files.append(("prompt.txt", scenario.prompt))

        rows = [json.dumps(_log_row(run), ensure_ascii=False) for run in runs]
        files.append(("logs/runs.ndjson", "\n".join(rows) + "\n" if rows else ""))

        for run in runs:
            data = run.model_dump(mode="json")
            detail = {
                **_log_row(run),
                "validation_checks": data["validation_checks"],
                "trip_id": data["trip_id"],
                "trip_ai_meta": data["trip_ai_meta"],
                "exported_at": exported_at,
            }
            files.append((f"logs/{run_log_file_name(run)}", _dumps(detail)))

    manifest = {
        "session": {
            **session_ref,
            "flow": session.flow,
            "created_at": session.created_at.isoformat(),
            "updated_at": session.updated_at.isoformat(),
        },
        "summary": summarize_runs(runs).model_dump(),
        "include_logs": include_logs,
        "exported_at": exported_at,
        "file_count": len(files),
    }
    files.insert(0, ("manifest.json", _dumps(manifest)))

    base = sanitize_filename_segment(session.name or session.id)
    return f"{base}-exports.zip", build_zip_archive(files, now=now.astimezone())
