from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from tripbench.client import GenerationClient
from tripbench.config import Settings
from tripbench.errors import NotFoundError, RequestError, StoreError
from tripbench.export import export_run, export_session
from tripbench.models import (
    BenchmarkRun,
    BenchmarkScenario,
    BenchmarkSession,
    BenchmarkTarget,
    utcnow,
)
from tripbench.preferences import normalize_preferences
from tripbench.runner import (
    MAX_CONCURRENCY,
    MAX_RUN_COUNT,
    BenchmarkRunner,
    is_run_active,
    is_run_cancelled,
    summarize_runs,
)
from tripbench.store import BenchmarkStore
from tripbench.telemetry import TelemetryRecorder, build_telemetry_report

logger = logging.getLogger(__name__)

RECENT_SESSION_LIMIT = 25
SATISFACTION_RATINGS = ("good", "medium", "bad")
CLEANUP_MODES = ("delete-linked-trips", "delete-session-data", "both")
FLOWS = ("classic", "wizard", "surprise")

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class ExportFile:
    filename: str
    content: bytes
    media_type: str


def is_uuid(value: str | None) -> bool:
    return bool(value and _UUID_RE.match(value))


def create_share_token() -> str:
    return f"abm_{uuid.uuid4().hex[:20]}"


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _iso_date(value: str) -> str:
    value = value.strip()
    return value if _DATE_RE.match(value) else date.today().isoformat()


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return round(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return _text(value).lower() in ("1", "true", "yes")


def parse_target(value: Any) -> BenchmarkTarget | None:
    if not isinstance(value, dict):
        return None
    provider = _text(value.get("provider")).lower()
    model = _text(value.get("model"))
    if not provider or not model:
        return None
    return BenchmarkTarget(provider=provider, model=model, label=_text(value.get("label")) or None)


def parse_scenario(value: Any) -> BenchmarkScenario | None:
    if not isinstance(value, dict):
        return None
    prompt = _text(value.get("prompt"))
    if not prompt:
        return None
    start_date = value.get("startDate")
    round_trip = value.get("roundTrip")
    payload = value.get("input")
    return BenchmarkScenario(
        prompt=prompt,
        start_date=_iso_date(start_date) if isinstance(start_date, str) else None,
        round_trip=round_trip if isinstance(round_trip, bool) else None,
        input=payload if isinstance(payload, dict) else None,
    )


def _runs_payload(runs: list[BenchmarkRun]) -> list[dict[str, Any]]:
    return [run.model_dump(mode="json") for run in runs]


class BenchmarkService:
    """Request surface over the runner and the store; every method takes and returns plain dicts."""

    def __init__(
        self,
        store: BenchmarkStore,
        client: GenerationClient,
        settings: Settings,
        runner: BenchmarkRunner | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.telemetry_recorder = TelemetryRecorder(store)
        self.runner = runner or BenchmarkRunner(store, client, self.telemetry_recorder)

    async def run(self, body: Any, background: bool = False) -> dict[str, Any]:
        if not isinstance(body, dict):
            raise RequestError("Invalid JSON body", "BENCHMARK_INVALID_BODY")

        scenario = parse_scenario(body.get("scenario"))
        if scenario is None:
            raise RequestError(
                "Missing or invalid scenario. Expected { prompt: string, startDate?: YYYY-MM-DD, roundTrip?: boolean }",
                "BENCHMARK_INVALID_SCENARIO",
            )

        raw_targets = body.get("targets")
        targets = [
            target
            for target in (parse_target(entry) for entry in (raw_targets if isinstance(raw_targets, list) else []))
            if target is not None
        ]
        if not targets:
            raise RequestError("No valid targets provided", "BENCHMARK_INVALID_TARGETS")

        max_runs = max(1, min(MAX_RUN_COUNT, self.settings.max_run_count))
        max_workers = max(1, min(MAX_CONCURRENCY, self.settings.max_concurrency))
        run_count = _int_or_none(body.get("runCount"))
        run_count = max(1, min(max_runs, run_count)) if run_count is not None else 1
        concurrency = _int_or_none(body.get("concurrency"))
        concurrency = max(1, min(max_workers, concurrency)) if concurrency is not None else max_workers

        session_id = _text(body.get("sessionId"))
        if session_id:
            if not is_uuid(session_id):
                raise RequestError("Invalid sessionId", "BENCHMARK_INVALID_SESSION_ID")
            session = await self.store.get_session(session_id)
            if session is None:
                raise NotFoundError("Benchmark session not found", "BENCHMARK_SESSION_NOT_FOUND")
        else:
            flow = body.get("flow") if body.get("flow") in FLOWS else "classic"
            session = BenchmarkSession(
                name=_text(body.get("sessionName")) or None,
                share_token=create_share_token(),
                flow=flow,
                scenario=scenario,
            )
            try:
                session = await self.store.create_session(session)
            except StoreError as exc:
                raise StoreError(
                    "Failed to create benchmark session", "BENCHMARK_SESSION_CREATE_FAILED", details=exc.message
                ) from exc
            logger.info("Created benchmark session %s", session.id)

        try:
            runs = await self.runner.create_runs(session, targets, run_count, scenario)
        except StoreError as exc:
            raise StoreError("Failed to queue benchmark runs", "BENCHMARK_RUN_CREATE_FAILED", details=exc.message) from exc

        if background:
            self.runner.start_background(session, runs, concurrency)
        else:
            await self.runner.execute_guarded(session, runs, concurrency, reraise=True)

        runs = await self.store.list_runs(session.id)
        return {
            "ok": True,
            "async": background,
            "session": session.model_dump(mode="json"),
            "runs": _runs_payload(runs),
            "summary": summarize_runs(runs).model_dump(),
        }

    async def _resolve_session(self, identifier: str) -> BenchmarkSession | None:
        if is_uuid(identifier):
            return await self.store.get_session(identifier)
        return await self.store.find_session_by_share_token(identifier)

    async def get(self, session: str | None = None) -> dict[str, Any]:
        identifier = _text(session)
        if not identifier:
            sessions = await self.store.list_sessions(RECENT_SESSION_LIMIT)
            return {"ok": True, "sessions": [item.model_dump(mode="json") for item in sessions]}

        found = await self._resolve_session(identifier)
        if found is None:
            raise NotFoundError("Benchmark session not found", "BENCHMARK_SESSION_NOT_FOUND")
        runs = await self.store.list_runs(found.id)
        return {
            "ok": True,
            "session": found.model_dump(mode="json"),
            "runs": _runs_payload(runs),
            "summary": summarize_runs(runs).model_dump(),
        }

    async def cancel(self, body: Any) -> dict[str, Any]:
        body = body if isinstance(body, dict) else {}
        run_id = _text(body.get("runId"))
        session_id = _text(body.get("sessionId"))
        if not run_id and not session_id:
            raise RequestError("Missing runId or sessionId for cancellation", "BENCHMARK_CANCEL_INVALID_TARGET")

        if run_id:
            if not is_uuid(run_id):
                raise RequestError("Invalid runId", "BENCHMARK_CANCEL_INVALID_RUN_ID")
            run = await self.store.get_run(run_id)
            if run is None:
                raise NotFoundError("Benchmark run not found", "BENCHMARK_RUN_NOT_FOUND")
            session_id = run.session_id
            candidates = [run]
        else:
            if not is_uuid(session_id):
                raise RequestError("Invalid sessionId", "BENCHMARK_CANCEL_INVALID_SESSION_ID")
            candidates = await self.store.list_runs(session_id)

        doomed = [run for run in candidates if is_run_active(run) and not is_run_cancelled(run)]
        await self.runner.cancel_runs(doomed)

        session = await self.store.get_session(session_id)
        runs = await self.store.list_runs(session_id)
        return {
            "ok": True,
            "cancelled": len(doomed),
            "session": session.model_dump(mode="json") if session else None,
            "runs": _runs_payload(runs),
            "summary": summarize_runs(runs).model_dump(),
        }

    async def rate(self, body: Any) -> dict[str, Any]:
        body = body if isinstance(body, dict) else {}
        run_id = _text(body.get("runId"))
        if not is_uuid(run_id):
            raise RequestError("Missing or invalid runId", "BENCHMARK_RATE_INVALID_RUN_ID")
        if "rating" not in body:
            raise RequestError("Missing required field: rating", "BENCHMARK_RATE_INVALID_RATING")

        raw_rating = body["rating"]
        rating = _text(raw_rating).lower() or None
        if raw_rating is not None and rating not in SATISFACTION_RATINGS:
            raise RequestError(
                "Invalid rating. Allowed values: good, medium, bad, or null.", "BENCHMARK_RATE_INVALID_RATING"
            )

        if await self.store.get_run(run_id) is None:
            raise NotFoundError("Benchmark run not found", "BENCHMARK_RUN_NOT_FOUND")
        try:
            run = await self.store.update_run(
                run_id,
                {"satisfaction_rating": rating, "satisfaction_updated_at": utcnow() if rating else None},
            )
        except StoreError as exc:
            raise StoreError(
                "Failed to save benchmark run rating", "BENCHMARK_RATE_UPDATE_FAILED", details=exc.message
            ) from exc
        if run is None:
            raise NotFoundError("Benchmark run not found after update", "BENCHMARK_RUN_NOT_FOUND")
        return {"ok": True, "run": run.model_dump(mode="json")}

    async def cleanup(self, body: Any) -> dict[str, Any]:
        body = body if isinstance(body, dict) else {}
        session_id = _text(body.get("sessionId"))
        mode = body.get("mode").strip() if isinstance(body.get("mode"), str) else "both"
        if not is_uuid(session_id):
            raise RequestError("Missing or invalid sessionId", "BENCHMARK_CLEANUP_INVALID_SESSION")
        if mode not in CLEANUP_MODES:
            raise RequestError("Invalid cleanup mode", "BENCHMARK_CLEANUP_INVALID_MODE")

        deleted = {"trips": 0, "runs": 0, "sessions": 0}
        if mode in ("delete-linked-trips", "both"):
            deleted["trips"] = await self._delete(
                self.store.delete_trips, session_id, "Failed to delete benchmark-linked trips", "TRIPS"
            )
        if mode in ("delete-session-data", "both"):
            deleted["runs"] = await self._delete(
                self.store.delete_runs, session_id, "Failed to delete benchmark runs", "RUNS"
            )
            deleted["sessions"] = await self._delete(
                self.store.delete_session, session_id, "Failed to delete benchmark session", "SESSION"
            )
        logger.info("Cleanup %s for session %s: %s", mode, session_id, deleted)
        return {"ok": True, "deleted": deleted, "mode": mode, "session_id": session_id}

    @staticmethod
    async def _delete(operation, session_id: str, message: str, kind: str) -> int:
        try:
            return await operation(session_id)
        except StoreError as exc:
            raise StoreError(message, f"BENCHMARK_CLEANUP_{kind}_FAILED", details=exc.message[:600]) from exc

    async def preferences(self, body: Any = None) -> dict[str, Any]:
        try:
            existing = await self.store.get_preferences()
        except StoreError as exc:
            raise StoreError(
                "Failed to load benchmark preferences", "BENCHMARK_PREFERENCES_FETCH_FAILED", details=exc.message
            ) from exc

        if body is None:
            normalized = normalize_preferences(existing.model_dump(mode="json") if existing else None)
            if existing is not None:
                normalized = normalized.model_copy(update={"updated_at": existing.updated_at})
                return {"ok": True, "preferences": normalized.model_dump(mode="json", by_alias=True)}
        else:
            normalized = normalize_preferences(body)

        try:
            saved = await self.store.save_preferences(normalized.model_copy(update={"updated_at": utcnow()}))
        except StoreError as exc:
            raise StoreError(
                "Failed to update benchmark preferences", "BENCHMARK_PREFERENCES_SAVE_FAILED", details=exc.message
            ) from exc
        return {"ok": True, "preferences": saved.model_dump(mode="json", by_alias=True)}

    async def telemetry(self, query: Any = None) -> dict[str, Any]:
        query = query if isinstance(query, dict) else {}
        report = await build_telemetry_report(
            self.store,
            source=query.get("source"),
            provider=query.get("provider"),
            window_hours=query.get("windowHours"),
        )
        return {"ok": True, **report.model_dump(mode="json")}

    async def export(self, query: Any) -> ExportFile:
        query = query if isinstance(query, dict) else {}
        run_id = _text(query.get("run"))
        identifier = _text(query.get("session"))

        if run_id:
            run = await self.store.get_run(run_id)
            if run is None:
                raise NotFoundError("Benchmark run not found", "BENCHMARK_RUN_NOT_FOUND")
            filename, text = export_run(run)
            return ExportFile(filename, text.encode("utf-8"), "application/json")

        if not identifier:
            raise RequestError("Missing required query param: run or session", "BENCHMARK_EXPORT_INVALID")
        session = await self._resolve_session(identifier)
        if session is None:
            raise NotFoundError("Benchmark session not found", "BENCHMARK_SESSION_NOT_FOUND")

        runs = await self.store.list_runs(session.id)
        filename, archive = export_session(session, runs, include_logs=_truthy(query.get("includeLogs")))
        return ExportFile(filename, archive, "application/zip")
