from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Union

from tripbench.client import GenerationClient
from tripbench.durations import round_half_up
from tripbench.errors import ProviderGenerationError, StoreError
from tripbench.models import (
    CANCELLED_BY_USER,
    BenchmarkRun,
    BenchmarkScenario,
    BenchmarkSession,
    BenchmarkTarget,
    CanonicalTrip,
    GenerationMeta,
    ProviderUsage,
    RunStatus,
    RunSummary,
    TelemetryEvent,
    ValidationResult,
    utcnow,
)
from tripbench.normalizer import build_trip
from tripbench.store import BenchmarkStore
from tripbench.telemetry import TelemetryRecorder
from tripbench.validator import validate_itinerary

logger = logging.getLogger(__name__)

MAX_RUN_COUNT = 3
MAX_CONCURRENCY = 5
ERROR_DETAILS_LIMIT = 5_000
STORE_ERROR_LIMIT = 600
BACKGROUND_FAILURE_MESSAGE = "Benchmark execution failed unexpectedly before this run finished."


@dataclass(frozen=True)
class Completed:
    latency_ms: int
    validation: ValidationResult
    meta: GenerationMeta
    raw_output: dict[str, Any]
    trip: CanonicalTrip


@dataclass(frozen=True)
class Failed:
    message: str
    latency_ms: int | None = None
    validation: ValidationResult | None = None
    raw_output: dict[str, Any] | None = None


@dataclass(frozen=True)
class Cancelled:
    latency_ms: int | None = None


RunOutcome = Union[Completed, Failed, Cancelled]


def outcome_changes(outcome: RunOutcome, finished_at: datetime | None = None) -> dict[str, Any]:
    """Translate an outcome into the persisted run fields."""
    changes: dict[str, Any] = {"finished_at": finished_at or utcnow(), "latency_ms": outcome.latency_ms}
    if isinstance(outcome, Cancelled):
        changes.update(status=RunStatus.FAILED, error_message=CANCELLED_BY_USER)
    elif isinstance(outcome, Failed):
        changes.update(status=RunStatus.FAILED, error_message=outcome.message)
        if outcome.validation is not None:
            changes.update(
                schema_valid=outcome.validation.schema_valid,
                validation_checks=outcome.validation.checks,
                validation_errors=outcome.validation.errors,
            )
        if outcome.raw_output is not None:
            changes["raw_output"] = outcome.raw_output
    else:
        trip = outcome.trip.model_dump(mode="json")
        changes.update(
            status=RunStatus.COMPLETED,
            schema_valid=outcome.validation.schema_valid,
            validation_checks=outcome.validation.checks,
            validation_errors=outcome.validation.errors,
            usage=outcome.meta.usage,
            cost_usd=outcome.meta.usage.estimated_cost_usd,
            raw_output=outcome.raw_output,
            normalized_trip=trip,
            trip_id=outcome.trip.id,
            trip_ai_meta=trip["ai_meta"],
            error_message=None,
        )
    return changes


def is_run_cancelled(run: BenchmarkRun | None) -> bool:
    return run is not None and run.status is RunStatus.FAILED and (run.error_message or "").startswith(
        CANCELLED_BY_USER
    )


def is_run_active(run: BenchmarkRun | None) -> bool:
    return run is not None and run.status in (RunStatus.QUEUED, RunStatus.RUNNING)


def cancelled_changes(run: BenchmarkRun, now: datetime | None = None) -> dict[str, Any]:
    now = now or utcnow()
    latency = run.latency_ms
    if latency is None and run.started_at is not None:
        latency = max(0, round((now - run.started_at).total_seconds() * 1000))
    return outcome_changes(Cancelled(latency), finished_at=now)


def format_error_details(raw: str, limit: int = ERROR_DETAILS_LIMIT) -> str:
    limit = max(200, limit)
    if not raw.strip():
        return "No provider details returned"
    try:
        text = json.dumps(json.loads(raw))
    except ValueError:
        text = raw
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [truncated]"


def summarize_runs(runs: list[BenchmarkRun]) -> RunSummary:
    latencies = [run.latency_ms for run in runs if run.status is RunStatus.COMPLETED and run.latency_ms is not None]
    costs = [run.cost_usd for run in runs if run.cost_usd is not None]
    return RunSummary(
        total=len(runs),
        completed=sum(1 for run in runs if run.status is RunStatus.COMPLETED),
        failed=sum(1 for run in runs if run.status is RunStatus.FAILED),
        running=sum(1 for run in runs if run.status is RunStatus.RUNNING),
        queued=sum(1 for run in runs if run.status is RunStatus.QUEUED),
        average_latency_ms=round_half_up(math.fsum(latencies) / len(latencies)) if latencies else None,
        total_cost_usd=round(math.fsum(costs), 6),
    )


def plan_runs(
    session: BenchmarkSession,
    targets: list[BenchmarkTarget],
    existing: list[BenchmarkRun],
    run_count: int,
    scenario: BenchmarkScenario | None = None,
) -> list[BenchmarkRun]:
    """Expand targets into queued runs, continuing run_index after existing runs of the same pair.

    Each run snapshots the scenario it executes; it defaults to the session scenario.
    """
    last_index: dict[tuple[str, str], int] = {}
    for run in existing:
        key = (run.provider, run.model)
        last_index[key] = max(last_index.get(key, 0), run.run_index)

    snapshot = (scenario or session.scenario).model_dump(mode="json", exclude_none=True)
    runs = []
    for target in targets:
        for _ in range(run_count):
            index = last_index.get(target.key, 0) + 1
            last_index[target.key] = index
            runs.append(
                BenchmarkRun(
                    session_id=session.id,
                    provider=target.provider,
                    model=target.model,
                    label=target.run_label,
                    run_index=index,
                    request_payload={"scenario": snapshot, "target": target.model_dump(exclude_none=True)},
                )
            )
    return runs


def run_scenario(session: BenchmarkSession, run: BenchmarkRun) -> BenchmarkScenario:
    snapshot = run.request_payload.get("scenario")
    if isinstance(snapshot, dict) and snapshot.get("prompt"):
        return BenchmarkScenario.model_validate(snapshot)
    return session.scenario


def clamp_run_count(value: int | None) -> int:
    return max(1, min(MAX_RUN_COUNT, value or 1))


def clamp_concurrency(value: int | None) -> int:
    return max(1, min(MAX_CONCURRENCY, value or MAX_CONCURRENCY))


class BenchmarkRunner:
    """Owns run state transitions and the worker pool that executes them."""

    def __init__(
        self,
        store: BenchmarkStore,
        client: GenerationClient,
        telemetry: TelemetryRecorder | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.telemetry = telemetry or TelemetryRecorder(store)
        self._background: set[asyncio.Task[None]] = set()

    async def create_runs(
        self,
        session: BenchmarkSession,
        targets: list[BenchmarkTarget],
        run_count: int = 1,
        scenario: BenchmarkScenario | None = None,
    ) -> list[BenchmarkRun]:
        existing = await self.store.list_runs(session.id)
        planned = plan_runs(session, targets, existing, clamp_run_count(run_count), scenario)
        return await self.store.create_runs(planned)

    async def run_benchmark(
        self,
        session: BenchmarkSession,
        targets: list[BenchmarkTarget],
        run_count: int = 1,
        concurrency: int = MAX_CONCURRENCY,
        scenario: BenchmarkScenario | None = None,
    ) -> list[BenchmarkRun]:
        runs = await self.create_runs(session, targets, run_count, scenario)
        await self.execute_guarded(session, runs, concurrency, reraise=True)
        return await self.refresh(runs)

    async def refresh(self, runs: list[BenchmarkRun]) -> list[BenchmarkRun]:
        refreshed = []
        for run in runs:
            latest = await self.store.get_run(run.id)
            refreshed.append(latest or run)
        return refreshed

    async def execute(self, session: BenchmarkSession, runs: list[BenchmarkRun], concurrency: int) -> None:
        if not runs:
            return
        queue: asyncio.Queue[BenchmarkRun] = asyncio.Queue()
        for run in runs:
            queue.put_nowait(run)
        worker_count = min(clamp_concurrency(concurrency), len(runs))
        logger.info("Executing %d run(s) for session %s with %d worker(s)", len(runs), session.id, worker_count)
        workers = [asyncio.create_task(self._worker(session, queue)) for _ in range(worker_count)]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    def start_background(
        self,
        session: BenchmarkSession,
        runs: list[BenchmarkRun],
        concurrency: int,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(self.execute_guarded(session, runs, concurrency))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background))

    async def execute_guarded(
        self,
        session: BenchmarkSession,
        runs: list[BenchmarkRun],
        concurrency: int,
        *,
        reraise: bool = False,
    ) -> None:
        """Execute runs; if the pool crashes, fail every run that is still active."""
        try:
            await self.execute(session, runs, concurrency)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Benchmark execution failed for session %s", session.id)
            await self.fail_remaining(runs, str(exc) or BACKGROUND_FAILURE_MESSAGE)
            if reraise:
                raise

    async def fail_remaining(self, runs: list[BenchmarkRun], message: str) -> None:
        for run in runs:
            try:
                current = await self.store.get_run(run.id)
                if is_run_active(current):
                    await self.store.update_run(run.id, outcome_changes(Failed(message, current.latency_ms)))
            except StoreError as exc:
                logger.error("Could not mark run %s as failed: %s", run.id, exc.message)

    async def cancel_runs(self, runs: list[BenchmarkRun]) -> list[BenchmarkRun]:
        now = utcnow()
        updated = []
        for run in runs:
            if is_run_active(run):
                run = await self.store.update_run(run.id, cancelled_changes(run, now)) or run
                logger.info("Cancelled run %s (%s #%d)", run.id, run.label, run.run_index)
            updated.append(run)
        return updated

    async def _worker(self, session: BenchmarkSession, queue: asyncio.Queue[BenchmarkRun]) -> None:
        while True:
            try:
                run = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process(session, run)

    async def _is_cancelled(self, run_id: str) -> bool:
        return is_run_cancelled(await self.store.get_run(run_id))

    async def _process(self, session: BenchmarkSession, run: BenchmarkRun) -> None:
        if await self._is_cancelled(run.id):
            return
        try:
            await self.store.update_run(
                run.id, {"status": RunStatus.RUNNING, "started_at": utcnow(), "error_message": None}
            )
        except StoreError as exc:
            await self._fail_after_store_error(run, exc, None)
            return
        if await self._is_cancelled(run.id):
            return

        started = time.perf_counter()
        try:
            outcome = await self._generate(session, run, started)
        except Exception as exc:  # noqa: BLE001
            latency = _elapsed_ms(started)
            message = str(exc) or "Unexpected benchmark run error"
            logger.exception("Run %s failed unexpectedly", run.id)
            await self._record(
                session,
                run,
                status="failed",
                latency_ms=latency,
                http_status=500,
                error_code="BENCHMARK_RUN_UNEXPECTED_ERROR",
                error_message=message,
                reason="unexpected_exception",
            )
            outcome = Failed(message, latency)

        if isinstance(outcome, Cancelled) or await self._is_cancelled(run.id):
            return
        try:
            await self.store.update_run(run.id, outcome_changes(outcome))
        except StoreError as exc:
            await self._fail_after_store_error(run, exc, outcome.latency_ms)
            return
        logger.info("Run %s (%s #%d) finished: %s", run.id, run.label, run.run_index, type(outcome).__name__.lower())
        if isinstance(outcome, Completed):
            await self._record(
                session,
                run,
                status="success",
                latency_ms=outcome.latency_ms,
                http_status=200,
                meta=outcome.meta,
                reason="completed",
            )

    async def _fail_after_store_error(self, run: BenchmarkRun, exc: StoreError, latency_ms: int | None) -> None:
        message = f"Failed to update benchmark run: {exc.message}"[:STORE_ERROR_LIMIT]
        logger.error("Run %s: %s", run.id, message)
        try:
            await self.store.update_run(run.id, outcome_changes(Failed(message, latency_ms)))
        except StoreError as retry_exc:
            logger.error("Could not mark run %s as failed: %s", run.id, retry_exc.message)

    async def _generate(self, session: BenchmarkSession, run: BenchmarkRun, started: float) -> RunOutcome:
        scenario = run_scenario(session, run)
        try:
            result = await self.client.generate(scenario.prompt, run.provider, run.model)
        except ProviderGenerationError as exc:
            latency = _elapsed_ms(started)
            await self._record(
                session,
                run,
                status="failed",
                latency_ms=latency,
                http_status=exc.status,
                provider_model=exc.failure.provider_model,
                error_code=exc.failure.code,
                error_message=exc.failure.error,
                reason="provider_request_failed",
            )
            details = format_error_details(json.dumps(exc.failure.model_dump(exclude_none=True)))
            return Failed(f"Generation failed ({exc.status}): {details}", latency)

        latency = _elapsed_ms(started)
        meta = result.meta
        if await self._is_cancelled(run.id):
            return Cancelled(latency)

        data = result.data
        if not isinstance(data, dict):
            message = "Provider response did not include a valid data object"
            await self._record(
                session,
                run,
                status="failed",
                latency_ms=latency,
                http_status=200,
                meta=meta,
                error_code="BENCHMARK_OUTPUT_INVALID",
                error_message=message,
                reason="invalid_data_object",
            )
            return Failed(message, latency)

        round_trip = bool(scenario.round_trip)
        validation = validate_itinerary(data, round_trip=round_trip)
        if not validation.schema_valid:
            joined = "; ".join(validation.errors)
            await self._record(
                session,
                run,
                status="failed",
                latency_ms=latency,
                http_status=200,
                meta=meta,
                error_code="BENCHMARK_OUTPUT_VALIDATION_FAILED",
                error_message=joined or "Model output failed validation",
                reason="validation_failed",
                extra={"validationErrorCount": len(validation.errors)},
            )
            return Failed(f"Model output failed validation: {joined}", latency, validation, data)

        trip = build_trip(
            data,
            scenario.start_date or date.today().isoformat(),
            round_trip=round_trip,
            provider=run.provider,
            model=run.model,
            session_id=session.id,
            run_id=run.id,
        )
        try:
            await self.store.save_trip(trip)
        except StoreError as exc:
            message = f"Failed to persist generated trip: {exc.message}"[:STORE_ERROR_LIMIT]
            await self._record(
                session,
                run,
                status="failed",
                latency_ms=latency,
                http_status=502,
                meta=meta,
                error_code="BENCHMARK_TRIP_PERSIST_FAILED",
                error_message=message,
                reason="trip_persist_failed",
            )
            return Failed(message, latency)

        return Completed(latency, validation, meta, data, trip)

    async def _record(
        self,
        session: BenchmarkSession,
        run: BenchmarkRun,
        *,
        status: str,
        latency_ms: int,
        http_status: int,
        reason: str,
        meta: GenerationMeta | None = None,
        provider_model: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        usage = meta.usage if meta else ProviderUsage()
        await self.telemetry.record(
            TelemetryEvent(
                source="benchmark",
                request_id=run.id,
                provider=meta.provider if meta else run.provider,
                model=meta.model if meta else run.model,
                provider_model=provider_model or (meta.provider_model if meta else None),
                status=status,
                latency_ms=latency_ms,
                http_status=http_status,
                error_code=error_code,
                error_message=error_message,
                estimated_cost_usd=usage.estimated_cost_usd,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                benchmark_session_id=session.id,
                benchmark_run_id=run.id,
                metadata={"reason": reason, **(extra or {})},
            )
        )


def _elapsed_ms(started: float) -> int:
    return round((time.perf_counter() - started) * 1000)
