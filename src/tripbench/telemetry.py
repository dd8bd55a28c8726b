from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable

from tripbench.durations import round_half_up
from tripbench.models import (
    TelemetryEvent,
    TelemetryModelPoint,
    TelemetryProviderPoint,
    TelemetryRankings,
    TelemetryReport,
    TelemetrySeriesPoint,
    TelemetrySummary,
    utcnow,
)
from tripbench.store import BenchmarkStore

logger = logging.getLogger(__name__)

ERROR_MESSAGE_LIMIT = 800
WINDOW_MIN_HOURS = 1
WINDOW_MAX_HOURS = 24 * 90
WINDOW_DEFAULT_HOURS = 24 * 7
TELEMETRY_SOURCES = ("all", "create_trip", "benchmark")
ROW_LIMIT = 2_000
RECENT_LIMIT = 120
RANKING_LIMIT = 5


class TelemetryRecorder:
    """Best-effort append of telemetry events; a failed write never propagates."""

    def __init__(self, store: BenchmarkStore) -> None:
        self.store = store

    async def record(self, event: TelemetryEvent) -> bool:
        if event.error_message and len(event.error_message) > ERROR_MESSAGE_LIMIT:
            event = event.model_copy(update={"error_message": event.error_message[:ERROR_MESSAGE_LIMIT]})
        if event.latency_ms < 0:
            event = event.model_copy(update={"latency_ms": 0})
        try:
            await self.store.append_event(event)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Dropping telemetry event for %s/%s: %s", event.provider, event.model, exc)
            return False
        return True


def _money(value: float) -> float:
    return round(value, 6)


@dataclass
class _Tally:
    total: int = 0
    success: int = 0
    failed: int = 0
    latencies: list[float] = field(default_factory=list)
    costs: list[float] = field(default_factory=list)
    success_latencies: list[float] = field(default_factory=list)
    success_costs: list[float] = field(default_factory=list)

    def add(self, row: TelemetryEvent) -> None:
        self.total += 1
        succeeded = row.status == "success"
        if succeeded:
            self.success += 1
        else:
            self.failed += 1
        if row.latency_ms is not None and row.latency_ms >= 0:
            self.latencies.append(row.latency_ms)
            if succeeded:
                self.success_latencies.append(row.latency_ms)
        if row.estimated_cost_usd is not None and math.isfinite(row.estimated_cost_usd):
            self.costs.append(row.estimated_cost_usd)
            if succeeded:
                self.success_costs.append(row.estimated_cost_usd)

    @property
    def success_rate(self) -> float:
        return round(self.success / self.total * 100, 2) if self.total else 0.0

    @property
    def total_cost(self) -> float:
        return math.fsum(self.costs)

    @staticmethod
    def mean_latency(values: list[float]) -> int | None:
        return round_half_up(math.fsum(values) / len(values)) if values else None


def _tally(rows: Iterable[TelemetryEvent]) -> _Tally:
    tally = _Tally()
    for row in rows:
        tally.add(row)
    return tally


def summarize(rows: list[TelemetryEvent]) -> TelemetrySummary:
    tally = _tally(rows)
    return TelemetrySummary(
        total=tally.total,
        success=tally.success,
        failed=tally.failed,
        success_rate=tally.success_rate,
        average_latency_ms=_Tally.mean_latency(tally.latencies),
        total_cost_usd=_money(tally.total_cost),
        average_cost_usd=_money(tally.total_cost / tally.total) if tally.total else None,
    )


def _bucket_start(moment: datetime, bucket_seconds: int) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    epoch = math.floor(moment.timestamp() / bucket_seconds) * bucket_seconds
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def series(rows: list[TelemetryEvent], bucket_minutes: int = 60) -> list[TelemetrySeriesPoint]:
    bucket_seconds = max(1, round(bucket_minutes)) * 60
    buckets: dict[datetime, _Tally] = {}
    for row in rows:
        buckets.setdefault(_bucket_start(row.created_at, bucket_seconds), _Tally()).add(row)

    return [
        TelemetrySeriesPoint(
            bucket_start=start,
            total=tally.total,
            success=tally.success,
            failed=tally.failed,
            average_latency_ms=_Tally.mean_latency(tally.latencies),
            total_cost_usd=_money(tally.total_cost),
        )
        for start, tally in sorted(buckets.items())
    ]


def summarize_by_provider(rows: list[TelemetryEvent]) -> list[TelemetryProviderPoint]:
    groups: dict[str, _Tally] = {}
    for row in rows:
        groups.setdefault(row.provider or "unknown", _Tally()).add(row)

    points = [
        TelemetryProviderPoint(
            provider=provider,
            total=tally.total,
            success=tally.success,
            failed=tally.failed,
            average_latency_ms=_Tally.mean_latency(tally.latencies),
            total_cost_usd=_money(tally.total_cost),
        )
        for provider, tally in groups.items()
    ]
    return sorted(points, key=lambda point: (-point.total, point.provider))


def summarize_by_model(rows: list[TelemetryEvent]) -> list[TelemetryModelPoint]:
    groups: dict[tuple[str, str], _Tally] = {}
    for row in rows:
        groups.setdefault((row.provider or "unknown", row.model or "unknown"), _Tally()).add(row)

    points = []
    for (provider, model), tally in groups.items():
        average_latency = _Tally.mean_latency(tally.success_latencies)
        average_cost = (
            _money(math.fsum(tally.success_costs) / len(tally.success_costs)) if tally.success_costs else None
        )
        cost_per_second = None
        if average_cost is not None and average_latency:
            cost_per_second = _money(average_cost / (average_latency / 1000))
        points.append(
            TelemetryModelPoint(
                key=f"{provider}:{model}",
                provider=provider,
                model=model,
                total=tally.total,
                success=tally.success,
                failed=tally.failed,
                success_rate=tally.success_rate,
                average_latency_ms=average_latency,
                average_cost_usd=average_cost,
                total_cost_usd=_money(tally.total_cost),
                cost_per_second_usd=cost_per_second,
            )
        )
    return sorted(points, key=lambda point: (-point.total, point.key))


def _rank(points: list[TelemetryModelPoint], metric: str, limit: int) -> list[TelemetryModelPoint]:
    eligible = [point for point in points if point.success > 0 and getattr(point, metric) is not None]
    eligible.sort(key=lambda point: (getattr(point, metric), -point.success_rate, -point.total, point.key))
    return eligible[: max(0, limit)]


def top_models_by_speed(points: list[TelemetryModelPoint], limit: int = RANKING_LIMIT) -> list[TelemetryModelPoint]:
    return _rank(points, "average_latency_ms", limit)


def top_models_by_cost(points: list[TelemetryModelPoint], limit: int = RANKING_LIMIT) -> list[TelemetryModelPoint]:
    return _rank(points, "average_cost_usd", limit)


def top_models_by_efficiency(
    points: list[TelemetryModelPoint], limit: int = RANKING_LIMIT
) -> list[TelemetryModelPoint]:
    return _rank(points, "cost_per_second_usd", limit)


def normalize_source(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    return normalized if normalized in TELEMETRY_SOURCES else "all"


def normalize_window_hours(value: str | int | None) -> int:
    if value is None:
        return WINDOW_DEFAULT_HOURS
    try:
        hours = round(float(value))
    except (ValueError, OverflowError):
        return WINDOW_DEFAULT_HOURS
    return max(WINDOW_MIN_HOURS, min(WINDOW_MAX_HOURS, hours))


def normalize_provider(value: str | None) -> str | None:
    normalized = (value or "").strip().lower()
    return normalized or None


async def build_telemetry_report(
    store: BenchmarkStore,
    source: str | None = None,
    provider: str | None = None,
    window_hours: str | int | None = None,
    now: datetime | None = None,
) -> TelemetryReport:
    source = normalize_source(source)
    provider = normalize_provider(provider)
    hours = normalize_window_hours(window_hours)
    now = now or utcnow()
    since = now - timedelta(hours=hours)

    rows = await store.list_events(
        since,
        source=None if source == "all" else source,
        provider=provider,
        limit=ROW_LIMIT,
    )
    # provider list ignores the provider filter so the caller can switch between them
    provider_rows = rows if provider is None else await store.list_events(
        since, source=None if source == "all" else source, limit=ROW_LIMIT
    )
    models = summarize_by_model(rows)
    return TelemetryReport(
        filters={"source": source, "provider": provider, "window_hours": hours, "since": since.isoformat()},
        summary=summarize(rows),
        series=series(rows, bucket_minutes=60),
        providers=summarize_by_provider(rows),
        models=models,
        rankings=TelemetryRankings(
            fastest=top_models_by_speed(models),
            cheapest=top_models_by_cost(models),
            most_efficient=top_models_by_efficiency(models),
        ),
        recent=rows[:RECENT_LIMIT],
        available_providers=sorted({row.provider for row in provider_rows if row.provider}),
    )
