import random
from datetime import datetime, timedelta, timezone

import pytest

from tripbench.models import TelemetryEvent
from tripbench.store import MemoryStore
from tripbench.telemetry import (
    ERROR_MESSAGE_LIMIT,
    TelemetryRecorder,
    build_telemetry_report,
    normalize_source,
    normalize_window_hours,
    series,
    summarize,
    summarize_by_model,
    summarize_by_provider,
    top_models_by_cost,
    top_models_by_efficiency,
    top_models_by_speed,
)

NOW = datetime(2026, 5, 1, 12, 30, tzinfo=timezone.utc)


def _event(provider, model, status="success", latency=1_000, cost=None, minutes_ago=5, source="benchmark"):
    return TelemetryEvent(
        source=source,
        provider=provider,
        model=model,
        status=status,
        latency_ms=latency,
        estimated_cost_usd=cost,
        created_at=NOW - timedelta(minutes=minutes_ago),
    )


@pytest.fixture
def rows():
    return [
        _event("gemini", "gemini-3-pro-preview", latency=1_000, cost=0.02),
        _event("gemini", "gemini-3-pro-preview", latency=3_000, cost=0.04),
        _event("gemini", "gemini-3-pro-preview", status="failed", latency=500),
        _event("openrouter", "z-ai/glm-5", latency=500, cost=0.05, minutes_ago=90),
        _event("openai", "gpt-5.2", status="failed", latency=700, source="create_trip"),
    ]


class TestAggregation:
    def test_summary(self, rows):
        summary = summarize(rows)
        assert (summary.total, summary.success, summary.failed) == (5, 3, 2)
        assert summary.success_rate == 60.0
        assert summary.average_latency_ms == 1_140
        assert summary.total_cost_usd == pytest.approx(0.11)
        assert summary.average_cost_usd == pytest.approx(0.022)

    def test_average_latency_rounds_half_up(self):
        summary = summarize([_event("gemini", "gemini-3-pro-preview", latency=value) for value in (2, 3)])
        assert summary.average_latency_ms == 3

    def test_empty_summary(self):
        summary = summarize([])
        assert summary.success_rate == 0.0
        assert summary.average_latency_ms is None
        assert summary.average_cost_usd is None

    def test_model_averages_cover_successes_only(self, rows):
        points = {point.key: point for point in summarize_by_model(rows)}
        gemini = points["gemini:gemini-3-pro-preview"]
        assert gemini.total == 3
        assert gemini.success_rate == pytest.approx(66.67)
        assert gemini.average_latency_ms == 2_000
        assert gemini.average_cost_usd == pytest.approx(0.03)
        assert gemini.cost_per_second_usd == pytest.approx(0.015)
        assert points["openai:gpt-5.2"].average_latency_ms is None

    def test_models_sorted_by_volume_then_key(self, rows):
        assert [point.key for point in summarize_by_model(rows)] == [
            "gemini:gemini-3-pro-preview",
            "openai:gpt-5.2",
            "openrouter:z-ai/glm-5",
        ]

    def test_providers(self, rows):
        points = summarize_by_provider(rows)
        assert [(point.provider, point.total) for point in points] == [("gemini", 3), ("openai", 1), ("openrouter", 1)]

    def test_input_order_does_not_matter(self, rows):
        shuffled = list(rows)
        random.Random(7).shuffle(shuffled)
        assert summarize(shuffled) == summarize(rows)
        assert summarize_by_model(shuffled) == summarize_by_model(rows)
        assert summarize_by_provider(shuffled) == summarize_by_provider(rows)
        assert series(shuffled) == series(rows)

    def test_series_buckets_by_hour(self, rows):
        points = series(rows)
        assert [point.bucket_start.hour for point in points] == [11, 12]
        assert [point.total for point in points] == [1, 4]


class TestRankings:
    def test_models_without_successes_are_not_ranked(self, rows):
        points = summarize_by_model(rows)
        assert [point.key for point in top_models_by_speed(points)] == [
            "openrouter:z-ai/glm-5",
            "gemini:gemini-3-pro-preview",
        ]
        assert [point.key for point in top_models_by_cost(points)] == [
            "gemini:gemini-3-pro-preview",
            "openrouter:z-ai/glm-5",
        ]
        assert [point.key for point in top_models_by_efficiency(points)][0] == "gemini:gemini-3-pro-preview"

    def test_limit(self, rows):
        assert len(top_models_by_speed(summarize_by_model(rows), limit=1)) == 1


class TestRecorder:
    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        class BrokenStore(MemoryStore):
            async def append_event(self, event):
                raise RuntimeError("connection reset")

        recorder = TelemetryRecorder(BrokenStore())
        assert await recorder.record(_event("gemini", "gemini-3-pro-preview")) is False

    @pytest.mark.asyncio
    async def test_clips_long_messages(self):
        store = MemoryStore()
        event = _event("gemini", "gemini-3-pro-preview", status="failed").model_copy(
            update={"error_message": "x" * 5_000, "latency_ms": -4}
        )
        assert await TelemetryRecorder(store).record(event) is True
        (stored,) = store.events
        assert len(stored.error_message) == ERROR_MESSAGE_LIMIT
        assert stored.latency_ms == 0


class TestReport:
    @pytest.mark.asyncio
    async def test_window_and_filters(self, rows):
        store = MemoryStore()
        for row in rows:
            await store.append_event(row)
        await store.append_event(_event("anthropic", "claude-opus-4.6", minutes_ago=60 * 5))

        report = await build_telemetry_report(store, source="benchmark", window_hours="1", now=NOW)
        assert report.filters["window_hours"] == 1
        assert report.summary.total == 3
        assert report.available_providers == ["gemini"]

        report = await build_telemetry_report(store, provider=" Gemini ", window_hours=24, now=NOW)
        assert report.summary.total == 3
        assert report.filters["source"] == "all"
        assert report.available_providers == ["anthropic", "gemini", "openai", "openrouter"]
        assert report.recent[0].created_at >= report.recent[-1].created_at

    @pytest.mark.parametrize("value, expected", [(None, 168), ("abc", 168), (0, 1), ("3.6", 4), (10_000, 2_160)])
    def test_window_hours(self, value, expected):
        assert normalize_window_hours(value) == expected

    @pytest.mark.parametrize("value, expected", [("BENCHMARK", "benchmark"), ("nope", "all"), (None, "all")])
    def test_source(self, value, expected):
        assert normalize_source(value) == expected
