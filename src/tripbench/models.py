from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

Flow = Literal["classic", "wizard", "surprise"]
SatisfactionRating = Literal["good", "medium", "bad"]
TelemetrySource = Literal["create_trip", "benchmark"]

CANCELLED_BY_USER = "Cancelled by user."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class ModelPricing(BaseModel):
    """Pricing per 1M tokens."""

    input: float
    output: float


class BenchmarkTarget(BaseModel):
    provider: str
    model: str
    label: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.provider, self.model

    @property
    def run_label(self) -> str:
        return self.label or f"{self.provider}:{self.model}"


class BenchmarkScenario(BaseModel):
    prompt: str
    start_date: str | None = None
    round_trip: bool | None = None
    input: dict[str, Any] | None = None


class BenchmarkSession(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str | None = None
    share_token: str
    flow: Flow = "classic"
    scenario: BenchmarkScenario
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None


class ProviderUsage(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    estimated_cost_usd: float | None = None


class GenerationMeta(BaseModel):
    provider: str
    model: str
    provider_model: str | None = None
    usage: ProviderUsage = Field(default_factory=ProviderUsage)
    attempts: int = 1
    endpoint: str | None = None


class GenerationSuccess(BaseModel):
    data: dict[str, Any]
    meta: GenerationMeta


class GenerationFailure(BaseModel):
    error: str
    code: str
    details: str | None = None
    sample: str | None = None
    model: str | None = None
    provider_model: str | None = None


class ValidationResult(BaseModel):
    schema_valid: bool
    checks: dict[str, Any]
    errors: list[str]
    warnings: list[str]


class Coordinates(BaseModel):
    lat: float
    lng: float


class TripItem(BaseModel):
    id: str
    type: Literal["city", "activity", "travel"]
    title: str
    start_date_offset: float
    duration: float
    color: str
    description: str = ""
    location: str | None = None
    coordinates: Coordinates | None = None
    activity_type: list[str] | None = None
    transport_mode: str | None = None


class TripAiMeta(BaseModel):
    provider: str
    model: str
    generated_at: datetime
    benchmark_session_id: str
    benchmark_run_id: str


class CountryInfo(BaseModel):
    currency_code: str | None = None
    currency_name: str | None = None
    exchange_rate: float | None = None
    languages: list[str] = Field(default_factory=list)
    electric_sockets: str | None = None
    visa_info_url: str | None = None
    travel_advisory_url: str | None = None


class CanonicalTrip(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    start_date: str
    items: list[TripItem]
    country_info: CountryInfo | None = None
    round_trip: bool = False
    is_favorite: bool = False
    city_color_palette_id: str = "classic"
    map_color_mode: str = "trip"
    source_kind: str = "ai_benchmark"
    source_template_id: str
    ai_meta: TripAiMeta
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BenchmarkRun(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    provider: str
    model: str
    label: str
    run_index: int
    status: RunStatus = RunStatus.QUEUED
    latency_ms: int | None = None
    schema_valid: bool | None = None
    validation_checks: dict[str, Any] | None = None
    validation_errors: list[str] | None = None
    usage: ProviderUsage | None = None
    cost_usd: float | None = None
    request_payload: dict[str, Any] = Field(default_factory=dict)
    raw_output: dict[str, Any] | None = None
    normalized_trip: dict[str, Any] | None = None
    trip_id: str | None = None
    trip_ai_meta: dict[str, Any] | None = None
    error_message: str | None = None
    satisfaction_rating: SatisfactionRating | None = None
    satisfaction_updated_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class TelemetryEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utcnow)
    source: TelemetrySource
    request_id: str | None = None
    provider: str
    model: str
    provider_model: str | None = None
    status: Literal["success", "failed"]
    latency_ms: int = 0
    http_status: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    estimated_cost_usd: float | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    benchmark_session_id: str | None = None
    benchmark_run_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ScenarioPreset(BaseModel):
    id: str
    name: str
    description: str = ""
    kind: Literal["system", "custom"] = "custom"
    mask: dict[str, Any]


class BenchmarkPreferences(BaseModel):
    target_ids: list[str] = Field(serialization_alias="modelTargets")
    presets: list[ScenarioPreset]
    selected_preset_id: str | None = Field(default=None, serialization_alias="selectedPresetId")
    updated_at: datetime = Field(default_factory=utcnow)


class TelemetrySummary(BaseModel):
    total: int
    success: int
    failed: int
    success_rate: float
    average_latency_ms: int | None
    total_cost_usd: float
    average_cost_usd: float | None


class TelemetrySeriesPoint(BaseModel):
    bucket_start: datetime
    total: int
    success: int
    failed: int
    average_latency_ms: int | None
    total_cost_usd: float


class TelemetryProviderPoint(BaseModel):
    provider: str
    total: int
    success: int
    failed: int
    average_latency_ms: int | None
    total_cost_usd: float


class TelemetryModelPoint(BaseModel):
    """Per (provider, model) aggregate; averages cover successful attempts only."""

    key: str
    provider: str
    model: str
    total: int
    success: int
    failed: int
    success_rate: float
    average_latency_ms: int | None
    average_cost_usd: float | None
    total_cost_usd: float
    cost_per_second_usd: float | None


class TelemetryRankings(BaseModel):
    fastest: list[TelemetryModelPoint]
    cheapest: list[TelemetryModelPoint]
    most_efficient: list[TelemetryModelPoint]


class TelemetryReport(BaseModel):
    filters: dict[str, Any]
    summary: TelemetrySummary
    series: list[TelemetrySeriesPoint]
    providers: list[TelemetryProviderPoint]
    models: list[TelemetryModelPoint]
    rankings: TelemetryRankings
    recent: list[TelemetryEvent]
    available_providers: list[str]


class RunSummary(BaseModel):
    total: int
    completed: int
    failed: int
    running: int
    queued: int
    average_latency_ms: int | None
    total_cost_usd: float
