from __future__ import annotations

import copy
import inspect
import json
from typing import Any, Callable

import httpx
import pytest

from tripbench.config import Settings
from tripbench.models import (
    BenchmarkScenario,
    BenchmarkSession,
    GenerationMeta,
    GenerationSuccess,
    ProviderUsage,
)
from tripbench.store import MemoryStore

CITY_NOTES = "### Must See\n- [ ] Old town\n### Must Try\n- [ ] Pastel de nata\n### Must Do\n- [ ] Tram ride"

LISBON_PORTO: dict[str, Any] = {
    "tripTitle": "Lisbon and Porto",
    "countryInfo": {
        "currencyCode": "EUR",
        "currencyName": "Euro",
        "exchangeRate": 1,
        "languages": ["Portuguese"],
        "electricSockets": "Type F",
        "visaInfoUrl": "https://example.org/visa",
        "auswaertigesAmtUrl": "https://example.org/advisory",
    },
    "cities": [
        {"name": "Lisbon", "days": 3, "description": CITY_NOTES, "lat": 38.72, "lng": -9.14},
        {"name": "Porto", "days": 2, "description": CITY_NOTES, "lat": 41.15, "lng": -8.61},
    ],
    "travelSegments": [
        {"fromCityIndex": 0, "toCityIndex": 1, "transportMode": "train", "description": "3h train", "duration": 3},
    ],
    "activities": [
        {
            "title": "Belem walk",
            "cityIndex": 0,
            "dayOffsetInCity": 1,
            "duration": 1,
            "description": "Monastery and tower",
            "activityTypes": ["sightseeing", "culture"],
        },
        {
            "title": "Port cellars",
            "cityIndex": 1,
            "dayOffsetInCity": 0,
            "duration": 1,
            "description": "Tasting in Gaia",
            "activityTypes": ["food"],
        },
    ],
}


@pytest.fixture
def itinerary() -> dict[str, Any]:
    return copy.deepcopy(LISBON_PORTO)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        gemini_api_key="gemini-key",
        openai_api_key="openai-key",
        anthropic_api_key="anthropic-key",
        openrouter_api_key="openrouter-key",
        site_url="https://travelflow.example",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def session() -> BenchmarkSession:
    return BenchmarkSession(
        share_token="abm_0123456789abcdef0123",
        scenario=BenchmarkScenario(prompt="Two cities in Portugal", start_date="2026-05-01"),
    )


def gemini_payload(
    data: dict[str, Any] | str,
    finish_reason: str = "STOP",
    prompt_tokens: int = 1_000,
    completion_tokens: int = 2_000,
) -> dict[str, Any]:
    text = data if isinstance(data, str) else json.dumps(data)
    return {
        "candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": finish_reason}],
        "usageMetadata": {
            "promptTokenCount": prompt_tokens,
            "candidatesTokenCount": completion_tokens,
            "totalTokenCount": prompt_tokens + completion_tokens,
        },
        "modelVersion": "gemini-3-pro-preview-001",
    }


def chat_payload(data: dict[str, Any] | str, finish_reason: str = "stop", **extra: Any) -> dict[str, Any]:
    text = data if isinstance(data, str) else json.dumps(data)
    return {
        "model": "provider-model-001",
        "choices": [{"message": {"content": text}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 100, "completion_tokens": 200, "total_tokens": 300},
        **extra,
    }


class RecordingTransport:
    """Serves queued responses in order and keeps every request it saw."""

    def __init__(self, responses: list[httpx.Response] | Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = responses

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if callable(self._responses):
            return self._responses(request)
        return self._responses.pop(0)

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class ScriptedClient:
    """Stands in for GenerationClient; ``respond`` returns data, a GenerationSuccess, or raises."""

    def __init__(self, respond: Callable[[str, str, str], Any]) -> None:
        self.respond = respond
        self.calls: list[tuple[str, str, str]] = []

    async def generate(
        self,
        prompt: str,
        provider: str,
        model: str,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> GenerationSuccess:
        self.calls.append((prompt, provider, model))
        result = self.respond(prompt, provider, model)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, GenerationSuccess):
            return result
        return success(result, provider, model)


def success(
    data: Any,
    provider: str = "gemini",
    model: str = "gemini-3-pro-preview",
    cost: float | None = 0.0245,
) -> GenerationSuccess:
    return GenerationSuccess.model_construct(
        data=data,
        meta=GenerationMeta(
            provider=provider,
            model=model,
            provider_model=f"{model}-001",
            usage=ProviderUsage(
                prompt_tokens=1_000, completion_tokens=2_000, total_tokens=3_000, estimated_cost_usd=cost
            ),
        ),
    )
