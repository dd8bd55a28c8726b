from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

MIN_TIMEOUT_SECONDS = 10.0
MAX_TIMEOUT_SECONDS = 180.0
MIN_OUTPUT_TOKENS = 1_024
MAX_OUTPUT_TOKENS = 16_384


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class Settings(BaseSettings):
    gemini_api_key: str | None = None
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    openrouter_api_key: str | None = None

    site_url: str | None = None
    openrouter_app_name: str = "TravelFlow"

    provider_timeout_seconds: float = 90.0
    gemini_timeout_seconds: float | None = None
    openai_timeout_seconds: float | None = None
    anthropic_timeout_seconds: float | None = None
    openrouter_timeout_seconds: float | None = None
    max_output_tokens: int = 8_192

    max_run_count: int = 3
    max_concurrency: int = 5

    store_path: Path | None = None
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "TRIPBENCH_",
        "env_file": ".env",
        "extra": "ignore",
    }

    @field_validator(
        "provider_timeout_seconds",
        "gemini_timeout_seconds",
        "openai_timeout_seconds",
        "anthropic_timeout_seconds",
        "openrouter_timeout_seconds",
    )
    @classmethod
    def _clamp_timeout(cls, value: float | None) -> float | None:
        if value is None:
            return None
        return clamp(value, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS)

    @field_validator("max_output_tokens")
    @classmethod
    def _clamp_tokens(cls, value: int) -> int:
        return int(clamp(value, MIN_OUTPUT_TOKENS, MAX_OUTPUT_TOKENS))

    def api_key_for(self, provider: str) -> str | None:
        return getattr(self, f"{provider}_api_key", None) or None

    def timeout_for(self, provider: str) -> float:
        override = getattr(self, f"{provider}_timeout_seconds", None)
        return override if override is not None else self.provider_timeout_seconds
