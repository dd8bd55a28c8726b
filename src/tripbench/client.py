from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar
from urllib.parse import quote

import httpx

from tripbench.config import (
    MAX_OUTPUT_TOKENS,
    MAX_TIMEOUT_SECONDS,
    MIN_OUTPUT_TOKENS,
    MIN_TIMEOUT_SECONDS,
    Settings,
    clamp,
)
from tripbench.durations import to_finite
from tripbench.errors import ProviderGenerationError
from tripbench.models import GenerationFailure, GenerationMeta, GenerationSuccess, ModelPricing, ProviderUsage
from tripbench.pricing import GEMINI_PRICING, calculate_cost

logger = logging.getLogger(__name__)

DETAILS_LIMIT = 1_200
SAMPLE_LIMIT = 800

DEFAULT_SYSTEM_PROMPT = "Return only a valid JSON object. Do not include markdown fences."

STRICT_JSON_RETRY_INSTRUCTION = """IMPORTANT RETRY INSTRUCTIONS:
- Return exactly one valid JSON object and nothing else.
- No markdown fences, no prose, no explanation.
- Keep output compact to avoid truncation.
- For each city description, include all required headings with concise checklist bullets."""

TRUNCATION_RETRY_INSTRUCTION = (
    "- The previous answer was cut off before it finished. "
    "Plan fewer cities and fewer activities per city so the complete object fits."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)


class JsonExtractionError(ValueError):
    pass


def clip_text(value: str, limit: int = DETAILS_LIMIT) -> str:
    return value[:limit]


def extract_json_object(raw: str) -> dict[str, Any]:
    """Pull one JSON object out of model text.

    Tries a fenced code block, then the text as-is, then the span from the
    first ``{`` to the last ``}``.
    """
    text = raw.strip()
    if not text:
        raise JsonExtractionError("Provider returned empty content.")

    fence = _FENCE_RE.match(text)
    body = fence.group(1) if fence else text
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = body.find("{")
    end = body.rfind("}")
    if start == -1 or end <= start:
        raise JsonExtractionError("Provider response did not contain valid JSON object boundaries.")
    try:
        parsed = json.loads(body[start : end + 1])
    except ValueError as exc:
        raise JsonExtractionError(f"Response JSON candidate could not be parsed: {exc}") from exc
    if not isinstance(parsed, dict):
        raise JsonExtractionError("Response JSON candidate was not an object.")
    return parsed


def retry_prompt(prompt: str, reason: str | None) -> str:
    if reason is None:
        return prompt
    instructions = STRICT_JSON_RETRY_INSTRUCTION
    if reason == "truncated":
        instructions = f"{instructions}\n{TRUNCATION_RETRY_INSTRUCTION}"
    return f"{prompt}\n\n{instructions}"


def _int_or_none(value: Any) -> int | None:
    number = to_finite(value)
    return int(number) if number is not None else None


def _join_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for entry in content:
        if isinstance(entry, str):
            parts.append(entry)
        elif isinstance(entry, dict) and isinstance(entry.get("text"), str):
            parts.append(entry["text"])
    return "\n".join(part for part in parts if part)


@dataclass
class ProviderRequest:
    url: str
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderReply:
    text: str
    usage: ProviderUsage
    finish_reason: str | None = None
    truncated: bool = False
    provider_model: str | None = None


class _HttpStatusError(Exception):
    def __init__(self, status: int, details: str) -> None:
        super().__init__(f"HTTP {status}")
        self.status = status
        self.details = details


class Provider:
    """One provider integration.

    Subclasses describe their request shape and response extraction; the
    attempt loop here owns the parse/truncation retry and error mapping.
    """

    name: ClassVar[str]
    display_name: ClassVar[str]
    allowed_models: ClassVar[frozenset[str]]
    model_map: ClassVar[dict[str, str]] = {}
    pricing: ClassVar[dict[str, ModelPricing]] = {}
    truncation_reasons: ClassVar[frozenset[str]] = frozenset()
    retry_statuses: ClassVar[frozenset[int]] = frozenset()
    passthrough_status: ClassVar[bool] = False
    max_attempts: ClassVar[int] = 2

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self.http = http
        self.settings = settings

    def resolve_model(self, model: str) -> str:
        return self.model_map.get(model, model)

    def build_request(
        self,
        api_key: str,
        prompt: str,
        provider_model: str,
        strict: bool,
        max_output_tokens: int,
    ) -> ProviderRequest:
        raise NotImplementedError

    def parse_reply(self, payload: dict[str, Any]) -> ProviderReply:
        raise NotImplementedError

    def estimate_cost(self, model: str, usage: ProviderUsage) -> float | None:
        return calculate_cost(self.pricing, model, usage.prompt_tokens, usage.completion_tokens)

    def error(self, status: int, suffix: str, message: str, **fields: Any) -> ProviderGenerationError:
        failure = GenerationFailure(error=message, code=f"{self.name.upper()}_{suffix}", **fields)
        return ProviderGenerationError(status, failure)

    async def generate(
        self,
        prompt: str,
        model: str,
        timeout: float,
        max_output_tokens: int,
    ) -> GenerationSuccess:
        api_key = self.settings.api_key_for(self.name)
        if not api_key:
            raise self.error(
                500,
                "KEY_MISSING",
                f"{self.display_name} API key missing. Configure TRIPBENCH_{self.name.upper()}_API_KEY.",
            )

        provider_model = self.resolve_model(model)
        retry_reason: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                reply = await self._call(
                    api_key,
                    retry_prompt(prompt, retry_reason),
                    provider_model,
                    retry_reason is not None,
                    timeout,
                    max_output_tokens,
                )
            except _HttpStatusError as exc:
                if exc.status in self.retry_statuses and attempt < self.max_attempts:
                    logger.warning("%s returned %s for %s, retrying", self.display_name, exc.status, model)
                    continue
                raise self.error(
                    exc.status if self.passthrough_status else 502,
                    "REQUEST_FAILED",
                    f"{self.display_name} generation request failed.",
                    details=clip_text(exc.details),
                    model=model,
                ) from exc

            try:
                data = extract_json_object(reply.text)
            except JsonExtractionError as exc:
                if attempt < self.max_attempts:
                    retry_reason = "truncated" if reply.truncated else "parse"
                    logger.warning("%s output for %s was not valid JSON (%s), retrying", self.display_name, model, exc)
                    continue
                details = str(exc)
                if reply.finish_reason:
                    details = f"{details} Finish reason: {reply.finish_reason}."
                raise self.error(
                    502,
                    "PARSE_FAILED",
                    f"{self.display_name} response could not be parsed as JSON itinerary payload.",
                    details=clip_text(details),
                    sample=reply.text[:SAMPLE_LIMIT],
                    model=model,
                    provider_model=reply.provider_model,
                ) from exc

            if reply.truncated and attempt < self.max_attempts:
                retry_reason = "truncated"
                logger.warning("%s output for %s was truncated (%s), retrying", self.display_name, model, reply.finish_reason)
                continue

            return self._success(model, data, reply, attempt)

        raise self.error(502, "REQUEST_FAILED", f"{self.display_name} generation request failed.", model=model)

    def _success(self, model: str, data: dict[str, Any], reply: ProviderReply, attempts: int) -> GenerationSuccess:
        usage = reply.usage
        if usage.estimated_cost_usd is None:
            usage = usage.model_copy(update={"estimated_cost_usd": self.estimate_cost(model, usage)})
        return GenerationSuccess(
            data=data,
            meta=GenerationMeta(
                provider=self.name,
                model=model,
                provider_model=reply.provider_model,
                usage=usage,
                attempts=attempts,
            ),
        )

    async def _call(
        self,
        api_key: str,
        prompt: str,
        provider_model: str,
        strict: bool,
        timeout: float,
        max_output_tokens: int,
    ) -> ProviderReply:
        request = self.build_request(api_key, prompt, provider_model, strict, max_output_tokens)
        payload = await self._post(request, timeout)
        return self.parse_reply(payload)

    async def _post(self, request: ProviderRequest, timeout: float) -> dict[str, Any]:
        try:
            response = await self.http.post(
                request.url,
                json=request.body,
                headers=request.headers,
                params=request.params or None,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise self.error(
                504,
                "REQUEST_TIMEOUT",
                f"{self.display_name} generation request timed out.",
                details=f"Provider request timed out after {round(timeout * 1000)}ms.",
            ) from exc
        except httpx.HTTPError as exc:
            raise self.error(
                502,
                "REQUEST_FAILED",
                f"{self.display_name} generation request failed.",
                details=clip_text(str(exc) or type(exc).__name__),
            ) from exc

        if response.is_error:
            raise _HttpStatusError(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise self.error(
                502,
                "REQUEST_FAILED",
                f"{self.display_name} returned a non-JSON response body.",
                details=clip_text(response.text),
            ) from exc
        return payload if isinstance(payload, dict) else {}


class GeminiProvider(Provider):
    name = "gemini"
    display_name = "Gemini"
    allowed_models = frozenset(GEMINI_PRICING)
    pricing = GEMINI_PRICING
    truncation_reasons = frozenset({"MAX_TOKENS"})
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def build_request(self, api_key, prompt, provider_model, strict, max_output_tokens):
        return ProviderRequest(
            url=f"{self.base_url}/models/{quote(provider_model, safe='')}:generateContent",
            params={"key": api_key},
            headers={"Content-Type": "application/json"},
            body={
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {
                    "responseMimeType": "application/json",
                    "maxOutputTokens": max_output_tokens,
                    "temperature": 0 if strict else 0.2,
                },
            },
        )

    def parse_reply(self, payload):
        candidates = payload.get("candidates") or [{}]
        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "\n".join(part.get("text") or "" for part in parts if isinstance(part, dict))
        usage = payload.get("usageMetadata") or {}
        finish_reason = candidate.get("finishReason")
        return ProviderReply(
            text=text,
            usage=ProviderUsage(
                prompt_tokens=_int_or_none(usage.get("promptTokenCount")),
                completion_tokens=_int_or_none(usage.get("candidatesTokenCount")),
                total_tokens=_int_or_none(usage.get("totalTokenCount")),
            ),
            finish_reason=finish_reason,
            truncated=finish_reason in self.truncation_reasons,
            provider_model=payload.get("modelVersion"),
        )


class _ChatEndpointMismatch(Exception):
    def __init__(self, details: str) -> None:
        super().__init__("chat completions endpoint rejected the model")
        self.details = details


def _is_chat_endpoint_mismatch(details: str) -> bool:
    normalized = details.lower()
    return (
        "not a chat model" in normalized
        or "v1/chat/completions" in normalized
        or "did you mean to use v1/completions" in normalized
    )


class OpenAIProvider(Provider):
    name = "openai"
    display_name = "OpenAI"
    allowed_models = frozenset({"gpt-5-nano", "gpt-5-mini", "gpt-5.2", "gpt-5.2-pro"})
    truncation_reasons = frozenset({"length"})
    chat_url = "https://api.openai.com/v1/chat/completions"
    responses_url = "https://api.openai.com/v1/responses"

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    def build_request(self, api_key, prompt, provider_model, strict, max_output_tokens):
        return ProviderRequest(
            url=self.chat_url,
            headers=self._headers(api_key),
            body={
                "model": provider_model,
                "temperature": 0 if strict else 0.2,
                "max_completion_tokens": max_output_tokens,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            },
        )

    def parse_reply(self, payload):
        return _chat_completion_reply(payload, self.truncation_reasons)

    async def _call(self, api_key, prompt, provider_model, strict, timeout, max_output_tokens):
        try:
            return await super()._call(api_key, prompt, provider_model, strict, timeout, max_output_tokens)
        except _HttpStatusError as exc:
            if _is_chat_endpoint_mismatch(exc.details):
                raise _ChatEndpointMismatch(exc.details) from exc
            raise

    async def generate(self, prompt, model, timeout, max_output_tokens):
        try:
            return await super().generate(prompt, model, timeout, max_output_tokens)
        except _ChatEndpointMismatch as exc:
            logger.info("OpenAI model %s is not a chat model, falling back to the responses endpoint", model)
            return await self._generate_via_responses(prompt, model, timeout, max_output_tokens, exc.details)

    async def _generate_via_responses(
        self,
        prompt: str,
        model: str,
        timeout: float,
        max_output_tokens: int,
        chat_details: str,
    ) -> GenerationSuccess:
        api_key = self.settings.api_key_for(self.name) or ""
        provider_model = self.resolve_model(model)
        request = ProviderRequest(
            url=self.responses_url,
            headers=self._headers(api_key),
            body={
                "model": provider_model,
                "input": [
                    {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                "max_output_tokens": max_output_tokens,
            },
        )
        try:
            payload = await self._post(request, timeout)
        except _HttpStatusError as exc:
            raise self.error(
                502,
                "REQUEST_FAILED",
                "OpenAI generation request failed.",
                details=clip_text(f"chat_completions: {chat_details}\nresponses: {exc.details}"),
                model=model,
            ) from exc

        text = _responses_text(payload)
        reply = ProviderReply(
            text=text,
            usage=_openai_usage(payload),
            finish_reason=(payload.get("incomplete_details") or {}).get("reason"),
            provider_model=payload.get("model"),
        )
        try:
            data = extract_json_object(text)
        except JsonExtractionError as exc:
            details = str(exc)
            if reply.finish_reason:
                details = f"{details} Finish reason: {reply.finish_reason}."
            raise self.error(
                502,
                "PARSE_FAILED",
                "OpenAI response could not be parsed as JSON itinerary payload.",
                details=clip_text(details),
                sample=text[:SAMPLE_LIMIT],
                model=model,
                provider_model=reply.provider_model,
            ) from exc
        success = self._success(model, data, reply, attempts=1)
        success.meta.endpoint = "responses"
        return success


def _chat_completion_reply(payload: dict[str, Any], truncation_reasons: frozenset[str]) -> ProviderReply:
    choices = payload.get("choices") or [{}]
    choice = choices[0] if isinstance(choices[0], dict) else {}
    finish_reason = choice.get("finish_reason")
    return ProviderReply(
        text=_join_text((choice.get("message") or {}).get("content")),
        usage=_openai_usage(payload),
        finish_reason=finish_reason,
        truncated=finish_reason in truncation_reasons,
        provider_model=payload.get("model"),
    )


def _openai_usage(payload: dict[str, Any]) -> ProviderUsage:
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    prompt_tokens = usage.get("prompt_tokens", usage.get("input_tokens"))
    completion_tokens = usage.get("completion_tokens", usage.get("output_tokens"))
    return ProviderUsage(
        prompt_tokens=_int_or_none(prompt_tokens),
        completion_tokens=_int_or_none(completion_tokens),
        total_tokens=_int_or_none(usage.get("total_tokens")),
    )


def _responses_text(payload: dict[str, Any]) -> str:
    output_text = payload.get("output_text")
    if isinstance(output_text, str):
        return output_text
    if isinstance(output_text, list):
        return "\n".join(entry for entry in output_text if isinstance(entry, str) and entry)

    chunks: list[str] = []
    for entry in payload.get("output") or []:
        if not isinstance(entry, dict) or not isinstance(entry.get("content"), list):
            continue
        for chunk in entry["content"]:
            if isinstance(chunk, dict) and isinstance(chunk.get("text"), str) and chunk["text"]:
                chunks.append(chunk["text"])
    return "\n".join(chunks)


class AnthropicProvider(Provider):
    name = "anthropic"
    display_name = "Anthropic"
    allowed_models = frozenset(
        {"claude-haiku-4.5", "claude-sonnet-4.5", "claude-sonnet-4.6", "claude-opus-4.6", "claude-opus-4.1"}
    )
    model_map = {
        "claude-haiku-4.5": "claude-haiku-4-5",
        "claude-sonnet-4.5": "claude-sonnet-4-5",
        "claude-sonnet-4.6": "claude-sonnet-4-6",
        "claude-opus-4.1": "claude-opus-4-1",
        "claude-opus-4.6": "claude-opus-4-6",
        # stored values from earlier catalogs
        "claude-haiku-4-5": "claude-haiku-4-5",
        "claude-sonnet-4-5": "claude-sonnet-4-5",
        "claude-sonnet-4-6": "claude-sonnet-4-6",
        "claude-opus-4-1": "claude-opus-4-1",
        "claude-opus-4-6": "claude-opus-4-6",
        "claude-sonnet-4-0": "claude-sonnet-4-0",
        "claude-opus-4-0": "claude-opus-4-0",
    }
    truncation_reasons = frozenset({"max_tokens"})
    url = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"
    strict_system_prompt = "Return exactly one minified JSON object. No prose, no markdown fences."

    def build_request(self, api_key, prompt, provider_model, strict, max_output_tokens):
        body: dict[str, Any] = {
            "model": provider_model,
            "max_tokens": max_output_tokens,
            "temperature": 0 if strict else 0.2,
            "messages": [{"role": "user", "content": prompt}],
        }
        if strict:
            body["system"] = self.strict_system_prompt
        return ProviderRequest(
            url=self.url,
            headers={
                "x-api-key": api_key,
                "anthropic-version": self.api_version,
                "Content-Type": "application/json",
            },
            body=body,
        )

    def parse_reply(self, payload):
        blocks = payload.get("content") if isinstance(payload.get("content"), list) else []
        text = "\n".join(
            block["text"]
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
        usage = payload.get("usage") or {}
        prompt_tokens = _int_or_none(usage.get("input_tokens"))
        completion_tokens = _int_or_none(usage.get("output_tokens"))
        total = None
        if prompt_tokens is not None or completion_tokens is not None:
            total = (prompt_tokens or 0) + (completion_tokens or 0)
        stop_reason = payload.get("stop_reason")
        return ProviderReply(
            text=text,
            usage=ProviderUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens, total_tokens=total),
            finish_reason=stop_reason,
            truncated=stop_reason in self.truncation_reasons,
            provider_model=payload.get("model"),
        )


class OpenRouterProvider(Provider):
    name = "openrouter"
    display_name = "OpenRouter"
    allowed_models = frozenset(
        {
            "openrouter/free",
            "openai/gpt-oss-20b:free",
            "qwen/qwen3-coder:free",
            "z-ai/glm-5",
            "deepseek/deepseek-v3.2",
            "x-ai/grok-4.1-fast",
            "minimax/minimax-m2.5",
            "moonshotai/kimi-k2.5",
        }
    )
    truncation_reasons = frozenset({"length"})
    retry_statuses = frozenset({429, 500, 502, 503, 504})
    passthrough_status = True
    url = "https://openrouter.ai/api/v1/chat/completions"
    strict_system_prompt = (
        "Return exactly one minified JSON object that follows the requested schema. "
        "No prose, no markdown, no explanations."
    )

    def build_request(self, api_key, prompt, provider_model, strict, max_output_tokens):
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        if self.settings.site_url:
            headers["HTTP-Referer"] = self.settings.site_url
        if self.settings.openrouter_app_name:
            headers["X-Title"] = self.settings.openrouter_app_name
        return ProviderRequest(
            url=self.url,
            headers=headers,
            body={
                "model": provider_model,
                "max_tokens": max_output_tokens,
                "temperature": 0.2,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": self.strict_system_prompt if strict else DEFAULT_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            },
        )

    def parse_reply(self, payload):
        reply = _chat_completion_reply(payload, self.truncation_reasons)
        reply.usage.estimated_cost_usd = _reported_cost(payload)
        return reply


def _reported_cost(payload: dict[str, Any]) -> float | None:
    usage = payload.get("usage") if isinstance(payload.get("usage"), dict) else {}
    for value in (payload.get("cost"), payload.get("total_cost"), usage.get("cost"), usage.get("total_cost")):
        cost = to_finite(value)
        if cost is not None:
            return round(cost, 6)
    return None


PROVIDERS: dict[str, type[Provider]] = {
    provider.name: provider for provider in (GeminiProvider, OpenAIProvider, AnthropicProvider, OpenRouterProvider)
}


def ensure_model_allowed(provider: str, model: str) -> GenerationFailure | None:
    provider_cls = PROVIDERS.get(provider)
    if provider_cls is None:
        return GenerationFailure(error=f"Unsupported provider '{provider}'.", code="PROVIDER_NOT_SUPPORTED")
    if model not in provider_cls.allowed_models:
        return GenerationFailure(
            error=f"Model '{model}' is not enabled for provider '{provider}'.",
            code="MODEL_NOT_ALLOWED",
        )
    return None


@dataclass
class GenerationClient:
    settings: Settings
    transport: httpx.AsyncBaseTransport | None = None
    _client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "GenerationClient":
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.provider_timeout_seconds),
                transport=self.transport,
            )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate(
        self,
        prompt: str,
        provider: str,
        model: str,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> GenerationSuccess:
        """Generate one itinerary object. Raises ProviderGenerationError on any failure."""
        provider = provider.strip().lower()
        model = model.strip()
        rejection = ensure_model_allowed(provider, model)
        if rejection is not None:
            raise ProviderGenerationError(400, rejection)
        if self._client is None:
            raise RuntimeError("GenerationClient is not initialized. Use 'async with'.")

        if timeout is None:
            timeout = self.settings.timeout_for(provider)
        timeout = clamp(timeout, MIN_TIMEOUT_SECONDS, MAX_TIMEOUT_SECONDS)
        if max_output_tokens is None:
            max_output_tokens = self.settings.max_output_tokens
        max_output_tokens = int(clamp(round(max_output_tokens), MIN_OUTPUT_TOKENS, MAX_OUTPUT_TOKENS))

        logger.debug("Generating with %s/%s (timeout %.0fs)", provider, model, timeout)
        return await PROVIDERS[provider](self._client, self.settings).generate(prompt, model, timeout, max_output_tokens)
