from __future__ import annotations

from tripbench.models import ModelPricing

GEMINI_PRICING: dict[str, ModelPricing] = {
    "gemini-2.5-flash": ModelPricing(input=0.35, output=1.05),
    "gemini-2.5-flash-lite": ModelPricing(input=0.1, output=0.4),
    "gemini-2.5-pro": ModelPricing(input=3.5, output=10.5),
    "gemini-3-flash-preview": ModelPricing(input=0.35, output=1.05),
    "gemini-3-pro-preview": ModelPricing(input=3.5, output=10.5),
    "gemini-3.1-pro-preview": ModelPricing(input=4.0, output=12.0),
}


def calculate_cost(
    pricing: dict[str, ModelPricing],
    model: str,
    input_tokens: int | None,
    output_tokens: int | None,
) -> float | None:
    model_pricing = pricing.get(model)
    if model_pricing is None:
        return None
    cost = ((input_tokens or 0) * model_pricing.input + (output_tokens or 0) * model_pricing.output) / 1_000_000
    return round(cost, 6)
