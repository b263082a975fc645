"""Token cost estimation helpers for agent steps."""

from __future__ import annotations

from dataclasses import dataclass

from agent_pipeline.orchestrator.usage import UsageExtraction


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


PricingTable = dict[tuple[str, str], ModelPricing]


def estimate_cost_usd(
    *,
    role: str,
    model: str,
    usage: UsageExtraction,
    pricing: PricingTable,
) -> float:
    """Estimate step cost in USD. Unknown usage or pricing costs nothing."""

    if usage.reported_cost_usd is not None:
        return usage.reported_cost_usd

    model_pricing = lookup_pricing(pricing, role=role, model=model)
    if model_pricing is None:
        return 0.0

    if usage.prompt_tokens is not None and usage.completion_tokens is not None:
        return (
            (usage.prompt_tokens / 1_000_000) * model_pricing.input_per_1m
            + (usage.completion_tokens / 1_000_000) * model_pricing.output_per_1m
        )

    if usage.total_tokens is not None:
        return (usage.total_tokens / 1_000_000) * model_pricing.input_per_1m
    return 0.0


def lookup_pricing(pricing: PricingTable, *, role: str, model: str) -> ModelPricing | None:
    direct = pricing.get((role.strip().lower(), model.strip()))
    if direct is not None:
        return direct

    wildcard_role = pricing.get(("*", model.strip()))
    if wildcard_role is not None:
        return wildcard_role

    wildcard_model = pricing.get((role.strip().lower(), "*"))
    if wildcard_model is not None:
        return wildcard_model

    return pricing.get(("*", "*"))


def parse_pricing_mapping(raw: str) -> PricingTable:
    """Parse `AGENT_PIPELINE_LLM_PRICING` mapping.

    Format:
    - `role:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in role/model (`*`)
    """

    parsed: PricingTable = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:  # noqa: PLR2004
            raise ValueError(
                f"Invalid AGENT_PIPELINE_LLM_PRICING entry: {value!r}. "
                "Expected format 'role:model:input_per_1m:output_per_1m'.",
            )
        role, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError as error:
            raise ValueError(
                f"Invalid AGENT_PIPELINE_LLM_PRICING price in entry: {value!r}",
            ) from error
        parsed[(role.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
