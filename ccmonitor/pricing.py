"""Token pricing and cost calculation for Claude models."""
from __future__ import annotations

from typing import Any, Mapping, NamedTuple, Union

from ccmonitor.models import TokenUsage


class ModelPricing(NamedTuple):
    """USD per million tokens."""

    input_per_million: float
    output_per_million: float
    cache_write_per_million: float
    cache_read_per_million: float


class UsageBreakdown(NamedTuple):
    input: int
    output: int
    cache_write: int
    cache_read: int
    total_input: int


DEFAULT_PRICING = ModelPricing(3.00, 15.00, 3.75, 0.30)

MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-5-20251101": ModelPricing(15.00, 75.00, 18.75, 1.50),
    "claude-sonnet-4-20250514": ModelPricing(3.00, 15.00, 3.75, 0.30),
    "claude-3-5-sonnet-20241022": ModelPricing(3.00, 15.00, 3.75, 0.30),
    "claude-3-5-haiku-20241022": ModelPricing(1.00, 5.00, 1.25, 0.10),
}

UsageLike = Union[TokenUsage, Mapping[str, Any], None]


def _as_usage(usage: UsageLike) -> TokenUsage:
    if isinstance(usage, TokenUsage):
        return usage
    if not isinstance(usage, Mapping):
        return TokenUsage()
    return TokenUsage.model_validate(dict(usage))


def pricing_for(model: str | None) -> ModelPricing:
    return MODEL_PRICING.get(model or "", DEFAULT_PRICING)


def calculate_cost(model: str | None, usage: UsageLike) -> float:
    """Cost in USD of one assistant turn.

    ``input_tokens`` counts fresh tokens only; cache writes and cache reads are
    billed separately at their own rates.
    """
    pricing = pricing_for(model)
    tokens = _as_usage(usage)

    input_cost = tokens.input_tokens / 1_000_000 * pricing.input_per_million
    output_cost = tokens.output_tokens / 1_000_000 * pricing.output_per_million
    cache_write_cost = tokens.cache_creation_input_tokens / 1_000_000 * pricing.cache_write_per_million
    cache_read_cost = tokens.cache_read_input_tokens / 1_000_000 * pricing.cache_read_per_million

    return input_cost + output_cost + cache_write_cost + cache_read_cost


def extract_usage(usage: UsageLike) -> UsageBreakdown:
    """Split a usage object into the counters stored on events and sessions.

    ``total_input`` is fresh input plus cache reads. Cache writes are already
    part of ``input_tokens`` and are not added again.
    """
    tokens = _as_usage(usage)
    return UsageBreakdown(
        input=tokens.input_tokens,
        output=tokens.output_tokens,
        cache_write=tokens.cache_creation_input_tokens,
        cache_read=tokens.cache_read_input_tokens,
        total_input=tokens.input_tokens + tokens.cache_read_input_tokens,
    )
