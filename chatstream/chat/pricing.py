from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPrice:
    input_per_mtok: float
    output_per_mtok: float


@dataclass(frozen=True)
class CostEstimate:
    input_cost: float
    output_cost: float
    total_cost: float


# USD per million tokens.
ANTHROPIC_PRICING: dict[str, ModelPrice] = {
    "claude-opus-4-5": ModelPrice(5, 25),
    "claude-sonnet-4-5": ModelPrice(3, 15),
    "claude-haiku-4-5": ModelPrice(1, 5),
    "claude-opus-4-1": ModelPrice(15, 75),
    "claude-opus-4": ModelPrice(15, 75),
    "claude-sonnet-4": ModelPrice(3, 15),
    "claude-sonnet-3-7": ModelPrice(3, 15),
    "claude-haiku-3-5": ModelPrice(0.8, 4),
    "claude-opus-3": ModelPrice(15, 75),
    "claude-haiku-3": ModelPrice(0.25, 1.25),
}

ANTHROPIC_CONTEXT_WINDOW = 200_000


def is_anthropic_model(model_id: str) -> bool:
    return model_id.startswith("claude-")


def _base_model(model_id: str) -> str | None:
    # Longest key wins so "claude-opus-4-5-2025..." is not priced as "claude-opus-4".
    matches = [k for k in ANTHROPIC_PRICING if k in model_id]
    if not matches:
        return None
    return max(matches, key=len)


def estimate_cost(model_id: str, input_tokens: int, output_tokens: int) -> CostEstimate | None:
    base = _base_model(model_id)
    if base is None:
        return None
    price = ANTHROPIC_PRICING[base]
    input_cost = input_tokens / 1_000_000 * price.input_per_mtok
    output_cost = output_tokens / 1_000_000 * price.output_per_mtok
    return CostEstimate(
        input_cost=input_cost, output_cost=output_cost, total_cost=input_cost + output_cost
    )
