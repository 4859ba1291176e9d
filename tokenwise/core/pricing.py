"""
Pricing calculations and rate management.

Resolves a model identifier to its per-token rates and computes request cost.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model family, in USD per 1M tokens."""
    input_per_million: float
    output_per_million: float


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table keyed by model-name prefix."""
    prices: Mapping[str, ModelPricing]

    def __post_init__(self):
        # Freeze the mapping so the snapshot cannot drift at runtime
        object.__setattr__(self, "prices", MappingProxyType(dict(self.prices)))

    def find_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model using longest-prefix matching.

        Versioned names such as "gpt-4o-mini-2024-07-18" resolve to the most
        specific key that prefixes them ("gpt-4o-mini", not "gpt-4o" or "gpt-4").

        Args:
            model: Model identifier as sent to the API

        Returns:
            ModelPricing for the best matching prefix, or None if nothing matches
        """
        if not model:
            return None
        matches = [key for key in self.prices if model.startswith(key)]
        if not matches:
            return None
        return self.prices[max(matches, key=len)]


# OpenAI list prices in USD per 1M tokens
OPENAI_PRICING = PricingTable({
    "gpt-5-mini": ModelPricing(input_per_million=0.25, output_per_million=2.0),
    "gpt-5-nano": ModelPricing(input_per_million=0.05, output_per_million=0.4),
    "gpt-5": ModelPricing(input_per_million=1.25, output_per_million=10.0),
    "gpt-4.1-mini": ModelPricing(input_per_million=0.8, output_per_million=3.2),
    "gpt-4.1-nano": ModelPricing(input_per_million=0.2, output_per_million=0.8),
    "gpt-4.1": ModelPricing(input_per_million=3.0, output_per_million=12.0),
    "gpt-4o-mini": ModelPricing(input_per_million=0.6, output_per_million=2.4),
    "gpt-4o": ModelPricing(input_per_million=5.0, output_per_million=20.0),
    "gpt-4.5": ModelPricing(input_per_million=75.0, output_per_million=150.0),
    "o1-pro": ModelPricing(input_per_million=150.0, output_per_million=600.0),

    # Legacy models
    "gpt-4-32k": ModelPricing(input_per_million=60.0, output_per_million=120.0),
    "gpt-4": ModelPricing(input_per_million=30.0, output_per_million=60.0),
    "gpt-3.5-turbo-16k": ModelPricing(input_per_million=3.0, output_per_million=4.0),
    "gpt-3.5-turbo": ModelPricing(input_per_million=0.5, output_per_million=1.5),
})


def find_model(model: str, table: PricingTable = OPENAI_PRICING) -> Optional[ModelPricing]:
    """Resolve pricing for a model, or None when the model is unknown."""
    return table.find_pricing(model)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: PricingTable = OPENAI_PRICING
) -> Optional[float]:
    """Calculate the cost of a request.

    Metering is best-effort: an unknown model is reported as a warning and
    yields None instead of failing the request.

    Args:
        model: Model identifier
        input_tokens: Prompt token count
        output_tokens: Completion token count
        table: Pricing table to resolve against

    Returns:
        Cost in USD, or None if the model has no pricing entry
    """
    pricing = table.find_pricing(model)
    if pricing is None:
        logger.warning("Pricing for model %s not found. Cost will not be calculated.", model)
        return None

    input_cost = (input_tokens / 1_000_000) * pricing.input_per_million
    output_cost = (output_tokens / 1_000_000) * pricing.output_per_million
    return input_cost + output_cost
