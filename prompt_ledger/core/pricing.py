"""
Pricing calculations and rate management.

Handles cost computations for vision models priced per token.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from prompt_ledger.storage.models import ValidationError, to_decimal


class UnknownModelError(ValueError):
    """Raised when no rate is configured for a model."""
    def __init__(self, model_id: str):
        super().__init__(f"No pricing configured for model: {model_id}")
        self.model_id = model_id


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_rate_per_token: Decimal
    output_rate_per_token: Decimal

    def __post_init__(self):
        """Coerce rates to Decimal and reject negative values."""
        input_rate = to_decimal(self.input_rate_per_token, "input_rate_per_token")
        output_rate = to_decimal(self.output_rate_per_token, "output_rate_per_token")
        if input_rate < 0 or output_rate < 0:
            raise ValueError("rates must be >= 0")
        object.__setattr__(self, "input_rate_per_token", input_rate)
        object.__setattr__(self, "output_rate_per_token", output_rate)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ModelPricing":
        """Build pricing from ``{input, output}`` or ``{in, out}`` keys."""
        input_rate = data.get("input", data.get("in"))
        output_rate = data.get("output", data.get("out"))
        if input_rate is None or output_rate is None:
            raise ValueError("pricing needs both an input and an output rate")
        return cls(input_rate_per_token=input_rate, output_rate_per_token=output_rate)


@dataclass(frozen=True)
class RateTable:
    """Pricing table keyed by model id, with an optional fallback rate."""
    prices: Dict[str, ModelPricing]
    default: Optional[ModelPricing] = None

    def get_pricing(self, model_id: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model_id: Model identifier

        Returns:
            ModelPricing for the model, or the table's default

        Raises:
            UnknownModelError: If the model is absent and there is no default
        """
        if model_id in self.prices:
            return self.prices[model_id]
        if self.default is not None:
            return self.default
        raise UnknownModelError(model_id)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self.prices

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, Mapping[str, Any]],
        default: Optional[Mapping[str, Any]] = None,
    ) -> "RateTable":
        return cls(
            prices={model_id: ModelPricing.from_mapping(rates) for model_id, rates in mapping.items()},
            default=ModelPricing.from_mapping(default) if default is not None else None,
        )


@dataclass(frozen=True)
class CostBreakdown:
    """Costs of one billed operation."""
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal


# Built-in rates in USD per token, as published for OpenRouter vision models.
DEFAULT_RATE_TABLE = RateTable({
    "openai/gpt-4o": ModelPricing(
        input_rate_per_token=Decimal("0.0000025"),
        output_rate_per_token=Decimal("0.00001")
    ),
    "openai/gpt-4o-mini": ModelPricing(
        input_rate_per_token=Decimal("0.00000015"),
        output_rate_per_token=Decimal("0.0000006")
    ),
    "anthropic/claude-3.5-sonnet": ModelPricing(
        input_rate_per_token=Decimal("0.000003"),
        output_rate_per_token=Decimal("0.000015")
    ),
    "google/gemini-flash-1.5": ModelPricing(
        input_rate_per_token=Decimal("0.000000075"),
        output_rate_per_token=Decimal("0.0000003")
    ),
})


def compute_cost(
    model_id: str,
    input_tokens: int,
    output_tokens: int,
    rate_table: Union[RateTable, Mapping[str, Mapping[str, Any]]] = DEFAULT_RATE_TABLE,
) -> CostBreakdown:
    """Calculate input, output and total cost for one operation.

    Arithmetic stays in Decimal and is not rounded, so sums over many
    entries do not drift.

    Args:
        model_id: Model identifier
        input_tokens: Input token-equivalents (image plus instruction)
        output_tokens: Output token-equivalents (generated text)
        rate_table: RateTable, or a plain ``{model: {in, out}}`` mapping

    Returns:
        CostBreakdown with totalCost == inputCost + outputCost

    Raises:
        UnknownModelError: If the model has no rate
        ValidationError: If a token count is negative or not an integer
    """
    for name, value in (("input_tokens", input_tokens), ("output_tokens", output_tokens)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer")

    if not isinstance(rate_table, RateTable):
        rate_table = RateTable.from_mapping(rate_table)
    pricing = rate_table.get_pricing(model_id)

    input_cost = Decimal(input_tokens) * pricing.input_rate_per_token
    output_cost = Decimal(output_tokens) * pricing.output_rate_per_token

    return CostBreakdown(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
    )
