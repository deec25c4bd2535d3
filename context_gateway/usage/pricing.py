"""Per-model pricing (USD per million tokens).

Lookup is exact first, then by the longest known key contained in the model
name (so "anthropic/claude-3-5-haiku-latest" resolves to "claude-3-5-haiku").
Unknown models fall back to the default tier: recording never fails on a
pricing miss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPrice:
    input_per_million: float
    output_per_million: float


DEFAULT_PRICES: dict[str, ModelPrice] = {
    # Anthropic
    "claude-3-5-haiku": ModelPrice(0.80, 4.00),
    "claude-3-haiku": ModelPrice(0.25, 1.25),
    "claude-haiku-4-5": ModelPrice(1.00, 5.00),
    "claude-3-5-sonnet": ModelPrice(3.00, 15.00),
    "claude-3-7-sonnet": ModelPrice(3.00, 15.00),
    "claude-sonnet-4": ModelPrice(3.00, 15.00),
    "claude-sonnet-4-5": ModelPrice(3.00, 15.00),
    "claude-3-opus": ModelPrice(15.00, 75.00),
    "claude-opus-4": ModelPrice(15.00, 75.00),
    # OpenAI
    "gpt-4o": ModelPrice(2.50, 10.00),
    "gpt-4o-mini": ModelPrice(0.15, 0.60),
    # Google
    "gemini-2.5-pro": ModelPrice(1.25, 10.00),
    "gemini-2.5-flash": ModelPrice(0.30, 2.50),
}

# Used when a model has no entry
DEFAULT_TIER = "claude-3-5-haiku"


class PricingTable:
    def __init__(
        self,
        prices: dict[str, ModelPrice] | None = None,
        default_model: str = DEFAULT_TIER,
    ):
        self._prices = dict(DEFAULT_PRICES if prices is None else prices)
        if default_model not in self._prices:
            raise ValueError(f"default pricing model {default_model!r} has no price")
        self.default_model = default_model
        self._warned: set[str] = set()

    def lookup(self, model: str) -> tuple[ModelPrice, bool]:
        """Return (price, is_fallback)."""
        key = (model or "").lower().strip()
        if key in self._prices:
            return self._prices[key], False

        matches = [k for k in self._prices if k in key]
        if matches:
            return self._prices[max(matches, key=len)], False

        if key not in self._warned:
            self._warned.add(key)
            logger.warning(
                "Unknown model pricing for %r, using default tier %s",
                model, self.default_model,
            )
        return self._prices[self.default_model], True

    def cost(self, model: str, input_tokens: int, output_tokens: int) -> tuple[float, bool]:
        price, fallback = self.lookup(model)
        cost = (
            input_tokens * price.input_per_million
            + output_tokens * price.output_per_million
        ) / 1_000_000
        return cost, fallback

    def to_dict(self) -> dict:
        return {
            name: {
                "input_per_million": p.input_per_million,
                "output_per_million": p.output_per_million,
            }
            for name, p in sorted(self._prices.items())
        }
