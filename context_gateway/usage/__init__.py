"""Usage accounting — pricing table and authoritative usage ledger."""

from context_gateway.usage.pricing import DEFAULT_TIER, ModelPrice, PricingTable
from context_gateway.usage.tracker import UsageSink, UsageTracker

__all__ = [
    "DEFAULT_TIER",
    "ModelPrice",
    "PricingTable",
    "UsageSink",
    "UsageTracker",
]
