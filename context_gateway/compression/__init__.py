"""Text compression — single shared compressor for context assembly and the /compress endpoint."""

from context_gateway.compression.compressor import (
    compress,
    compression_stats,
    estimate_tokens,
    optimize_for_context,
)

__all__ = [
    "compress",
    "compression_stats",
    "estimate_tokens",
    "optimize_for_context",
]
