"""Context Gateway — budgeted LLM context assembly, streaming and continuation service."""

__version__ = "0.1.0"
