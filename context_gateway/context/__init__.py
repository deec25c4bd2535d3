"""Context management — per-thread chunk stores and budgeted context assembly."""

from context_gateway.context.assembler import DELIMITER, ContextAssembler
from context_gateway.context.chunk_store import ChunkStore, ChunkStoreRegistry

__all__ = [
    "DELIMITER",
    "ChunkStore",
    "ChunkStoreRegistry",
    "ContextAssembler",
]
