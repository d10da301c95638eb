"""NTM memory circuit stages."""

from ntm_memory.model.circuit import Circuit, stack_head_weights
from ntm_memory.model.content_addressing import (
    BetaSimilarity,
    ContentAddressing,
    DegenerateSimilarityError,
    Similarity,
)
from ntm_memory.model.head import Head, head_unit_size
from ntm_memory.model.location_addressing import GatedWeighting, Refocus, ShiftedWeighting
from ntm_memory.model.memory_ops import Read, WrittenMemory

__all__ = [
    "Circuit",
    "stack_head_weights",
    "Similarity",
    "BetaSimilarity",
    "ContentAddressing",
    "DegenerateSimilarityError",
    "GatedWeighting",
    "ShiftedWeighting",
    "Refocus",
    "Read",
    "WrittenMemory",
    "Head",
    "head_unit_size",
]
