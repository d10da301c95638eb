"""
Circuit: one time step of the NTM memory for every head.

Forward, per head:
    BetaSimilarity (one per memory row) -> ContentAddressing
    -> GatedWeighting (with the head's previous weighting)
    -> ShiftedWeighting -> Refocus -> Read (against the previous memory)
then a single WrittenMemory over all heads.

Backward runs every stage in reverse dependency order: all Reads, the
WrittenMemory, then per head Refocus, Shifted, Gated, Content and each
BetaSimilarity followed by its Similarity. Every consumer of a Unit has
finished accumulating into it before that Unit's producer reads its
gradient.

Steps chain through explicit references. Step t+1 receives
``circuit.memory`` as its previous memory and ``circuit.refocus[h].top`` as
head h's previous weighting; the training loop calls ``backward`` on the
steps in reverse order.
"""

import logging
from typing import List, Sequence

import torch
from torch import Tensor

from ntm_memory.model.content_addressing import BetaSimilarity, ContentAddressing, Similarity
from ntm_memory.model.head import Head
from ntm_memory.model.location_addressing import GatedWeighting, Refocus, ShiftedWeighting
from ntm_memory.model.memory_ops import Read, WrittenMemory
from ntm_memory.nn.units import Units

logger = logging.getLogger(__name__)


class Circuit:
    """
    Memory addressing, reading and writing for a single time step.

    Args:
        heads: Control signals of every head
        mtm1: Memory at t-1, shape (N, M)

    Attributes:
        similarities: Per head, one BetaSimilarity per memory row
        content: Per head, the ContentAddressing stage
        gated: Per head, the GatedWeighting stage
        shifted: Per head, the ShiftedWeighting stage
        refocus: Per head, the Refocus stage (the final weighting)
        reads: Per head, the Read stage
        written: The shared WrittenMemory
    """

    def __init__(self, heads: List[Head], mtm1: Units):
        if not heads:
            raise ValueError("Circuit needs at least one head")
        if mtm1.value.ndim != 2:
            raise ValueError(f"Memory must be 2D (N, M), got shape {tuple(mtm1.shape)}")
        n, m = mtm1.shape
        for i, h in enumerate(heads):
            if h.memory_width != m:
                raise ValueError(f"Head {i} key width {h.memory_width} != memory width {m}")
            if len(h.wtm1) != n:
                raise ValueError(f"Head {i} previous weighting has {len(h.wtm1)} entries, memory has {n} rows")

        self.heads = heads
        self.mtm1 = mtm1

        self.similarities: List[List[BetaSimilarity]] = []
        self.content: List[ContentAddressing] = []
        self.gated: List[GatedWeighting] = []
        self.shifted: List[ShiftedWeighting] = []
        self.refocus: List[Refocus] = []
        self.reads: List[Read] = []

        for h in heads:
            ss = [BetaSimilarity(h.beta, Similarity(h.k, mtm1[j])) for j in range(n)]
            wc = ContentAddressing(ss)
            wg = GatedWeighting(h.g, wc.top, h.wtm1)
            ws = ShiftedWeighting(h.s, wg.top)
            rf = Refocus(h.gamma, ws.top)

            self.similarities.append(ss)
            self.content.append(wc)
            self.gated.append(wg)
            self.shifted.append(ws)
            self.refocus.append(rf)
            self.reads.append(Read(rf.top, mtm1))

        self.written = WrittenMemory([rf.top for rf in self.refocus], heads, mtm1)

        logger.debug("Circuit forward: heads=%d, N=%d, M=%d", len(heads), n, m)

    @property
    def memory(self) -> Units:
        """New memory Units, the previous memory of the next step."""
        return self.written.top

    def backward(self) -> None:
        """Propagate the gradients on reads and new memory into every input Unit."""
        for r in self.reads:
            r.backward()
        self.written.backward()

        for i in range(len(self.heads)):
            self.refocus[i].backward()
            self.shifted[i].backward()
            self.gated[i].backward()
            self.content[i].backward()
            for bs in self.similarities[i]:
                bs.backward()
                bs.similarity.backward()

    def read_values(self) -> Tensor:
        """Read vectors of every head, shape (H, M)."""
        return torch.stack([r.top.values() for r in self.reads])

    def written_memory_values(self) -> Tensor:
        """New memory values, shape (N, M)."""
        return self.written.top.values()

    def weightings(self) -> Tensor:
        """Final weighting of every head, shape (H, N)."""
        return torch.stack([rf.top.values() for rf in self.refocus])

    def head_summaries(self) -> List[dict]:
        """Effective control values of every head, for debug logging."""
        n = len(self.mtm1)
        return [h.effective_params(n) for h in self.heads]


def stack_head_weights(circuits: Sequence[Circuit], head: int = 0) -> Tensor:
    """
    Final weightings of one head across a sequence of steps.

    Args:
        circuits: Per-step circuits in time order
        head: Head index

    Returns:
        Tensor of shape (T, N)
    """
    if not circuits:
        raise ValueError("No circuits to stack")
    return torch.stack([c.refocus[head].top.values() for c in circuits])
