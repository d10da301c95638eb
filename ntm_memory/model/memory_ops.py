"""
Memory read and write operations.

Reference:
    Graves, Wayne, Danihelka. Neural Turing Machines.
    arXiv:1410.5401, Sections 3.1 "Reading" and 3.2 "Writing"

    Read (Eq. 2):    r_t = sum_i w_t(i) * M_t(i)
    Erase (Eq. 3):   M~_t(i) = M_{t-1}(i) * [1 - w_t(i) * e_t]
    Add (Eq. 4):     M_t(i) = M~_t(i) + w_t(i) * a_t

With several heads the erasures compose multiplicatively and the adds sum,
so the order in which heads write does not matter:

    erasure_ij = prod_k (1 - w_ki * e_kj)
    new_ij     = erasure_ij * prev_ij + sum_k w_ki * a_kj

Erase and add vectors arrive as unconstrained controller outputs and are
squashed with a sigmoid into (0, 1).
"""

from typing import TYPE_CHECKING, List

import torch
from torch import Tensor

from ntm_memory.nn.units import Units

if TYPE_CHECKING:
    from ntm_memory.model.head import Head


class Read:
    """
    Weighted sum of memory rows.

    Args:
        w: Final weighting of one head, shape (N,)
        memory: Memory Units, shape (N, M)

    Gradients into ``memory`` accumulate with those of every other head's
    Read and of the write stage.
    """

    def __init__(self, w: Units, memory: Units):
        if memory.value.ndim != 2 or len(memory) != len(w):
            raise ValueError(
                f"Read needs memory of shape ({len(w)}, M), got {tuple(memory.shape)}"
            )
        self.w = w
        self.memory = memory
        self.top = Units(w.value @ memory.value)

    def backward(self) -> None:
        up = self.top.grad
        self.w.grad.add_(self.memory.value @ up)
        self.memory.grad.add_(torch.outer(self.w.value, up))


class WrittenMemory:
    """
    Memory after every head's erase and add operations.

    Args:
        ws: Final weighting of each head, each of shape (N,)
        heads: Heads supplying erase and add vectors, aligned with ``ws``
        mtm1: Memory at t-1, shape (N, M)
    """

    def __init__(self, ws: List[Units], heads: List["Head"], mtm1: Units):
        if len(ws) != len(heads):
            raise ValueError(f"Got {len(ws)} weightings for {len(heads)} heads")
        if not heads:
            raise ValueError("WrittenMemory needs at least one head")
        self.ws = ws
        self.heads = heads
        self.mtm1 = mtm1

        # (K, N) weightings, (K, M) squashed erase/add vectors
        self.w = torch.stack([w.value for w in ws])
        self.erase = torch.stack([torch.sigmoid(h.erase.value) for h in heads])
        self.add = torch.stack([torch.sigmoid(h.add.value) for h in heads])

        # (K, N, M) per-head retention factors 1 - w_ki * e_kj
        self.factors = 1 - self.w.unsqueeze(-1) * self.erase.unsqueeze(1)
        self.erasures = self.factors.prod(dim=0)
        adds = (self.w.unsqueeze(-1) * self.add.unsqueeze(1)).sum(dim=0)

        self.top = Units(self.erasures * mtm1.value + adds)

    def _erasures_excluding_each_head(self) -> Tensor:
        """
        Product of retention factors over all heads but k, for every k.

        Prefix and suffix products avoid dividing by factors that may be 0.

        Returns:
            Tensor of shape (K, N, M)
        """
        ones = torch.ones_like(self.factors[:1])
        prefix = torch.cat([ones, torch.cumprod(self.factors, dim=0)[:-1]], dim=0)
        suffix = torch.cumprod(self.factors.flip(0), dim=0).flip(0)
        suffix = torch.cat([suffix[1:], ones], dim=0)
        return prefix * suffix

    def backward(self) -> None:
        up = self.top.grad
        prev = self.mtm1.value
        mtilts = prev.unsqueeze(0) * self._erasures_excluding_each_head()

        for k, (w, head) in enumerate(zip(self.ws, self.heads)):
            mtilt = mtilts[k]
            erase = self.erase[k]
            add = self.add[k]
            wk = w.value

            w.grad.add_(((mtilt * -erase + add) * up).sum(dim=1))

            erase_grad = (mtilt * -wk.unsqueeze(1) * up).sum(dim=0)
            add_grad = (wk.unsqueeze(1) * up).sum(dim=0)
            # Sigmoid derivative scales this stage's contribution only
            head.erase.grad.add_(erase_grad * erase * (1 - erase))
            head.add.grad.add_(add_grad * add * (1 - add))

        self.mtm1.grad.add_(self.erasures * up)
