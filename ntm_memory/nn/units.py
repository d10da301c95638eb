"""
Units: forward values paired with reverse-mode gradient accumulators.

A Unit is the leaf primitive of the memory circuit: a float64 value and the
gradient of the loss with respect to it. Units are stored as an arena, two
same-shape tensors ``value`` and ``grad``. Indexing an arena with integers or
slices returns another ``Units`` whose tensors are views into the same
storage, so a memory row or a single scalar can be handed to several stages
and every stage's ``backward`` accumulates into the shared arena.

Gradients are only ever accumulated. A Unit may feed several consumers (a
memory cell is read by every head and rewritten by the write stage), so
overwriting would drop contributions. Call ``zero_grad`` before a new
forward/backward cycle.

Implementation Notes:
    - Advanced indexing (lists, boolean masks) copies in torch and would
      detach the result from the arena; ``__getitem__`` rejects it.
    - Stage code mutates ``grad`` in place (``add_``, ``+=``); it never
      rebinds ``grad`` on a view.
"""

from typing import Iterable, Optional, Sequence, Union

import torch
from torch import Tensor

from ntm_memory.config import DTYPE

Index = Union[int, slice, tuple]


class Units:
    """
    A block of Units sharing one value tensor and one gradient tensor.

    Args:
        value: Forward values (any shape, converted to float64)
        grad: Optional gradient tensor of the same shape; zeros if omitted
    """

    __slots__ = ("value", "grad")

    def __init__(self, value: Tensor, grad: Optional[Tensor] = None):
        if value.dtype != DTYPE:
            value = value.to(DTYPE)
        if grad is None:
            grad = torch.zeros_like(value)
        elif grad.shape != value.shape:
            raise ValueError(
                f"grad shape {tuple(grad.shape)} does not match value shape {tuple(value.shape)}"
            )
        self.value = value
        self.grad = grad

    @classmethod
    def zeros(cls, *shape: int) -> "Units":
        """Allocate an arena of zero values and zero gradients."""
        return cls(torch.zeros(*shape, dtype=DTYPE))

    @classmethod
    def from_values(cls, values: Union[Tensor, Sequence, Iterable]) -> "Units":
        """Allocate an arena holding a copy of ``values``."""
        if isinstance(values, Tensor):
            return cls(values.detach().clone().to(DTYPE))
        return cls(torch.tensor(values, dtype=DTYPE))

    @classmethod
    def scalar(cls, value: float) -> "Units":
        """Allocate a single Unit."""
        return cls(torch.tensor(float(value), dtype=DTYPE))

    def __getitem__(self, index: Index) -> "Units":
        parts = index if isinstance(index, tuple) else (index,)
        for part in parts:
            if not isinstance(part, (int, slice)) and part is not Ellipsis:
                raise TypeError(
                    f"Units only support int/slice indexing (views), got {type(part).__name__}"
                )
        return Units(self.value[index], self.grad[index])

    def __len__(self) -> int:
        return len(self.value)

    def __repr__(self) -> str:
        if self.value.ndim == 0:
            return f"Units(value={self.value.item():.6g}, grad={self.grad.item():.6g})"
        return f"Units(shape={tuple(self.value.shape)})"

    @property
    def shape(self) -> torch.Size:
        return self.value.shape

    def item(self) -> float:
        """Forward value of a single Unit."""
        return float(self.value.item())

    def zero_grad(self) -> None:
        """Reset the gradient accumulators in place."""
        self.grad.zero_()

    def values(self) -> Tensor:
        """Detached copy of the forward values."""
        return self.value.clone()


def uniform_weighting(n: int) -> Units:
    """
    Build a uniform weighting over ``n`` locations.

    Used as the previous-step weighting of a head at the first time step,
    where no earlier Refocus exists.
    """
    if n < 1:
        raise ValueError(f"Weighting needs at least one location, got n={n}")
    return Units(torch.full((n,), 1.0 / n, dtype=DTYPE))
