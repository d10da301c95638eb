"""
Head: the control signals of one read/write head for one time step.

The controller emits, per head, a flat vector of length 3M + 4 laid out as

    [ k (M) | beta | g | s | gamma | erase (M) | add (M) ]

``Head.from_units`` slices that vector into views, so gradients written by
the circuit land directly in the controller's output Units.
"""

import math
from dataclasses import dataclass

import torch

from ntm_memory.config import HEAD_SCALARS
from ntm_memory.nn.units import Units


def head_unit_size(memory_width: int) -> int:
    """Number of controller outputs consumed by one head."""
    return 3 * memory_width + HEAD_SCALARS


@dataclass
class Head:
    """
    Control-signal bundle for one head.

    Attributes:
        k: Key vector, shape (M,)
        beta: Key strength (squared by the circuit)
        g: Interpolation gate (pre-sigmoid)
        s: Shift amount (reduced modulo N)
        gamma: Sharpening (exponent gamma^2 + 1)
        erase: Erase vector (pre-sigmoid), shape (M,)
        add: Add vector (pre-sigmoid), shape (M,)
        wtm1: Final weighting of this head at t-1, shape (N,)
    """

    k: Units
    beta: Units
    g: Units
    s: Units
    gamma: Units
    erase: Units
    add: Units
    wtm1: Units

    def __post_init__(self):
        m = len(self.k)
        if self.erase.shape != self.k.shape or self.add.shape != self.k.shape:
            raise ValueError(
                f"erase/add must match key width {m}, "
                f"got {tuple(self.erase.shape)} and {tuple(self.add.shape)}"
            )
        for name in ("beta", "g", "s", "gamma"):
            if getattr(self, name).value.ndim != 0:
                raise ValueError(f"{name} must be a single Unit")

    @classmethod
    def from_units(cls, units: Units, memory_width: int, wtm1: Units) -> "Head":
        """
        Slice a flat controller output into a Head.

        Args:
            units: Flat Units of length head_unit_size(memory_width)
            memory_width: Memory width M
            wtm1: Previous final weighting of this head

        Returns:
            Head whose fields are views into ``units``
        """
        m = memory_width
        expected = head_unit_size(m)
        if units.shape != (expected,):
            raise ValueError(f"Head needs {expected} units for width {m}, got {tuple(units.shape)}")
        return cls(
            k=units[0:m],
            beta=units[m],
            g=units[m + 1],
            s=units[m + 2],
            gamma=units[m + 3],
            erase=units[m + 4:2 * m + 4],
            add=units[2 * m + 4:3 * m + 4],
            wtm1=wtm1,
        )

    @property
    def memory_width(self) -> int:
        return len(self.k)

    def effective_params(self, n: int) -> dict:
        """
        Transformed control values as the circuit uses them.

        Args:
            n: Number of memory locations (for the shift modulus)

        Returns:
            Dict with beta (beta^2), g (sigmoid), shift (s mod n),
            gamma (gamma^2 + 1), and the squashed erase/add vectors
        """
        s = self.s.item()
        return {
            "beta": self.beta.item() ** 2,
            "g": float(torch.sigmoid(self.g.value)),
            "shift": math.fmod(math.fmod(s, n) + n, n),
            "gamma": self.gamma.item() ** 2 + 1,
            "erase": torch.sigmoid(self.erase.value).tolist(),
            "add": torch.sigmoid(self.add.value).tolist(),
        }

    def zero_grad(self) -> None:
        """Reset the gradients of every control signal (not of wtm1)."""
        for units in (self.k, self.beta, self.g, self.s, self.gamma, self.erase, self.add):
            units.zero_grad()
