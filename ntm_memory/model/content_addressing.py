"""
Content Addressing: focus a head on memory rows that resemble its key.

Reference:
    Graves, Wayne, Danihelka. Neural Turing Machines.
    arXiv:1410.5401, Section 3.3.1 "Focusing by Content"

    w^c_t(i) = exp(beta_t * K[k_t, M_t(i)]) / sum_j exp(beta_t * K[k_t, M_t(j)])
    K[u, v]  = (u . v) / (||u|| * ||v||)

Each stage is a small object: the constructor runs the forward pass and
``backward`` pushes the gradient sitting on ``top`` into the stage inputs.
One Similarity and one BetaSimilarity are built per memory row.

Implementation Notes:
    - The key strength is parameterized as beta^2 so it is non-negative
      without clamping at zero.
    - The softmax subtracts the maximum score before exponentiating.
"""

import logging
import math
from typing import List, Optional

import torch

from ntm_memory.nn.units import Units

logger = logging.getLogger(__name__)


class DegenerateSimilarityError(ArithmeticError):
    """
    Raised when cosine similarity is undefined (a zero-length key or row).

    There is no meaningful recovery: the caller fed the circuit a zero
    vector, so the step must be abandoned.

    Attributes:
        message: Description of the failure
        details: Norms and dot product at the time of failure
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}

        full_msg = f"DEGENERATE SIMILARITY: {message}"
        if details:
            full_msg += f" | Details: {details}"

        super().__init__(full_msg)


class Similarity:
    """
    Cosine similarity between a head key ``u`` and a memory row ``v``.

    Args:
        u: Key Units of shape (M,)
        v: Memory row Units of shape (M,)

    Raises:
        DegenerateSimilarityError: If either vector has zero norm
    """

    def __init__(self, u: Units, v: Units):
        if u.shape != v.shape:
            raise ValueError(f"Similarity needs equal shapes, got {tuple(u.shape)} and {tuple(v.shape)}")
        self.u = u
        self.v = v

        self.uv = float(torch.dot(u.value, v.value))
        self.unorm = math.sqrt(float(torch.dot(u.value, u.value)))
        self.vnorm = math.sqrt(float(torch.dot(v.value, v.value)))

        self.top = Units.scalar(_safe_div(self.uv, self.unorm * self.vnorm))
        if math.isnan(self.top.item()):
            logger.error("Similarity is NaN: u=%s, v=%s", u.value.tolist(), v.value.tolist())
            raise DegenerateSimilarityError(
                "cosine similarity of a zero vector",
                details={"uv": self.uv, "unorm": self.unorm, "vnorm": self.vnorm},
            )

    def backward(self) -> None:
        uvuu = self.uv / (self.unorm * self.unorm)
        uvvv = self.uv / (self.vnorm * self.vnorm)
        uvg = self.top.grad.item() / (self.unorm * self.vnorm)
        u = self.u.value
        v = self.v.value
        self.u.grad.add_((v - u * uvuu) * uvg)
        self.v.grad.add_((u - v * uvvv) * uvg)


class BetaSimilarity:
    """
    Similarity scaled by the key strength ``beta^2``.

    Args:
        beta: Scalar Unit, unconstrained in (-inf, inf)
        similarity: The wrapped Similarity
    """

    def __init__(self, beta: Units, similarity: Similarity):
        self.beta = beta
        self.similarity = similarity
        self.b = beta.item() * beta.item()
        self.top = Units.scalar(self.b * similarity.top.item())

    def backward(self) -> None:
        g = self.top.grad.item()
        self.beta.grad.add_(self.similarity.top.item() * 2 * self.beta.item() * g)
        self.similarity.top.grad.add_(self.b * g)


class ContentAddressing:
    """
    Softmax over one head's scaled similarities, one per memory row.

    Args:
        units: BetaSimilarity per memory row, in row order

    The result ``top`` is a weighting of shape (N,).
    """

    def __init__(self, units: List[BetaSimilarity]):
        if not units:
            raise ValueError("ContentAddressing needs at least one memory row")
        self.units = units

        scores = torch.stack([bs.top.value for bs in units])
        weights = torch.exp(scores - scores.max())
        self.top = Units(weights / weights.sum())

    def backward(self) -> None:
        w = self.top.value
        gv = torch.dot(self.top.grad, w)
        deltas = (self.top.grad - gv) * w
        for bs, delta in zip(self.units, deltas):
            bs.top.grad.add_(delta)


def _safe_div(num: float, den: float) -> float:
    """Float division that yields NaN instead of raising on a zero denominator."""
    if den == 0.0:
        return math.nan
    return num / den
