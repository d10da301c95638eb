"""
Location Addressing: interpolation, convolutional shift and sharpening.

Reference:
    Graves, Wayne, Danihelka. Neural Turing Machines.
    arXiv:1410.5401, Section 3.3.2 "Focusing by Location"

    Interpolation (Eq. 7):  w^g_t = g_t * w^c_t + (1 - g_t) * w_{t-1}
    Shift (Eq. 8):          w~_t(i) = sum_j w^g_t(j) * s_t(i - j)
    Sharpening (Eq. 9):     w_t(i) = w~_t(i)^gamma / sum_j w~_t(j)^gamma

Parameterization:
    - The gate is squashed with a sigmoid, g_t = sigmoid(g).
    - The shift is a single unbounded scalar reduced modulo N. Its integer
      part rotates the weighting and its fractional part linearly blends the
      two neighbouring rotations, which is the shift kernel restricted to
      two adjacent offsets.
    - The sharpening exponent is gamma^2 + 1 >= 1, so sharpening never
      flattens or inverts the distribution.

Every stage keeps the weighting invariant: entries are non-negative and
sum to one.
"""

import math

import torch

from ntm_memory.config import MACHINE_EPSILON
from ntm_memory.nn.units import Units


class GatedWeighting:
    """
    Convex blend of the content weighting and the previous final weighting.

    Args:
        g: Scalar gate Unit (pre-sigmoid)
        wc: Content weighting Units of shape (N,)
        wtm1: Final weighting of the same head at t-1, shape (N,)
    """

    def __init__(self, g: Units, wc: Units, wtm1: Units):
        if wc.shape != wtm1.shape:
            raise ValueError(
                f"Previous weighting has shape {tuple(wtm1.shape)}, expected {tuple(wc.shape)}"
            )
        self.g = g
        self.wc = wc
        self.wtm1 = wtm1

        gt = torch.sigmoid(g.value)
        self.top = Units(gt * wc.value + (1 - gt) * wtm1.value)

    def backward(self) -> None:
        gt = torch.sigmoid(self.g.value)
        up = self.top.grad

        grad = torch.dot(self.wc.value - self.wtm1.value, up)
        self.g.grad.add_(grad * gt * (1 - gt))
        self.wc.grad.add_(gt * up)
        self.wtm1.grad.add_((1 - gt) * up)


class ShiftedWeighting:
    """
    Circular shift of a weighting by a fractional amount.

    Args:
        s: Scalar shift Unit, any real value
        wg: Gated weighting Units of shape (N,)

    Output position i blends input positions (i + z) and (i + z + 1)
    modulo N, where z = s mod N in [0, N).
    """

    def __init__(self, s: Units, wg: Units):
        self.s = s
        self.wg = wg

        n = len(wg)
        # Two fmods so negative shifts land in [0, N)
        self.z = math.fmod(math.fmod(s.item(), n) + n, n)
        self.offset = int(self.z)
        self.simj = 1 - (self.z - math.floor(self.z))

        w = wg.value
        self.top = Units(
            torch.roll(w, -self.offset) * self.simj
            + torch.roll(w, -(self.offset + 1)) * (1 - self.simj)
        )

    def backward(self) -> None:
        w = self.wg.value
        up = self.top.grad

        left = torch.roll(w, -self.offset)
        right = torch.roll(w, -(self.offset + 1))
        self.s.grad.add_(torch.dot(-left + right, up))

        self.wg.grad.add_(
            torch.roll(up, self.offset) * self.simj
            + torch.roll(up, self.offset + 1) * (1 - self.simj)
        )


class Refocus:
    """
    Sharpen a weighting with exponent gamma^2 + 1 and renormalize.

    Args:
        gamma: Scalar sharpening Unit
        sw: Shifted weighting Units of shape (N,)

    Weights are divided by their maximum before exponentiation so the largest
    term is exactly 1. Entries below machine epsilon contribute zero and are
    skipped in the backward pass to keep log(0) out of the gamma gradient.
    """

    def __init__(self, gamma: Units, sw: Units):
        self.gamma = gamma
        self.sw = sw
        self.g = gamma.item() * gamma.item() + 1

        w = sw.value
        self.mask = w >= MACHINE_EPSILON
        self.max_sw = float(w.max())
        self.pows = torch.where(self.mask, (w / self.max_sw) ** self.g, torch.zeros_like(w))
        self.top = Units(self.pows / self.pows.sum())

    def backward(self) -> None:
        top = self.top.value
        up = self.top.grad
        sw = self.sw.value
        mask = self.mask
        # Masked entries divide by 1 instead of ~0; their terms are zeroed below
        safe_sw = torch.where(mask, sw, torch.ones_like(sw))

        gv = torch.dot(up, top)
        sw_grad = (up - gv) * self.g / safe_sw * top
        self.sw.grad.add_(torch.where(mask, sw_grad, torch.zeros_like(sw_grad)))

        lns = torch.where(mask, torch.log(safe_sw), torch.zeros_like(sw))
        lnexps = torch.dot(lns, self.pows) / self.pows.sum()
        terms = up * top * (lns - lnexps)
        grad = torch.where(mask, terms, torch.zeros_like(terms)).sum()
        self.gamma.grad.add_(grad * 2 * self.gamma.item())
