"""
Finite-difference gradient checking for hand-written backward passes.

Every stage of the circuit has a manually derived ``backward``. A wrong sign
or a missing term does not crash anything: training just drifts. This
module compares the analytic gradients against central differences:

    L(x)        = sum_k <outputs_k(x), upstream_k>
    numeric_i   = (L(x + eps * e_i) - L(x - eps * e_i)) / (2 * eps)
    analytic_i  = x_i.grad after stage.backward() with outputs.grad = upstream

The upstream gradients are fixed random tensors so that every output
element contributes with a different weight.

Example:
    >>> inputs = {"u": u, "v": v}
    >>> result = check_gradients(lambda: Similarity(u, v), inputs)
    >>> assert result.passed, result.failures
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import torch

from ntm_memory.config import DTYPE, GRAD_CHECK, GradCheckConfig
from ntm_memory.nn.units import Units

logger = logging.getLogger(__name__)


@dataclass
class GradCheckFailure:
    """One input entry whose analytic gradient disagrees with the numeric one."""
    name: str
    index: Tuple[int, ...]
    analytic: float
    numeric: float


@dataclass
class GradCheckResult:
    """Summary of a gradient check over all input entries."""
    num_checked: int = 0
    max_abs_error: float = 0.0
    max_rel_error: float = 0.0
    failures: List[GradCheckFailure] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.num_checked > 0 and not self.failures


def _default_outputs(stage: Any) -> List[Units]:
    return [stage.top]


def _loss(outputs: List[Units], upstream: List[torch.Tensor]) -> float:
    return sum(float(torch.sum(out.value * up)) for out, up in zip(outputs, upstream))


def check_gradients(
    forward_fn: Callable[[], Any],
    inputs: Dict[str, Units],
    outputs_fn: Callable[[Any], List[Units]] = _default_outputs,
    seed: int = 0,
    config: Optional[GradCheckConfig] = None,
) -> GradCheckResult:
    """
    Check a stage's backward pass against central differences.

    Args:
        forward_fn: Builds the stage from the current values of ``inputs``.
            Called once for the analytic pass and twice per input entry.
        inputs: Named input Units whose gradients are checked
        outputs_fn: Extracts the output Units of a built stage
            (default: ``[stage.top]``)
        seed: Seed for the random upstream gradients
        config: Tolerances and step size (default: GRAD_CHECK)

    Returns:
        GradCheckResult with error statistics and any failing entries
    """
    config = config or GRAD_CHECK
    eps = config.eps

    for units in inputs.values():
        units.zero_grad()

    stage = forward_fn()
    outputs = outputs_fn(stage)
    generator = torch.Generator().manual_seed(seed)
    upstream = [torch.randn(out.shape, generator=generator, dtype=DTYPE) for out in outputs]
    for out, up in zip(outputs, upstream):
        out.grad.copy_(up)
    stage.backward()

    analytic = {name: units.grad.clone() for name, units in inputs.items()}
    result = GradCheckResult()

    for name, units in inputs.items():
        for index in itertools.product(*(range(d) for d in units.shape)):
            original = float(units.value[index])

            units.value[index] = original + eps
            loss_plus = _loss(outputs_fn(forward_fn()), upstream)
            units.value[index] = original - eps
            loss_minus = _loss(outputs_fn(forward_fn()), upstream)
            units.value[index] = original

            numeric = (loss_plus - loss_minus) / (2 * eps)
            expected = float(analytic[name][index])
            abs_err = abs(numeric - expected)
            scale = max(abs(numeric), abs(expected))
            rel_err = abs_err / scale if scale > 0 else 0.0

            result.num_checked += 1
            result.max_abs_error = max(result.max_abs_error, abs_err)
            result.max_rel_error = max(result.max_rel_error, rel_err)

            if abs_err > config.atol + config.rtol * scale:
                failure = GradCheckFailure(name, index, expected, numeric)
                result.failures.append(failure)
                logger.warning(
                    "Gradient mismatch at %s%s: analytic=%.6e numeric=%.6e",
                    name, list(index), expected, numeric,
                )

    logger.info(
        "Gradient check: %d entries, max_abs_error=%.3e, max_rel_error=%.3e, failures=%d",
        result.num_checked, result.max_abs_error, result.max_rel_error, len(result.failures),
    )
    return result
