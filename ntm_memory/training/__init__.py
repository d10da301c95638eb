"""
Validation utilities for the NTM memory circuit.

- Finite-difference gradient checks for every hand-written backward pass
"""

from ntm_memory.training.gradcheck import (
    GradCheckFailure,
    GradCheckResult,
    check_gradients,
)

__all__ = [
    "GradCheckFailure",
    "GradCheckResult",
    "check_gradients",
]
