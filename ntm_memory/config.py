"""
Configuration constants for the NTM memory circuit.

All numeric constants are defined here as the single source of truth.
Default sizes follow the copy-task setup the circuit was first trained on
(128 memory locations of width 20, one head).
"""

from dataclasses import dataclass

import torch


# =============================================================================
# Numeric Precision
# =============================================================================

# Every Unit arena is float64; the sharpening and softmax stages rely on it
DTYPE: torch.dtype = torch.float64

# Weights below this are treated as exactly zero by Refocus
MACHINE_EPSILON: float = torch.finfo(DTYPE).eps


# =============================================================================
# Memory Geometry (copy-task defaults)
# =============================================================================

N_LOCATIONS: int = 128            # Memory rows (N)
MEMORY_WIDTH: int = 20            # Memory columns (M)
NUM_HEADS: int = 1                # Read/write heads

# Fast-fail guard: a circular shift needs at least one location
if N_LOCATIONS < 1:
    raise ValueError(f"N_LOCATIONS ({N_LOCATIONS}) must be positive")
if MEMORY_WIDTH < 1:
    raise ValueError(f"MEMORY_WIDTH ({MEMORY_WIDTH}) must be positive")

# Scalars per head besides the three width-M vectors: beta, g, s, gamma
HEAD_SCALARS: int = 4


# =============================================================================
# Validation Tolerances
# =============================================================================

@dataclass
class WeightingTolerance:
    """Tolerance on the sum-to-one invariant of every weighting."""
    sum_atol: float = 1e-9


@dataclass
class GradCheckConfig:
    """Central-difference gradient check settings."""
    eps: float = 1e-6             # Perturbation applied to each input value
    atol: float = 1e-6            # Absolute tolerance on |numeric - analytic|
    rtol: float = 1e-4            # Relative tolerance, scaled by max magnitude


# Create default instances
WEIGHTING_TOLERANCE = WeightingTolerance()
GRAD_CHECK = GradCheckConfig()
