"""Unit arena primitives for the NTM memory circuit."""

from ntm_memory.nn.units import Units, uniform_weighting

__all__ = ["Units", "uniform_weighting"]
