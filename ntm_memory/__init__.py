"""Differentiable NTM memory circuit with hand-written reverse-mode gradients."""

__version__ = "0.1.0"
