"""Shared utilities for the NTM memory circuit."""

from ntm_memory.utils.logging import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
