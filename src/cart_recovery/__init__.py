"""Abandoned-cart detection and recovery campaign engine."""

__version__ = "1.0.0"
