"""Adaptive catalog harvesting engine."""

__version__ = "0.3.0"
