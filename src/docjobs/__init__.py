"""Distributed documentation job engine."""

__version__ = "0.1.0"
