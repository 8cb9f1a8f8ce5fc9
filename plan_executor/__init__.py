"""Deterministic executor for declarative repository change plans."""

__version__ = "0.1.0"
