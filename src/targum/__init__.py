"""Targum manuscript witness reconciliation pipeline."""

__version__ = "0.1.0"
