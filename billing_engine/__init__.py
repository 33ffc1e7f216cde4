"""Billing computation and retry engine."""

__version__ = "0.1.0"
