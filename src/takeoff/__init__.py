"""Takeoff: deterministic quantity calculation engine with a hash-chained ledger."""

__version__ = "0.1.0"
