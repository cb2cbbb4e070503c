"""Timeseries API Package: versioned read-only HTTP API over a pooled time-series store.

Invariants:
    - Package root contains no executable code (import side-effects prohibited)
"""
