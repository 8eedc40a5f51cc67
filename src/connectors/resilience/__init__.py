"""Retry and backoff primitives for connector HTTP calls.

Modules:
    backoff — Exponential delay with ceiling and jitter
    retry   — Bounded retries with an explicit failure classification table
"""
