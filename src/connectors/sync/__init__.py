"""Connector sync infrastructure.

Modules:
    scheduler — Resilient polling loop (adaptive intervals, standby, backfill)
    host      — Runs one scheduler task per configured connector
"""
