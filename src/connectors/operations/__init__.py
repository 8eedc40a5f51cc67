"""Sync operations for Nocturne connectors.

A sync operation performs one attempt against a vendor API and returns
True on success.  The scheduler decides when to call it; the operation
decides how to talk to the vendor.

Available operations:
    NightscoutSyncOperation — Nightscout-compatible REST pull (entries, treatments)

Operations are registered by source slug.  Each registry entry is a factory
called as ``factory(metrics=..., settings=...)``.
"""

from __future__ import annotations

from typing import Callable

from src.connectors.operations.nightscout import NightscoutSyncOperation

__all__ = [
    "NightscoutSyncOperation",
    "OPERATION_REGISTRY",
    "get_sync_operation",
    "register_sync_operation",
]

# Registry: source_id → operation factory
OPERATION_REGISTRY: dict[str, Callable] = {
    "nightscout": NightscoutSyncOperation,
}


def register_sync_operation(source_id: str) -> Callable[[Callable], Callable]:
    """Class decorator registering a sync operation factory under ``source_id``.

    Usage::

        @register_sync_operation("dexcom")
        class DexcomSyncOperation: ...
    """

    def decorator(factory: Callable) -> Callable:
        OPERATION_REGISTRY[source_id] = factory
        return factory

    return decorator


def get_sync_operation(source_id: str) -> Callable:
    """Return the operation factory for a given source slug.

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in OPERATION_REGISTRY:
        raise KeyError(
            f"No sync operation registered for source '{source_id}'. "
            f"Available: {list(OPERATION_REGISTRY)}"
        )
    return OPERATION_REGISTRY[source_id]
