"""Durable storage: SQLite store, reconciler, owner-scoped library, legacy import."""

from .legacy import LEGACY_KEYS, LegacyKeyValueStore, migrate_legacy
from .library import Collection, Library
from .reconcile import ReconcileResult, reconcile
from .store import PARTITIONS, LocalStore, Transaction

__all__ = [
    "LEGACY_KEYS",
    "PARTITIONS",
    "Collection",
    "LegacyKeyValueStore",
    "Library",
    "LocalStore",
    "ReconcileResult",
    "Transaction",
    "migrate_legacy",
    "reconcile",
]
