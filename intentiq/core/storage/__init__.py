from __future__ import annotations

from intentiq.core.storage.backends import COOKIE, DURABLE, CookieBackend, DurableBackend, StorageBackend
from intentiq.core.storage.store import DualBackendStore, define_storage_types

__all__ = [
    "COOKIE",
    "DURABLE",
    "CookieBackend",
    "DualBackendStore",
    "DurableBackend",
    "StorageBackend",
    "define_storage_types",
]
