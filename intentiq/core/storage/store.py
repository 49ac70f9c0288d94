from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from intentiq.core.errors import StorageError
from intentiq.core.logger import get_logger
from intentiq.core.storage.backends import COOKIE, DURABLE, StorageBackend

# "html5" is the name host pages use for browser local storage.
_ALIASES = {"html5": DURABLE, DURABLE: DURABLE, COOKIE: COOKIE}


def define_storage_types(params: Optional[Iterable[str]]) -> List[str]:
    """Normalise a caller allow-list; unknown entries are dropped, empty -> [durable]."""
    if not params or isinstance(params, (str, bytes)):
        return [DURABLE]
    out: List[str] = []
    for item in params:
        name = _ALIASES.get(str(item).lower()) if isinstance(item, str) else None
        if name and name not in out:
            out.append(name)
    return out or [DURABLE]


class DualBackendStore:
    """
    Best-effort get/set/remove over the durable store and the cookie jar.

    Reads prefer durable and fall back to cookies; writes go to every
    permitted backend so either one alone can restore state. Backend errors
    are logged and dropped: a missing value means "first visit".
    """

    def __init__(self, *, durable: Optional[StorageBackend] = None, cookie: Optional[StorageBackend] = None, logger: Optional[logging.Logger] = None):
        self.backends: Dict[str, StorageBackend] = {}
        if durable is not None:
            self.backends[DURABLE] = durable
        if cookie is not None:
            self.backends[COOKIE] = cookie
        self.logger = get_logger(logger)

    def _usable(self, allowed: Iterable[str]) -> List[StorageBackend]:
        out: List[StorageBackend] = []
        for name in (DURABLE, COOKIE):
            if name not in allowed:
                continue
            backend = self.backends.get(name)
            if backend is None:
                continue
            try:
                if backend.available():
                    out.append(backend)
            except StorageError as e:
                self.logger.warning(f"Storage backend {name} unavailable: {e}")
        return out

    def read(self, key: str, allowed: Iterable[str]) -> Optional[str]:
        for backend in self._usable(define_storage_types(allowed)):
            try:
                value = backend.get(key)
            except StorageError as e:
                self.logger.error(f"Storage read failed ({backend.name}, {key}): {e}")
                continue
            if value is not None:
                return value
        return None

    def write(self, key: str, value: Optional[str], allowed: Iterable[str]) -> None:
        if not value:
            return
        self.logger.debug(f"storing data: key={key} backends={list(allowed)}")
        for backend in self._usable(define_storage_types(allowed)):
            try:
                backend.set(key, value)
            except StorageError as e:
                self.logger.error(f"Storage write failed ({backend.name}, {key}): {e}")

    def remove(self, key: str, allowed: Iterable[str]) -> None:
        for backend in self._usable(define_storage_types(allowed)):
            try:
                backend.remove(key)
            except StorageError as e:
                self.logger.error(f"Storage remove failed ({backend.name}, {key}): {e}")
