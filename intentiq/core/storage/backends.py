from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from http.cookiejar import CookieJar
from typing import Callable, Dict, Optional

from requests.cookies import RequestsCookieJar, create_cookie

from intentiq.core.config.io import atomic_write_json, read_json_file
from intentiq.core.constants import PCID_EXPIRY_DAYS
from intentiq.core.errors import StorageError, StorageQuotaError

DURABLE = "durable"
COOKIE = "cookie"


class StorageBackend:
    """
    Key/value backend interface. Implementations raise StorageError subclasses;
    swallowing them is the DualBackendStore's job, not the backend's.
    """

    name: str = "base"

    def available(self) -> bool:
        ...

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class DurableBackend(StorageBackend):
    """
    Per-origin durable key/value store, one JSON file per origin under
    ``root_dir``. Mirrors browser local storage: string values and a byte quota.
    """

    name = DURABLE

    def __init__(self, root_dir: str, origin: str, *, max_bytes: int = 5 * 1024 * 1024, enabled: bool = True):
        self.root_dir = root_dir
        self.origin = origin
        self.max_bytes = int(max_bytes)
        self.enabled = bool(enabled)
        self._lock = threading.Lock()

    @property
    def path(self) -> str:
        digest = hashlib.sha256(self.origin.encode("utf-8")).hexdigest()[:16]
        return os.path.join(self.root_dir, f"origin_{digest}.json")

    def available(self) -> bool:
        if not self.enabled:
            return False
        try:
            os.makedirs(self.root_dir, exist_ok=True)
        except OSError:
            return False
        return os.access(self.root_dir, os.W_OK)

    def _load(self) -> Dict[str, str]:
        rr = read_json_file(self.path)
        if rr.ok:
            return {str(k): v for k, v in rr.data.items() if isinstance(v, str)}
        if rr.error == "missing":
            return {}
        raise StorageError("Durable store is unreadable.", path=self.path, error=rr.error)

    def _save(self, items: Dict[str, str]) -> None:
        size = len(json.dumps(items, ensure_ascii=False).encode("utf-8"))
        if size > self.max_bytes:
            raise StorageQuotaError(origin=self.origin, size=size, max_bytes=self.max_bytes)
        try:
            atomic_write_json(self.path, items)
        except OSError as e:
            raise StorageError("Durable store write failed.", path=self.path, error=str(e)) from e

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            items = self._load()
            items[key] = value
            self._save(items)

    def remove(self, key: str) -> None:
        with self._lock:
            items = self._load()
            if key in items:
                del items[key]
                self._save(items)


class CookieBackend(StorageBackend):
    """
    Cookie jar backend. Cookies are first-party to ``domain``, live for
    PCID_EXPIRY_DAYS and carry SameSite=Lax.
    """

    name = COOKIE

    def __init__(self, jar: Optional[CookieJar] = None, *, domain: str = "", path: str = "/", enabled: bool = True, clock: Callable[[], float] = time.time):
        self.jar = jar if jar is not None else RequestsCookieJar()
        self.domain = domain
        self.cookie_path = path
        self.enabled = bool(enabled)
        self._clock = clock

    def available(self) -> bool:
        return self.enabled

    def _expires(self, days: float) -> int:
        return int(self._clock() + days * 24 * 60 * 60)

    def _find(self, key: str):
        now = int(self._clock())
        for c in self.jar:
            if c.name == key and c.domain == self.domain and c.path == self.cookie_path:
                if c.expires is not None and c.expires <= now:
                    return None
                return c
        return None

    def get(self, key: str) -> Optional[str]:
        c = self._find(key)
        return c.value if c is not None else None

    def set(self, key: str, value: str) -> None:
        cookie = create_cookie(
            key,
            value,
            domain=self.domain,
            path=self.cookie_path,
            expires=self._expires(PCID_EXPIRY_DAYS),
            rest={"SameSite": "Lax"},
        )
        try:
            self.jar.set_cookie(cookie)
        except (TypeError, ValueError) as e:
            raise StorageError("Cookie write rejected.", key=key, error=str(e)) from e
        self._persist()

    def remove(self, key: str) -> None:
        try:
            self.jar.clear(self.domain, self.cookie_path, key)
        except KeyError:
            return
        self._persist()

    def _persist(self) -> None:
        # FileCookieJar subclasses (LWPCookieJar, MozillaCookieJar) keep cookies on disk.
        save = getattr(self.jar, "save", None)
        if callable(save) and getattr(self.jar, "filename", None):
            try:
                save(ignore_discard=True, ignore_expires=False)
            except OSError as e:
                raise StorageError("Cookie jar save failed.", error=str(e)) from e
