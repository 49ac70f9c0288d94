from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from intentiq.core.constants import BLACK_LIST, DEFAULT_TIMEOUT_MS, NOT_YET_DEFINED, WITHOUT_IIQ
from intentiq.core.identity.models import empty_identity

PartnerCallback = Callable[[Any, str], Any]


class CallbackArbiter:
    """
    Delivers the partner callback at most once.

    Armed with a timeout; whichever of {timer, resolution} calls ``fire``
    first wins and the other becomes a no-op. ``snapshot`` is read at
    delivery time and returns ``(identity, group)``.
    """

    def __init__(
        self,
        callback: Optional[PartnerCallback],
        *,
        snapshot: Callable[[], "tuple[Any, Optional[str]]"],
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        force_empty: bool = False,
        logger: Optional[logging.LoggerAdapter] = None,
    ):
        self.callback = callback
        self.snapshot = snapshot
        self.timeout_ms = int(timeout_ms or DEFAULT_TIMEOUT_MS)
        self.force_empty = bool(force_empty)
        self.logger = logger
        self._lock = threading.Lock()
        self._fired = False
        self._delivered = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self.delivered_with: Optional["tuple[Any, str]"] = None
        self.delivered_by: Optional[str] = None

    @property
    def fired(self) -> bool:
        with self._lock:
            return self._fired

    def arm(self) -> None:
        with self._lock:
            if self._fired or self._timer is not None:
                return
            t = threading.Timer(self.timeout_ms / 1000.0, self._on_timeout)
            t.daemon = True
            self._timer = t
        t.start()

    def cancel_timer(self) -> None:
        with self._lock:
            t, self._timer = self._timer, None
        if t is not None:
            t.cancel()

    def _on_timeout(self) -> None:
        if self.logger is not None:
            self.logger.info(f"Partner callback timeout after {self.timeout_ms} ms")
        self.fire(reason="timeout")

    def fire(self, *, reason: str = "resolved") -> bool:
        """Deliver the current snapshot. Returns False if already delivered."""
        identity, group = self.snapshot()
        if self.force_empty or group == WITHOUT_IIQ:
            identity = empty_identity()
        return self._deliver(identity, group or NOT_YET_DEFINED, reason=reason)

    def fire_blacklisted(self) -> bool:
        return self._deliver("", BLACK_LIST, reason="blacklisted")

    def fire_empty(self, *, reason: str) -> bool:
        """Empty identity, but still the stored cohort when there is one."""
        _, group = self.snapshot()
        return self._deliver(empty_identity(), group or NOT_YET_DEFINED, reason=reason)

    def _deliver(self, identity: Any, group: str, *, reason: str) -> bool:
        with self._lock:
            if self._fired:
                return False
            self._fired = True
            t, self._timer = self._timer, None
        if t is not None:
            t.cancel()
        self.delivered_with = (identity, group)
        self.delivered_by = reason
        try:
            if self.callback is not None:
                self.callback(identity, group)
        except Exception as e:  # noqa: BLE001
            if self.logger is not None:
                self.logger.error(f"Partner callback raised: {e}")
        finally:
            self._delivered.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._delivered.wait(timeout)
