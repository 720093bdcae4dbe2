from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Any]


class ConnectivityMonitor:
    """Holds the host's online/offline signal and notifies listeners on transitions.

    No probing happens here: whatever the host reports through ``set_online``
    is the truth.
    """

    def __init__(self, initial_online: bool = True) -> None:
        self._online = bool(initial_online)
        self._listeners: list[ConnectivityListener] = []
        self._lock = threading.RLock()

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            listeners = list(self._listeners)
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
        return True
