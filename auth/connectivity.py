"""
auth/connectivity.py -- Network availability checks.

The coordinator asks is_network_available() before any provider call and
fails fast with Error(NETWORK) when offline. The call is synchronous and
must not block on the network: ProbeConnectivity answers from a cached
probe result and refreshes it in a background thread when stale.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Protocol, runtime_checkable

logger = logging.getLogger("authcore.auth.connectivity")


@runtime_checkable
class ConnectivityCheck(Protocol):
    def is_network_available(self) -> bool: ...


class AlwaysOnline:
    """Connectivity check for environments where the provider is local."""

    def is_network_available(self) -> bool:
        return True


class ProbeConnectivity:
    """TCP-connect probe with a cached answer.

    The first call reports online optimistically and kicks off a probe; a
    wrong optimistic answer only costs one NETWORK error from the provider
    call, which the coordinator classifies the same way.
    """

    def __init__(self, host: str, port: int, timeout: float = 1.5, ttl: float = 5.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.ttl = ttl
        self._online = True
        self._checked_at = float("-inf")
        self._probing = False
        self._lock = threading.Lock()

    def _probe(self) -> None:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                online = True
        except OSError as e:
            logger.info("Connectivity probe to %s:%d failed: %s", self.host, self.port, e)
            online = False
        with self._lock:
            self._online = online
            self._checked_at = time.monotonic()
            self._probing = False

    def is_network_available(self) -> bool:
        with self._lock:
            stale = time.monotonic() - self._checked_at > self.ttl
            if stale and not self._probing:
                self._probing = True
                threading.Thread(target=self._probe, name="connectivity-probe", daemon=True).start()
            return self._online
