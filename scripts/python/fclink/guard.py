# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Process-wide flash lock.

A firmware flash must own its port exclusively. The flasher takes this
lock before opening a link; MSP connections refuse a port the lock holds.
"""

import threading
from typing import Optional


class FlashLock:
    """Non-blocking single-owner lock that remembers who holds it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._owner: Optional[str] = None
        self._port: Optional[str] = None

    def acquire(self, owner: str, port: Optional[str] = None) -> bool:
        """Take the lock; False if another flash holds it."""
        if not self._lock.acquire(blocking=False):
            return False
        self._owner = owner
        self._port = port
        return True

    def release(self):
        """Release the lock. Releasing an unheld lock is a no-op."""
        if not self._lock.locked():
            return
        self._owner = None
        self._port = None
        self._lock.release()

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def holds(self, port: str) -> bool:
        """True while a flash owns ``port`` (or owns an unspecified port)."""
        return self.locked and (self._port is None or self._port == port)


flash_lock = FlashLock()
