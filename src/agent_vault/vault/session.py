# Vault - Session (the in-memory vault key)
#
# The derived key lives only here, never on disk. A session is created by
# initialize/unlock and closed by lock, auto-lock, reset or shutdown.

import threading
from datetime import datetime, timezone

from ..core.exceptions import VaultLockedError


class VaultSession:
    """Holds the derived vault key for the lifetime of one unlock.

    Callers pass the session explicitly to VaultStore and AuditTrail
    instead of reading a global key. Closing zeroes the key buffer;
    any later access raises VaultLockedError.
    """

    def __init__(self, key: bytes):
        self._key = bytearray(key)
        self._closed = False
        self._lock = threading.Lock()
        self.opened_at = datetime.now(timezone.utc)

    @property
    def key(self) -> bytes:
        with self._lock:
            if self._closed:
                raise VaultLockedError("Vault is locked. Unlock vault first.")
            return bytes(self._key)

    @property
    def is_open(self) -> bool:
        return not self._closed

    def close(self) -> None:
        """Zero the key buffer. Safe to call more than once."""
        with self._lock:
            for i in range(len(self._key)):
                self._key[i] = 0
            self._closed = True

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<VaultSession {state} opened_at={self.opened_at.isoformat()}>"
