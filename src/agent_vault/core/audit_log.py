# Audit Trail - Logging & Forensics
#
# Append-only log of security-relevant vault events.
# While the vault is unlocked every line is sealed with the vault key
# (AES-256-GCM, base64). While locked, lines are buffered as plaintext
# JSON and resealed on the next unlock (best effort).
# Every event is also emitted through structlog for the process log.

import json
import logging
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ..vault.encryption import EncryptionService
from ..vault.session import VaultSession
from .exceptions import VaultError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of security events that can be logged."""
    # Vault lifecycle
    VAULT_INITIALIZED = "vault_initialized"
    VAULT_UNLOCKED = "vault_unlocked"
    VAULT_UNLOCK_FAILED = "vault_unlock_failed"
    VAULT_LOCKED = "vault_locked"
    VAULT_AUTO_LOCKED = "vault_auto_locked"
    VAULT_RESET = "vault_reset"

    # Credentials
    KEY_ADDED = "key_added"
    KEY_ACCESSED = "key_accessed"
    KEY_UPDATED = "key_updated"
    KEY_DELETED = "key_deleted"

    # Sharing
    KEY_SHARED = "key_shared"
    KEY_SHARE_FAILED = "key_share_failed"
    KEY_UNSHARED = "key_unshared"
    KEY_REQUESTED = "key_requested"
    AGENT_CONNECTED = "agent_connected"
    AGENT_AUTH_FAILED = "agent_auth_failed"
    AGENT_DISCONNECTED = "agent_disconnected"

    # System
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    CONFIG_UPDATED = "config_updated"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: Normal activity
    - ALERT: Security control fired (failed unlock, lockout, bad token)
    - CRITICAL: Data loss or corruption (reset, decryption failure)
    """
    INFO = "info"
    ALERT = "alert"
    CRITICAL = "critical"


_structlog_lock = threading.Lock()


def configure_structlog() -> None:
    """Route structlog through stdlib logging with JSON rendering (once per process)."""
    with _structlog_lock:
        if structlog.is_configured():
            return
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )


class AuditTrail:
    """
    Immutable, append-only audit trail for vault events.

    Features:
    - One JSON event per line, append order = chronological order
    - Sealed with the vault key when a session is open
    - Plaintext buffering while locked, resealed on unlock
    - Corrupt or foreign lines are skipped on read, never fatal
    - Structured (structlog) mirror of each event

    Never put secret values in ``details``.
    """

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        configure_structlog()
        self.logger = structlog.get_logger("agent_vault.audit")

    # ── Write ────────────────────────────────────────────────────────

    def _append(self, line: str) -> None:
        fd = os.open(self.log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        with os.fdopen(fd, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def log_event(
        self,
        event_type: EventType,
        details: Optional[Dict[str, Any]] = None,
        session: Optional[VaultSession] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> Dict[str, Any]:
        """
        Append one event (immutable, append-only).

        Args:
            event_type: Type of event (from EventType enum)
            details: Event details (ids and names only, never values)
            session: Open vault session; seals the line when given
            severity: Severity level for the process log

        Returns:
            The event record as written
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type.value,
            "severity": severity.value,
            "details": details or {},
        }
        line = json.dumps(event, separators=(",", ":"))

        sealed = False
        if session is not None and session.is_open:
            try:
                line = EncryptionService.encrypt_text(line, session.key)
                sealed = True
            except VaultError as e:
                # Session closed between the check and the read; keep plaintext
                logger.warning("Audit event %s written unsealed: %s", event_type.value, e.message)

        with self._lock:
            self._append(line)

        log = self.logger.warning if severity != EventSeverity.INFO else self.logger.info
        log(
            "audit_event",
            event_type=event["event"],
            severity=event["severity"],
            details=event["details"],
            sealed=sealed,
        )
        return event

    # ── Read ─────────────────────────────────────────────────────────

    @staticmethod
    def _parse_plaintext(line: str) -> Optional[Dict[str, Any]]:
        try:
            entry = json.loads(line)
        except ValueError:
            return None
        return entry if isinstance(entry, dict) else None

    def _parse_line(self, line: str, session: Optional[VaultSession]) -> Optional[Dict[str, Any]]:
        if session is not None and session.is_open:
            try:
                return self._parse_plaintext(EncryptionService.decrypt_text(line, session.key))
            except VaultError:
                pass
        return self._parse_plaintext(line)

    def _read_lines(self) -> List[str]:
        if not self.log_path.exists():
            return []
        with open(self.log_path, "r", encoding="utf-8", errors="replace") as f:
            return [line.strip() for line in f if line.strip()]

    def read(self, limit: int = 100, session: Optional[VaultSession] = None) -> List[Dict[str, Any]]:
        """
        Return the newest ``limit`` events, oldest first.

        Each line is decrypted under the session key first, then parsed as
        plaintext. Lines that are neither (sealed under an old key, torn
        writes) are dropped.
        """
        entries = []
        for line in self._read_lines():
            entry = self._parse_line(line, session)
            if entry is not None:
                entries.append(entry)

        if limit <= 0:
            return []
        return entries[-limit:]

    # ── Maintenance ──────────────────────────────────────────────────

    def reseal(self, session: VaultSession) -> int:
        """
        Re-encrypt plaintext lines buffered while the vault was locked.

        Sealed lines (under this or any other key) are kept byte-for-byte.
        The file is rewritten atomically.

        Returns:
            Number of lines resealed
        """
        key = session.key
        with self._lock:
            lines = self._read_lines()
            resealed = 0
            output = []
            for line in lines:
                if self._parse_plaintext(line) is not None:
                    output.append(EncryptionService.encrypt_text(line, key))
                    resealed += 1
                else:
                    output.append(line)

            if resealed == 0:
                return 0

            tmp_path = self.log_path.with_suffix(self.log_path.suffix + ".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("\n".join(output) + "\n")
            os.replace(tmp_path, self.log_path)

        logger.info("Resealed %d plaintext audit entries", resealed)
        return resealed

    def clear(self) -> None:
        """Delete the log file (vault reset)."""
        with self._lock:
            if self.log_path.exists():
                self.log_path.unlink()
