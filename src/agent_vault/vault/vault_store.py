# Vault Store - Encrypted Credential Database
#
# SQLite database with AES-256-GCM encrypted value fields
# CRUD operations for credentials + rotation/share bookkeeping
# Master password verification via encrypted canary (falls back to
# checking a stored record for vaults created without one)

import json
import logging
import secrets
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..core.db import transaction
from ..core.exceptions import (
    CapacityError,
    DecryptionError,
    InitializedError,
    IntegrityError,
    InvalidPasswordError,
    NotFoundError,
    NotInitializedError,
    ValidationError,
    VaultCorruptedError,
)
from .encryption import EncryptionService
from .models import DEFAULT_ROTATION_INTERVAL_DAYS, CredentialRecord, ShareStatus
from .session import VaultSession
from .validation import (
    DEFAULT_LLM_MODEL,
    DEFAULT_LLM_PROVIDER,
    validate_field,
    validate_llm_config,
    validate_master_password,
    validate_name,
    validate_rotation_interval,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_KEYS = 20
SCHEMA_VERSION = "2.0"

_UPDATABLE_FIELDS = {"name", "service", "url", "value", "rotation_interval_days"}
LLM_CONFIG_META_KEY = "llm_config"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VaultStore:
    """
    Persistent table of encrypted credentials plus vault metadata.

    Security:
    - Each value encrypted with AES-256-GCM under the session key
    - Master password verified via encrypted canary (AGENTVAULT_OK)
    - Master password never stored (only salt for key derivation)

    Concurrency:
    - Every mutation holds ``_lock`` and runs in a BEGIN IMMEDIATE
      transaction, so the capacity check in add() is atomic with the insert
    - Each call opens a fresh WAL connection; readers never see a
      half-written row
    """

    CANARY_PLAINTEXT = "AGENTVAULT_OK"

    def __init__(
        self,
        db_path: Path,
        max_keys: int = DEFAULT_MAX_KEYS,
        rotation_interval_days: int = DEFAULT_ROTATION_INTERVAL_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_keys = max_keys
        self.rotation_interval_days = rotation_interval_days
        self._clock = clock
        self._lock = threading.RLock()
        self._init_database()

    # ── Connection ───────────────────────────────────────────────────

    def _connect(self, write: bool = False):
        return transaction(self.db_path, write=write)

    def _init_database(self):
        with self._lock:
            with self._connect(write=True) as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS vault_meta (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS keys (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        service TEXT,
                        url TEXT,
                        encrypted_value TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        last_rotated TEXT NOT NULL,
                        rotation_interval INTEGER NOT NULL DEFAULT 90,
                        shared_with TEXT DEFAULT NULL,
                        share_status TEXT NOT NULL DEFAULT 'none'
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_keys_created
                    ON keys(created_at)
                """)

    @staticmethod
    def _get_meta(conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute("SELECT value FROM vault_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CredentialRecord:
        return CredentialRecord(
            id=row["id"],
            name=row["name"],
            service=row["service"],
            url=row["url"],
            encrypted_value=row["encrypted_value"],
            created_at=row["created_at"],
            last_rotated_at=row["last_rotated"],
            rotation_interval_days=row["rotation_interval"],
            shared_with=row["shared_with"],
            share_status=ShareStatus(row["share_status"] or ShareStatus.NONE.value),
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    def is_initialized(self) -> bool:
        with self._connect() as conn:
            return self._get_meta(conn, "initialized") == "true"

    def initialize(self, master_password: str) -> VaultSession:
        """
        Create the vault metadata and return an open session.

        Raises:
            ValidationError: Password too short/long
            InitializedError: Vault already initialized
        """
        validate_master_password(master_password)
        if self.is_initialized():
            raise InitializedError("Vault already initialized. Unlock it instead.")

        salt = EncryptionService.generate_salt()
        key = EncryptionService.derive_key(master_password, salt)
        canary = EncryptionService.encrypt_text(self.CANARY_PLAINTEXT, key)
        now = self._clock().isoformat()

        with self._lock:
            with self._connect(write=True) as conn:
                # Re-check under the write lock; another caller may have won
                if self._get_meta(conn, "initialized") == "true":
                    raise InitializedError("Vault already initialized. Unlock it instead.")
                conn.executemany(
                    "INSERT OR REPLACE INTO vault_meta (key, value) VALUES (?, ?)",
                    [
                        ("salt", EncryptionService.encode_for_storage(salt)),
                        ("verify_blob", canary),
                        ("created_at", now),
                        ("version", SCHEMA_VERSION),
                        ("initialized", "true"),
                    ],
                )

        logger.info("Vault initialized at %s", self.db_path)
        return VaultSession(key)

    def unlock(self, master_password: str) -> VaultSession:
        """
        Derive the key from the stored salt and verify it.

        The canary is checked first; vaults without one are checked
        against the first stored record. Nothing is written either way.

        Raises:
            NotInitializedError: No vault metadata
            VaultCorruptedError: Salt missing or unreadable (reset required)
            InvalidPasswordError: Verifier failed its integrity check
        """
        if not isinstance(master_password, str) or not master_password:
            raise ValidationError("Password required", field="password")

        try:
            with self._connect() as conn:
                if self._get_meta(conn, "initialized") != "true":
                    raise NotInitializedError("Vault not initialized")
                salt_b64 = self._get_meta(conn, "salt")
                verifier = self._get_meta(conn, "verify_blob")
                if verifier is None:
                    row = conn.execute("SELECT encrypted_value FROM keys LIMIT 1").fetchone()
                    verifier = row["encrypted_value"] if row else None
        except sqlite3.DatabaseError as e:
            raise VaultCorruptedError(f"Vault database unreadable: {e}")

        if not salt_b64:
            raise VaultCorruptedError("Corrupted vault: missing salt. Reset required.")
        try:
            salt = EncryptionService.decode_from_storage(salt_b64)
        except (ValueError, TypeError):
            raise VaultCorruptedError("Corrupted vault: invalid salt. Reset required.")

        key = EncryptionService.derive_key(master_password, salt)

        if verifier is not None:
            try:
                EncryptionService.decrypt_text(verifier, key)
            except IntegrityError:
                raise InvalidPasswordError("Invalid password")

        return VaultSession(key)

    def lock(self, session: Optional[VaultSession]) -> None:
        """Drop the in-memory key. Records are untouched."""
        if session is not None:
            session.close()

    def wipe(self) -> None:
        """Delete the database (and its WAL files) and recreate an empty schema."""
        with self._lock:
            for suffix in ("", "-wal", "-shm"):
                path = Path(str(self.db_path) + suffix)
                if path.exists():
                    path.unlink()
            self._init_database()
        logger.warning("Vault database wiped: %s", self.db_path)

    # ── Credentials ──────────────────────────────────────────────────

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM keys").fetchone()[0]

    def add(
        self,
        session: VaultSession,
        name: str,
        service: Optional[str],
        url: Optional[str],
        value: str,
    ) -> str:
        """
        Encrypt and store a new credential.

        Returns:
            The new credential id (32 hex chars)

        Raises:
            ValidationError: Bad input (checked before storage is touched)
            CapacityError: max_keys already stored
            VaultLockedError: Session closed
        """
        validate_name(name)
        validate_field("service", service)
        validate_field("url", url)
        validate_field("value", value, required=True)

        encrypted = EncryptionService.encrypt_text(value, session.key)
        now = self._clock().isoformat()

        with self._lock:
            with self._connect(write=True) as conn:
                count = conn.execute("SELECT COUNT(*) FROM keys").fetchone()[0]
                if count >= self.max_keys:
                    raise CapacityError(f"Maximum {self.max_keys} keys allowed",
                                        max_keys=self.max_keys)

                key_id = secrets.token_hex(16)
                while conn.execute("SELECT 1 FROM keys WHERE id = ?", (key_id,)).fetchone():
                    key_id = secrets.token_hex(16)

                conn.execute("""
                    INSERT INTO keys
                    (id, name, service, url, encrypted_value, created_at,
                     last_rotated, rotation_interval, shared_with, share_status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
                """, (
                    key_id, name, service or None, url or None, encrypted,
                    now, now, self.rotation_interval_days, ShareStatus.NONE.value,
                ))

        return key_id

    def get(self, key_id: str) -> CredentialRecord:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM keys WHERE id = ?", (key_id,)).fetchone()
        if row is None:
            raise NotFoundError("Key not found", key_id=key_id)
        return self._row_to_record(row)

    def get_value(self, session: VaultSession, key_id: str) -> str:
        """
        Decrypt one stored value.

        Raises:
            NotFoundError: Unknown id
            DecryptionError: Stored value does not verify under this key
        """
        record = self.get(key_id)
        try:
            return EncryptionService.decrypt_text(record.encrypted_value, session.key)
        except IntegrityError as e:
            logger.error("Decryption failed for key %s: %s", key_id, e.message)
            raise DecryptionError("Decryption failed", key_id=key_id)

    def get_secret(self, session: VaultSession, key_id: str) -> Dict[str, Any]:
        """Payload sent to the agent: metadata plus the decrypted value."""
        record = self.get(key_id)
        return {
            "name": record.name,
            "service": record.service,
            "url": record.url,
            "value": self.get_value(session, key_id),
        }

    def list(self) -> List[CredentialRecord]:
        """All credentials, newest created first (values stay encrypted)."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM keys ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_unshared(self) -> List[CredentialRecord]:
        return [record for record in self.list() if not record.shared_with]

    def update(
        self,
        session: VaultSession,
        key_id: str,
        fields: Dict[str, Any],
        reset_rotation: bool = False,
    ) -> None:
        """
        Update a credential.

        A new ``value`` is re-encrypted under the current key. With
        ``reset_rotation`` the rotation clock restarts and any share is
        cleared (a rotated secret invalidates what the agent holds);
        without it rotation timing and share state are preserved.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        assignments: Dict[str, Any] = {}
        if "name" in fields:
            assignments["name"] = validate_name(fields["name"])
        if "service" in fields:
            assignments["service"] = validate_field("service", fields["service"])
        if "url" in fields:
            assignments["url"] = validate_field("url", fields["url"])
        if "rotation_interval_days" in fields:
            assignments["rotation_interval"] = validate_rotation_interval(
                fields["rotation_interval_days"]
            )
        if "value" in fields:
            validate_field("value", fields["value"], required=True)
            assignments["encrypted_value"] = EncryptionService.encrypt_text(
                fields["value"], session.key
            )

        if reset_rotation:
            assignments["last_rotated"] = self._clock().isoformat()
            assignments["shared_with"] = None
            assignments["share_status"] = ShareStatus.NONE.value

        with self._lock:
            with self._connect(write=True) as conn:
                if not conn.execute("SELECT 1 FROM keys WHERE id = ?", (key_id,)).fetchone():
                    raise NotFoundError("Key not found", key_id=key_id)
                if assignments:
                    columns = ", ".join(f"{column} = ?" for column in assignments)
                    conn.execute(
                        f"UPDATE keys SET {columns} WHERE id = ?",
                        (*assignments.values(), key_id),
                    )

    def delete(self, key_id: str) -> None:
        """Remove a credential. Unknown ids raise NotFoundError."""
        with self._lock:
            with self._connect(write=True) as conn:
                cursor = conn.execute("DELETE FROM keys WHERE id = ?", (key_id,))
                if cursor.rowcount == 0:
                    raise NotFoundError("Key not found", key_id=key_id)

    # ── Share bookkeeping ────────────────────────────────────────────

    def _update_share(self, key_id: str, shared_with: Optional[str], status: ShareStatus,
                      keep_shared_with: bool = False) -> None:
        with self._lock:
            with self._connect(write=True) as conn:
                if keep_shared_with:
                    cursor = conn.execute(
                        "UPDATE keys SET share_status = ? WHERE id = ?",
                        (status.value, key_id),
                    )
                else:
                    cursor = conn.execute(
                        "UPDATE keys SET shared_with = ?, share_status = ? WHERE id = ?",
                        (shared_with, status.value, key_id),
                    )
                if cursor.rowcount == 0:
                    raise NotFoundError("Key not found", key_id=key_id)

    def set_share_status(self, key_id: str, status: ShareStatus) -> None:
        self._update_share(key_id, None, status, keep_shared_with=True)

    def mark_shared(self, key_id: str, agent_name: str) -> None:
        self._update_share(key_id, agent_name, ShareStatus.SHARED)

    def unshare(self, key_id: str) -> None:
        self._update_share(key_id, None, ShareStatus.NONE)

    # ── LLM provider config ──────────────────────────────────────────

    def get_config(self, session: VaultSession) -> Dict[str, Any]:
        """
        Decrypted LLM config, or the defaults (no API key) if none is saved.

        Raises:
            DecryptionError: Stored config does not verify under this key
        """
        with self._connect() as conn:
            blob = self._get_meta(conn, LLM_CONFIG_META_KEY)
        if blob is None:
            return {"provider": DEFAULT_LLM_PROVIDER, "model": DEFAULT_LLM_MODEL, "apiKey": None}

        try:
            return json.loads(EncryptionService.decrypt_text(blob, session.key))
        except IntegrityError as e:
            logger.error("LLM config decryption failed: %s", e.message)
            raise DecryptionError("Decryption failed")

    def set_config(self, session: VaultSession, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and store the LLM config sealed under the session key."""
        normalized = validate_llm_config(config)
        blob = EncryptionService.encrypt_text(json.dumps(normalized), session.key)
        with self._lock:
            with self._connect(write=True) as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO vault_meta (key, value) VALUES (?, ?)",
                    (LLM_CONFIG_META_KEY, blob),
                )
        return normalized
