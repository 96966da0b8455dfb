# Vault Service - orchestration behind the HTTP/WebSocket surface
#
# Owns the single VaultSession (the in-memory key) and wires together
# VaultStore, UnlockGuard, AuditTrail and SharingChannel.
#
# Every operation except status/init/reset requires an open session and
# raises VaultLockedError otherwise. Any access first applies the
# inactivity auto-lock.

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import VaultSettings
from .core.audit_log import AuditTrail, EventSeverity, EventType
from .core.exceptions import (
    InvalidPasswordError,
    LockedOutError,
    NotConnectedError,
    ShareInProgressError,
    VaultError,
    VaultLockedError,
)
from .sharing.channel import SharingChannel
from .sharing.token import load_or_create_token
from .vault.models import ShareStatus
from .vault.session import VaultSession
from .vault.unlock_guard import UnlockGuard
from .vault.vault_store import VaultStore

logger = logging.getLogger(__name__)

AGENT_DISPLAY_NAME = "Agent"


class VaultService:
    """
    Request surface of the vault daemon.

    Thread-safety: the session reference is guarded by ``_session_lock``;
    VaultStore and AuditTrail serialize their own writes. Share operations
    are coroutines and must run on the event loop that serves the agent
    WebSocket.
    """

    def __init__(self, settings: VaultSettings):
        self.settings = settings
        settings.data_dir.mkdir(parents=True, exist_ok=True)

        self.store = VaultStore(
            settings.db_path,
            max_keys=settings.max_keys,
            rotation_interval_days=settings.rotation_interval_days,
        )
        self.audit = AuditTrail(settings.audit_log_path)
        self.guard = UnlockGuard(
            max_attempts=settings.unlock_max_attempts,
            lockout_seconds=settings.unlock_lockout_minutes * 60,
        )
        self.token = load_or_create_token(settings.token_path)
        self.channel = SharingChannel(
            self.token,
            key_resolver=self.resolve_for_peer,
            confirm_timeout=settings.share_timeout_seconds,
            event_sink=self._log_channel_event,
        )
        self.auto_lock_seconds = settings.auto_lock_minutes * 60

        self._session: Optional[VaultSession] = None
        self._session_lock = threading.RLock()
        self._last_activity = time.monotonic()

    # ── Session management ───────────────────────────────────────────

    def _open_session(self, session: VaultSession) -> None:
        with self._session_lock:
            previous = self._session
            self._session = session
            self._last_activity = time.monotonic()
        if previous is not None and previous is not session:
            previous.close()

        try:
            self.audit.reseal(session)
        except OSError as e:
            logger.warning("Audit reseal skipped: %s", e)

    def _close_session(self) -> Optional[VaultSession]:
        with self._session_lock:
            session, self._session = self._session, None
        if session is not None:
            self.store.lock(session)
        return session

    def check_auto_lock(self) -> bool:
        """Lock the vault if it has been idle past the auto-lock timeout.

        Returns:
            True if this call locked the vault
        """
        with self._session_lock:
            if self._session is None:
                return False
            idle = time.monotonic() - self._last_activity
            if idle < self.auto_lock_seconds:
                return False
            self._close_session()

        logger.info("Vault auto-locked after %.0fs idle", idle)
        self.audit.log_event(
            EventType.VAULT_AUTO_LOCKED,
            {"idle_seconds": int(idle)},
        )
        return True

    def _require_session(self) -> VaultSession:
        self.check_auto_lock()
        with self._session_lock:
            session = self._session
            if session is None or not session.is_open:
                raise VaultLockedError("Vault locked")
            self._last_activity = time.monotonic()
            return session

    def _peek_session(self) -> Optional[VaultSession]:
        with self._session_lock:
            return self._session

    @property
    def is_unlocked(self) -> bool:
        self.check_auto_lock()
        session = self._peek_session()
        return session is not None and session.is_open

    def _log(self, event_type: EventType, details: Optional[Dict[str, Any]] = None,
             severity: EventSeverity = EventSeverity.INFO) -> None:
        self.audit.log_event(event_type, details, session=self._peek_session(), severity=severity)

    def _log_channel_event(self, event_type: EventType, details: Dict[str, Any],
                           severity: EventSeverity) -> None:
        self._log(event_type, details, severity)

    # ── Lifecycle ────────────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        unlocked = self.is_unlocked
        return {
            "initialized": self.store.is_initialized(),
            "unlocked": unlocked,
            "key_count": self.store.count() if unlocked else 0,
            "max_keys": self.store.max_keys,
            "connected": self.channel.connected,
            "agent_name": AGENT_DISPLAY_NAME,
        }

    def init(self, password: str) -> None:
        session = self.store.initialize(password)
        self._open_session(session)
        self._log(EventType.VAULT_INITIALIZED)

    def unlock(self, password: str, source: str = "local") -> None:
        """
        Unlock the vault for ``source`` (client address).

        Raises:
            LockedOutError: Source is in its lockout window
            InvalidPasswordError: Wrong password (carries remaining_attempts)
            NotInitializedError: No vault yet
        """
        try:
            with self.guard.attempt(source):
                try:
                    session = self.store.unlock(password)
                except InvalidPasswordError:
                    remaining = self.guard.record_failure(source)
                    self._log(EventType.VAULT_UNLOCK_FAILED,
                              {"source": source, "reason": "invalid_password",
                               "remaining_attempts": remaining},
                              EventSeverity.ALERT)
                    raise InvalidPasswordError("Invalid password", remaining_attempts=remaining)
                self.guard.record_success(source)
        except LockedOutError as e:
            self._log(EventType.VAULT_UNLOCK_FAILED,
                      {"source": source, "reason": "locked_out", "retry_after": e.retry_after},
                      EventSeverity.ALERT)
            raise

        self._open_session(session)
        self._log(EventType.VAULT_UNLOCKED, {"source": source})

    def lock(self) -> None:
        session = self._require_session()
        self.audit.log_event(EventType.VAULT_LOCKED, {"action": "user_logout"}, session=session)
        self._close_session()

    def shutdown(self) -> None:
        """Drop the key on process exit."""
        if self._close_session() is not None:
            logger.info("Vault locked on shutdown")
        self._log(EventType.SYSTEM_STOP)

    def reset(self) -> None:
        """Destroy all persisted vault state and start over, uninitialized."""
        self._close_session()
        self.store.wipe()
        self.audit.clear()
        self.guard.reset_all()
        self._log(EventType.VAULT_RESET, {"action": "full_wipe"}, EventSeverity.CRITICAL)

    def ws_token(self) -> Dict[str, str]:
        """Agent auth token, only handed out while unlocked."""
        self._require_session()
        return {"token": self.token}

    # ── Credentials ──────────────────────────────────────────────────

    def list_keys(self) -> List[Dict[str, Any]]:
        self._require_session()
        now = datetime.now(timezone.utc)
        return [record.to_dict(now) for record in self.store.list()]

    async def add_key(
        self,
        name: str,
        service: Optional[str],
        url: Optional[str],
        value: str,
        auto_share: bool = False,
    ) -> Dict[str, Any]:
        session = self._require_session()
        key_id = await asyncio.to_thread(self.store.add, session, name, service, url, value)
        await asyncio.to_thread(self._log, EventType.KEY_ADDED, {
            "keyId": key_id,
            "keyName": name,
            "service": service,
            "autoShare": bool(auto_share),
        })

        auto_shared = False
        if auto_share and self.channel.connected:
            try:
                await self._share(session, key_id)
                auto_shared = True
            except VaultError as e:
                logger.info("Auto-share of %s failed: %s", key_id, e.message)

        return {"id": key_id, "auto_shared": auto_shared}

    def get_key_value(self, key_id: str) -> Dict[str, Any]:
        session = self._require_session()
        secret = self.store.get_secret(session, key_id)
        self._log(EventType.KEY_ACCESSED, {"keyId": key_id, "keyName": secret["name"]})
        return {"id": key_id, **secret}

    def update_key(self, key_id: str, fields: Dict[str, Any], reset_rotation: bool = False) -> None:
        session = self._require_session()
        self.store.update(session, key_id, fields, reset_rotation=reset_rotation)
        self._log(EventType.KEY_UPDATED, {
            "keyId": key_id,
            "fields": sorted(fields),
            "resetRotation": bool(reset_rotation),
        })

    def delete_key(self, key_id: str) -> None:
        self._require_session()
        self.store.delete(key_id)
        self._log(EventType.KEY_DELETED, {"keyId": key_id})

    def audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        session = self._require_session()
        return self.audit.read(limit, session=session)

    # ── LLM provider config ──────────────────────────────────────────

    def get_llm_config(self) -> Dict[str, Any]:
        session = self._require_session()
        return self.store.get_config(session)

    def set_llm_config(self, config: Dict[str, Any]) -> None:
        session = self._require_session()
        saved = self.store.set_config(session, config)
        self._log(EventType.CONFIG_UPDATED, {"provider": saved["provider"], "model": saved["model"]})

    # ── Sharing ──────────────────────────────────────────────────────

    def resolve_for_peer(self, key_id: str) -> Dict[str, Any]:
        """Answer an agent get_key request (runs in a worker thread)."""
        session = self._require_session()
        secret = self.store.get_secret(session, key_id)
        self._log(EventType.KEY_REQUESTED, {"keyId": key_id, "keyName": secret["name"]})
        return secret

    async def _share(self, session: VaultSession, key_id: str) -> str:
        payload = await asyncio.to_thread(self.store.get_secret, session, key_id)
        if not self.channel.connected:
            raise NotConnectedError("Agent not connected. Please wait for connection and try again.")

        await asyncio.to_thread(self.store.set_share_status, key_id, ShareStatus.PENDING)
        try:
            agent_name = await self.channel.share_to_peer(key_id, payload)
        except ShareInProgressError:
            raise
        except VaultError as e:
            await asyncio.to_thread(self.store.set_share_status, key_id, ShareStatus.ERROR)
            await asyncio.to_thread(self._log, EventType.KEY_SHARE_FAILED,
                                    {"keyId": key_id, "keyName": payload["name"], "reason": e.code},
                                    EventSeverity.ALERT)
            raise

        await asyncio.to_thread(self.store.mark_shared, key_id, agent_name)
        await asyncio.to_thread(self._log, EventType.KEY_SHARED,
                                {"keyId": key_id, "keyName": payload["name"], "sharedWith": agent_name})
        return agent_name

    async def share_key(self, key_id: str) -> Dict[str, Any]:
        session = self._require_session()
        agent_name = await self._share(session, key_id)
        return {"id": key_id, "shared_with": agent_name}

    def unshare_key(self, key_id: str) -> None:
        """Local bookkeeping only; the agent is not notified."""
        self._require_session()
        self.store.unshare(key_id)
        self._log(EventType.KEY_UNSHARED, {"keyId": key_id})

    async def share_all(self) -> Dict[str, Any]:
        """Share every credential not yet shared, one at a time.

        A failure on one credential is recorded and the batch continues.
        """
        session = self._require_session()
        if not self.channel.connected:
            raise NotConnectedError("Agent not connected")

        unshared = await asyncio.to_thread(self.store.list_unshared)
        results: Dict[str, Any] = {
            "total": len(unshared),
            "success": 0,
            "failed": 0,
            "errors": [],
        }
        for record in unshared:
            try:
                await self._share(session, record.id)
                results["success"] += 1
            except VaultError as e:
                results["failed"] += 1
                results["errors"].append(f"{record.name}: {e.message}")

        return results
