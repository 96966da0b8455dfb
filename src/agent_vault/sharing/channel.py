# Sharing Channel - authenticated duplex link to the trusted agent
#
# Protocol (one JSON message per WebSocket frame, see messages.py):
#   1. Agent connects and sends {type: auth, token}. Bad token →
#      auth_failed + close(1008). Anything else before auth → error.
#   2. The authenticated connection becomes the active peer. A newer
#      authenticated connection replaces it (last authenticated wins);
#      the older socket stays open but no longer receives shares.
#   3. get_key {keyId} → key_data {keyId, data} | error {message}
#   4. Vault → agent shared_secret {keyId, timestamp, data}; the agent
#      confirms with key_received {keyId, agentName}. Each share waits on
#      its own future with an absolute timeout.
#
# All channel state is touched only from the event loop.

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect

from ..core.audit_log import EventSeverity, EventType
from ..core.exceptions import (
    NotConnectedError,
    ShareInProgressError,
    ShareTimeoutError,
    VaultError,
)
from .messages import (
    AuthFailedMessage,
    AuthMessage,
    AuthSuccessMessage,
    ErrorMessage,
    GetKeyMessage,
    KeyDataMessage,
    KeyReceivedMessage,
    MessageError,
    SharedSecretMessage,
    encode_message,
    parse_message,
)
from .token import verify_token

logger = logging.getLogger(__name__)

DEFAULT_CONFIRM_TIMEOUT = 10.0
DEFAULT_AGENT_NAME = "Agent"
POLICY_VIOLATION = 1008  # WebSocket close code for failed auth

KeyResolver = Callable[[str], Dict[str, Any]]
EventSink = Callable[[EventType, Dict[str, Any], EventSeverity], None]


@dataclass
class PendingShare:
    """A share sent to the agent and not yet confirmed."""
    key_id: str
    started_at: float                 # time.monotonic()
    retry_count: int = 0
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class PeerConnection:
    """One accepted WebSocket plus its authentication state."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = str(uuid4())
        self.authenticated = False
        self._send_lock = asyncio.Lock()

    async def send(self, message) -> None:
        async with self._send_lock:
            await self.websocket.send_text(encode_message(message))

    async def close(self, code: int, reason: str) -> None:
        await self.websocket.close(code=code, reason=reason)


class SharingChannel:
    """
    Token-authenticated channel to the single trusted agent.

    Usage::

        channel = SharingChannel(token, key_resolver=service.resolve_for_peer)
        # WebSocket route:
        await websocket.accept()
        await channel.serve(websocket)
        # Share flow:
        agent_name = await channel.share_to_peer(key_id, payload)
    """

    def __init__(
        self,
        token: str,
        key_resolver: Optional[KeyResolver] = None,
        confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT,
        event_sink: Optional[EventSink] = None,
    ):
        self._token = token
        self._key_resolver = key_resolver
        self.confirm_timeout = confirm_timeout
        self._event_sink = event_sink
        self._peer: Optional[PeerConnection] = None
        self._pending: Dict[str, PendingShare] = {}

    # ── State ────────────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        peer = self._peer
        return peer is not None and peer.authenticated

    @property
    def pending_shares(self) -> Dict[str, PendingShare]:
        """Snapshot of in-flight shares keyed by credential id."""
        return dict(self._pending)

    def _emit(self, event_type: EventType, details: Dict[str, Any],
              severity: EventSeverity = EventSeverity.INFO) -> None:
        if self._event_sink is not None:
            self._event_sink(event_type, details, severity)

    # ── Connection handling ──────────────────────────────────────────

    async def serve(self, websocket: WebSocket) -> None:
        """Run the receive loop for one accepted WebSocket until it closes."""
        conn = PeerConnection(websocket)
        logger.info("Agent connection %s opened", conn.connection_id)
        try:
            while True:
                raw = await websocket.receive_text()
                if not await self._dispatch(conn, raw):
                    break
        except WebSocketDisconnect:
            pass
        finally:
            self._on_disconnect(conn)

    async def _dispatch(self, conn: PeerConnection, raw: str) -> bool:
        """Handle one frame. Returns False when the connection must end."""
        try:
            message = parse_message(raw)
        except MessageError as e:
            logger.warning("Invalid message from agent %s: %s", conn.connection_id, e)
            await conn.send(ErrorMessage(message=f"Invalid message: {e}"))
            return True

        if isinstance(message, AuthMessage):
            return await self._handle_auth(conn, message)

        if not conn.authenticated:
            await conn.send(ErrorMessage(message="Not authenticated"))
            return True

        if isinstance(message, GetKeyMessage):
            await self._handle_get_key(conn, message)
        elif isinstance(message, KeyReceivedMessage):
            self._handle_key_received(conn, message)
        else:
            # auth_success, auth_failed, key_data, shared_secret, error:
            # vault-originated kinds that an agent never sends
            await conn.send(ErrorMessage(message=f"Unexpected message type: {message.type}"))
        return True

    async def _handle_auth(self, conn: PeerConnection, message: AuthMessage) -> bool:
        if not verify_token(message.token, self._token):
            logger.warning("Agent authentication failed on %s", conn.connection_id)
            self._emit(EventType.AGENT_AUTH_FAILED, {"connection_id": conn.connection_id},
                       EventSeverity.ALERT)
            await conn.send(AuthFailedMessage())
            await conn.close(POLICY_VIOLATION, "Authentication failed")
            return False

        conn.authenticated = True
        previous = self._peer
        self._peer = conn
        if previous is not None and previous is not conn:
            logger.info("Agent connection %s replaced by %s",
                        previous.connection_id, conn.connection_id)
        await conn.send(AuthSuccessMessage())
        logger.info("Agent authenticated on %s", conn.connection_id)
        self._emit(EventType.AGENT_CONNECTED, {"connection_id": conn.connection_id})
        return True

    async def _handle_get_key(self, conn: PeerConnection, message: GetKeyMessage) -> None:
        if self._key_resolver is None:
            await conn.send(ErrorMessage(message="Vault unavailable"))
            return
        try:
            data = await asyncio.to_thread(self._key_resolver, message.key_id)
        except VaultError as e:
            await conn.send(ErrorMessage(message=e.message))
            return
        await conn.send(KeyDataMessage(key_id=message.key_id, data=data))

    def _handle_key_received(self, conn: PeerConnection, message: KeyReceivedMessage) -> None:
        agent_name = message.agent_name or DEFAULT_AGENT_NAME
        pending = self._pending.pop(message.key_id, None) if message.key_id else None
        if pending is None or pending.future is None or pending.future.done():
            logger.info("Ignoring key_received for %s with no pending share", message.key_id)
            return
        logger.info("Key %s confirmed by %s", message.key_id, agent_name)
        pending.future.set_result(agent_name)

    def _on_disconnect(self, conn: PeerConnection) -> None:
        logger.info("Agent connection %s closed", conn.connection_id)
        if self._peer is conn:
            self._peer = None
            self._emit(EventType.AGENT_DISCONNECTED, {"connection_id": conn.connection_id})

    # ── Share flow ───────────────────────────────────────────────────

    async def share_to_peer(self, key_id: str, payload: Dict[str, Any]) -> str:
        """
        Send one secret to the agent and wait for its confirmation.

        Returns:
            The agent name reported in key_received

        Raises:
            NotConnectedError: No authenticated agent
            ShareInProgressError: A share for key_id is already waiting
            ShareTimeoutError: No confirmation within confirm_timeout
        """
        peer = self._peer
        if peer is None or not peer.authenticated:
            raise NotConnectedError(
                "Agent not connected. Please wait for connection and try again."
            )
        if key_id in self._pending:
            raise ShareInProgressError(
                "A share for this key is already waiting for confirmation", key_id=key_id
            )

        pending = PendingShare(
            key_id=key_id,
            started_at=time.monotonic(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[key_id] = pending

        try:
            try:
                await peer.send(SharedSecretMessage(
                    key_id=key_id,
                    timestamp=datetime.now(timezone.utc).isoformat(),
                    data=payload,
                ))
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                logger.warning("Sending share %s failed: %s", key_id, e)
                raise NotConnectedError("Agent disconnected while sharing", key_id=key_id)

            try:
                return await asyncio.wait_for(pending.future, timeout=self.confirm_timeout)
            except asyncio.TimeoutError:
                raise ShareTimeoutError(
                    f"Timeout: Agent did not confirm receipt within "
                    f"{self.confirm_timeout:g} seconds",
                    key_id=key_id,
                )
        finally:
            if self._pending.get(key_id) is pending:
                del self._pending[key_id]
