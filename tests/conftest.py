"""
Shared pytest fixtures for the AgentVault test suite.

Every test gets its own data directory under tmp_path, so no test ever
touches ~/.agentvault. Key derivation is made cheap (PBKDF2 at 600k
iterations would make the suite take minutes).
"""

import asyncio
import json

import pytest
from fastapi import WebSocketDisconnect

from agent_vault.config import VaultSettings
from agent_vault.service import VaultService
from agent_vault.vault.encryption import EncryptionService

MASTER_PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def _fast_key_derivation(monkeypatch):
    monkeypatch.setattr(EncryptionService, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def settings(tmp_path):
    return VaultSettings(data_dir=tmp_path / "vault", share_timeout_seconds=0.5)


@pytest.fixture
def service(settings):
    svc = VaultService(settings)
    yield svc
    svc.shutdown()


@pytest.fixture
def unlocked_service(service):
    service.init(MASTER_PASSWORD)
    return service


class FakeWebSocket:
    """In-memory stand-in for a Starlette WebSocket.

    Tests push agent frames with ``feed()`` and read what the vault sent
    from ``sent`` (decoded JSON). ``disconnect()`` ends the receive loop.
    """

    _DISCONNECT = object()

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed_with = None
        self.on_send = None

    def feed(self, message: dict) -> None:
        self.incoming.put_nowait(json.dumps(message))

    def feed_raw(self, raw: str) -> None:
        self.incoming.put_nowait(raw)

    def disconnect(self) -> None:
        self.incoming.put_nowait(self._DISCONNECT)

    async def receive_text(self) -> str:
        item = await self.incoming.get()
        if item is self._DISCONNECT:
            raise WebSocketDisconnect(code=1000)
        return item

    async def send_text(self, data: str) -> None:
        message = json.loads(data)
        self.sent.append(message)
        if self.on_send is not None:
            self.on_send(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code
        self.disconnect()

    def of_type(self, message_type: str):
        return [m for m in self.sent if m["type"] == message_type]


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
