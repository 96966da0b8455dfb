"""
Tests for SharingChannel - token-authenticated WebSocket link to the agent.

Covers:
- Auth success / failure (auth_failed + close 1008)
- Messages before auth are refused
- get_key through the key resolver
- share_to_peer: confirmation, timeout, not connected, share in progress
- Late confirmations are ignored
- Last authenticated connection wins
- Wire messages (camelCase aliases, discriminated by type)
"""

import asyncio

import pytest

from agent_vault.core.audit_log import EventType
from agent_vault.core.exceptions import (
    NotConnectedError,
    NotFoundError,
    ShareInProgressError,
    ShareTimeoutError,
)
from agent_vault.sharing.channel import POLICY_VIOLATION, SharingChannel
from agent_vault.sharing.messages import (
    GetKeyMessage,
    KeyDataMessage,
    MessageError,
    encode_message,
    parse_message,
)
from agent_vault.sharing.token import load_or_create_token, verify_token

from conftest import FakeWebSocket, wait_for

TOKEN = "a" * 64
SECRET = {"name": "OpenAI", "service": "openai", "url": None, "value": "sk-1"}


def _resolver(key_id):
    if key_id != "k1":
        raise NotFoundError("Key not found")
    return SECRET


async def _connect(channel, token=TOKEN):
    ws = FakeWebSocket()
    task = asyncio.create_task(channel.serve(ws))
    ws.feed({"type": "auth", "token": token})
    await wait_for(lambda: ws.sent)
    return ws, task


async def _close(ws, task):
    ws.disconnect()
    await asyncio.wait_for(task, timeout=2)


def _auto_confirm(ws, agent_name="Claude"):
    def on_send(message):
        if message["type"] == "shared_secret":
            ws.feed({"type": "key_received", "keyId": message["keyId"], "agentName": agent_name})
    ws.on_send = on_send


class TestMessages:
    def test_parse_camel_case(self):
        message = parse_message('{"type": "get_key", "keyId": "k1"}')
        assert isinstance(message, GetKeyMessage)
        assert message.key_id == "k1"

    def test_encode_uses_aliases(self):
        raw = encode_message(KeyDataMessage(key_id="k1", data={"value": "x"}))
        assert '"keyId":"k1"' in raw

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"type": "unknown"}',
        '{"type": "get_key"}',
        '{"token": "x"}',
    ])
    def test_invalid_messages(self, raw):
        with pytest.raises(MessageError):
            parse_message(raw)


class TestToken:
    def test_token_created_once(self, tmp_path):
        path = tmp_path / ".ws-token"
        token = load_or_create_token(path)
        assert len(token) == 64
        int(token, 16)
        assert load_or_create_token(path) == token

    def test_verify(self):
        assert verify_token(TOKEN, TOKEN)
        assert not verify_token("b" * 64, TOKEN)
        assert not verify_token("", TOKEN)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_auth_success(self):
        events = []
        channel = SharingChannel(TOKEN, event_sink=lambda t, d, s: events.append(t))
        ws, task = await _connect(channel)

        assert ws.sent == [{"type": "auth_success"}]
        assert channel.connected
        assert EventType.AGENT_CONNECTED in events

        await _close(ws, task)
        assert not channel.connected
        assert EventType.AGENT_DISCONNECTED in events

    @pytest.mark.asyncio
    async def test_auth_failure_closes(self):
        events = []
        channel = SharingChannel(TOKEN, event_sink=lambda t, d, s: events.append(t))
        ws, task = await _connect(channel, token="wrong")
        await asyncio.wait_for(task, timeout=2)

        assert ws.sent[0]["type"] == "auth_failed"
        assert ws.closed_with == POLICY_VIOLATION
        assert not channel.connected
        assert events == [EventType.AGENT_AUTH_FAILED]

    @pytest.mark.asyncio
    async def test_messages_before_auth_refused(self):
        channel = SharingChannel(TOKEN, key_resolver=_resolver)
        ws = FakeWebSocket()
        task = asyncio.create_task(channel.serve(ws))
        ws.feed({"type": "get_key", "keyId": "k1"})
        await wait_for(lambda: ws.sent)

        assert ws.sent == [{"type": "error", "message": "Not authenticated"}]
        assert not channel.connected
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_invalid_frame_keeps_connection(self):
        channel = SharingChannel(TOKEN)
        ws, task = await _connect(channel)
        ws.feed_raw("{nope")
        await wait_for(lambda: len(ws.sent) == 2)

        assert ws.sent[1]["type"] == "error"
        assert ws.sent[1]["message"].startswith("Invalid message")
        assert channel.connected
        await _close(ws, task)


class TestGetKey:
    @pytest.mark.asyncio
    async def test_get_key(self):
        channel = SharingChannel(TOKEN, key_resolver=_resolver)
        ws, task = await _connect(channel)
        ws.feed({"type": "get_key", "keyId": "k1"})
        await wait_for(lambda: len(ws.sent) == 2)

        assert ws.sent[1] == {"type": "key_data", "keyId": "k1", "data": SECRET}
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_get_key_unknown(self):
        channel = SharingChannel(TOKEN, key_resolver=_resolver)
        ws, task = await _connect(channel)
        ws.feed({"type": "get_key", "keyId": "missing"})
        await wait_for(lambda: len(ws.sent) == 2)

        assert ws.sent[1] == {"type": "error", "message": "Key not found"}
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_vault_originated_type_rejected(self):
        channel = SharingChannel(TOKEN)
        ws, task = await _connect(channel)
        ws.feed({"type": "auth_success"})
        await wait_for(lambda: len(ws.sent) == 2)

        assert ws.sent[1]["message"] == "Unexpected message type: auth_success"
        await _close(ws, task)


class TestShare:
    @pytest.mark.asyncio
    async def test_not_connected(self):
        channel = SharingChannel(TOKEN)
        with pytest.raises(NotConnectedError):
            await channel.share_to_peer("k1", SECRET)

    @pytest.mark.asyncio
    async def test_share_confirmed(self):
        channel = SharingChannel(TOKEN)
        ws, task = await _connect(channel)
        _auto_confirm(ws, "Claude")

        agent_name = await channel.share_to_peer("k1", SECRET)

        assert agent_name == "Claude"
        shared = ws.of_type("shared_secret")[0]
        assert shared["keyId"] == "k1"
        assert shared["data"] == SECRET
        assert "timestamp" in shared
        assert channel.pending_shares == {}
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_default_agent_name(self):
        channel = SharingChannel(TOKEN)
        ws, task = await _connect(channel)

        def on_send(message):
            if message["type"] == "shared_secret":
                ws.feed({"type": "key_received", "keyId": message["keyId"]})
        ws.on_send = on_send

        assert await channel.share_to_peer("k1", SECRET) == "Agent"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_timeout(self):
        channel = SharingChannel(TOKEN, confirm_timeout=0.05)
        ws, task = await _connect(channel)

        with pytest.raises(ShareTimeoutError):
            await channel.share_to_peer("k1", SECRET)
        assert channel.pending_shares == {}
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_late_confirmation_ignored(self):
        channel = SharingChannel(TOKEN, confirm_timeout=0.05)
        ws, task = await _connect(channel)
        with pytest.raises(ShareTimeoutError):
            await channel.share_to_peer("k1", SECRET)

        ws.feed({"type": "key_received", "keyId": "k1", "agentName": "Claude"})
        ws.feed({"type": "get_key", "keyId": "k1"})
        await wait_for(lambda: len(ws.sent) == 2)

        # key_received produced no reply; the next frame was still served
        assert ws.sent[1] == {"type": "error", "message": "Vault unavailable"}
        assert channel.connected
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_share_in_progress(self):
        channel = SharingChannel(TOKEN, confirm_timeout=2)
        ws, task = await _connect(channel)

        first = asyncio.create_task(channel.share_to_peer("k1", SECRET))
        await wait_for(lambda: "k1" in channel.pending_shares)

        with pytest.raises(ShareInProgressError):
            await channel.share_to_peer("k1", SECRET)

        ws.feed({"type": "key_received", "keyId": "k1", "agentName": "Claude"})
        assert await asyncio.wait_for(first, timeout=2) == "Claude"
        await _close(ws, task)

    @pytest.mark.asyncio
    async def test_last_authenticated_connection_wins(self):
        channel = SharingChannel(TOKEN)
        old_ws, old_task = await _connect(channel)
        new_ws, new_task = await _connect(channel)
        _auto_confirm(new_ws)

        await channel.share_to_peer("k1", SECRET)

        assert old_ws.of_type("shared_secret") == []
        assert len(new_ws.of_type("shared_secret")) == 1

        await _close(old_ws, old_task)
        assert channel.connected
        await _close(new_ws, new_task)
        assert not channel.connected
