"""
Tests for AuditTrail - append-only event log.

Covers:
- Plaintext lines while locked, sealed lines while unlocked
- Reading decrypts, skips lines that fail to parse
- Reseal of locked-period lines on unlock
- Newest-N window, oldest first
- File permissions
"""

import json
import os
import stat
import sys

import pytest
from structlog.testing import capture_logs

from agent_vault.core.audit_log import AuditTrail, EventSeverity, EventType
from agent_vault.vault.encryption import EncryptionService
from agent_vault.vault.session import VaultSession


@pytest.fixture
def trail(tmp_path):
    return AuditTrail(tmp_path / "audit.log")


@pytest.fixture
def session():
    return VaultSession(EncryptionService.derive_key("pw-123456", b"s" * 32))


def _raw_lines(trail):
    return trail.log_path.read_text(encoding="utf-8").splitlines()


class TestWrite:
    def test_event_shape(self, trail):
        event = trail.log_event(EventType.KEY_ADDED, {"keyId": "abc"})
        assert event["event"] == "key_added"
        assert event["severity"] == "info"
        assert event["details"] == {"keyId": "abc"}
        assert "timestamp" in event

    def test_locked_write_is_plaintext(self, trail):
        trail.log_event(EventType.VAULT_UNLOCK_FAILED, {"source": "ip"}, severity=EventSeverity.ALERT)
        line = _raw_lines(trail)[0]
        assert json.loads(line)["event"] == "vault_unlock_failed"

    def test_unlocked_write_is_sealed(self, trail, session):
        trail.log_event(EventType.KEY_ADDED, {"keyName": "OpenAI"}, session=session)
        line = _raw_lines(trail)[0]
        assert "OpenAI" not in line
        assert json.loads(EncryptionService.decrypt_text(line, session.key))["event"] == "key_added"

    def test_closed_session_writes_plaintext(self, trail, session):
        session.close()
        trail.log_event(EventType.VAULT_LOCKED, session=session)
        assert json.loads(_raw_lines(trail)[0])["event"] == "vault_locked"

    def test_mirrored_to_structlog(self, tmp_path, session):
        with capture_logs() as logs:
            trail = AuditTrail(tmp_path / "mirrored.log")
            trail.log_event(EventType.KEY_ADDED, {"keyId": "abc"}, session=session)
            trail.log_event(EventType.AGENT_AUTH_FAILED, severity=EventSeverity.ALERT)

        assert [entry["event"] for entry in logs] == ["audit_event", "audit_event"]
        assert logs[0]["event_type"] == "key_added"
        assert logs[0]["details"] == {"keyId": "abc"}
        assert logs[0]["sealed"] is True
        assert logs[1]["event_type"] == "agent_auth_failed"
        assert logs[1]["log_level"] == "warning"
        assert logs[1]["sealed"] is False

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_file_mode(self, trail):
        trail.log_event(EventType.SYSTEM_START)
        assert stat.S_IMODE(os.stat(trail.log_path).st_mode) == 0o600


class TestRead:
    def test_read_mixed(self, trail, session):
        trail.log_event(EventType.VAULT_UNLOCK_FAILED)
        trail.log_event(EventType.KEY_ADDED, session=session)
        events = [e["event"] for e in trail.read(session=session)]
        assert events == ["vault_unlock_failed", "key_added"]

    def test_read_without_session_skips_sealed(self, trail, session):
        trail.log_event(EventType.KEY_ADDED, session=session)
        trail.log_event(EventType.VAULT_LOCKED)
        assert [e["event"] for e in trail.read()] == ["vault_locked"]

    def test_read_newest_window(self, trail, session):
        for i in range(15):
            trail.log_event(EventType.KEY_ACCESSED, {"n": i}, session=session)
        events = trail.read(10, session=session)
        assert [e["details"]["n"] for e in events] == list(range(5, 15))

    def test_corrupt_lines_dropped(self, trail, session):
        trail.log_event(EventType.KEY_ADDED, session=session)
        with open(trail.log_path, "a", encoding="utf-8") as f:
            f.write("garbage-not-json\n")
            f.write("[1, 2, 3]\n")
        trail.log_event(EventType.KEY_DELETED, session=session)
        assert [e["event"] for e in trail.read(session=session)] == ["key_added", "key_deleted"]

    def test_other_key_lines_dropped(self, trail, session):
        other = VaultSession(EncryptionService.derive_key("other-pw", b"t" * 32))
        trail.log_event(EventType.KEY_ADDED, session=other)
        trail.log_event(EventType.KEY_DELETED, session=session)
        assert [e["event"] for e in trail.read(session=session)] == ["key_deleted"]

    def test_zero_limit(self, trail):
        trail.log_event(EventType.SYSTEM_START)
        assert trail.read(0) == []

    def test_missing_file(self, trail):
        assert trail.read() == []


class TestReseal:
    def test_reseal_plaintext_lines(self, trail, session):
        trail.log_event(EventType.KEY_ADDED, session=session)
        trail.log_event(EventType.VAULT_UNLOCK_FAILED, {"source": "ip"})
        sealed_before = _raw_lines(trail)[0]

        assert trail.reseal(session) == 1

        lines = _raw_lines(trail)
        assert lines[0] == sealed_before
        assert "vault_unlock_failed" not in lines[1]
        events = [e["event"] for e in trail.read(session=session)]
        assert events == ["key_added", "vault_unlock_failed"]

    def test_reseal_nothing(self, trail, session):
        trail.log_event(EventType.KEY_ADDED, session=session)
        assert trail.reseal(session) == 0

    def test_clear(self, trail):
        trail.log_event(EventType.SYSTEM_START)
        trail.clear()
        assert not trail.log_path.exists()
        assert trail.read() == []
