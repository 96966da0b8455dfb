"""Tests for VaultSettings environment loading."""

from pathlib import Path

import pytest

from agent_vault.config import VaultSettings


def test_defaults():
    settings = VaultSettings.from_env(environ={})
    assert settings.host == "127.0.0.1"
    assert settings.port == 8765
    assert settings.max_keys == 20
    assert settings.unlock_max_attempts == 5
    assert settings.share_timeout_seconds == 10
    assert settings.data_dir == Path.home() / ".agentvault"


def test_overrides(tmp_path):
    settings = VaultSettings.from_env(environ={
        "AGENTVAULT_DATA_DIR": str(tmp_path),
        "AGENTVAULT_PORT": "9000",
        "AGENTVAULT_MAX_KEYS": "5",
        "AGENTVAULT_AUTO_LOCK_MINUTES": "0.5",
        "AGENTVAULT_LOG_LEVEL": "debug",
    })
    assert settings.port == 9000
    assert settings.max_keys == 5
    assert settings.auto_lock_minutes == 0.5
    assert settings.log_level == "DEBUG"
    assert settings.db_path == tmp_path / "vault.db"
    assert settings.audit_log_path == tmp_path / "audit.log"
    assert settings.token_path == tmp_path / ".ws-token"


def test_invalid_value():
    with pytest.raises(ValueError, match="AGENTVAULT_PORT"):
        VaultSettings.from_env(environ={"AGENTVAULT_PORT": "eighty"})
