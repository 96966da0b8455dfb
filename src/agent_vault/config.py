# AgentVault Configuration
#
# Settings come from environment variables prefixed AGENTVAULT_ (a .env
# file in the working directory is loaded first via python-dotenv).
# Defaults match a single-user desktop install.

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

ENV_PREFIX = "AGENTVAULT_"


def _default_data_dir() -> Path:
    return Path.home() / ".agentvault"


@dataclass
class VaultSettings:
    """Runtime configuration for the vault daemon."""
    data_dir: Path = field(default_factory=_default_data_dir)
    host: str = "127.0.0.1"
    port: int = 8765
    max_keys: int = 20
    rotation_interval_days: int = 90
    auto_lock_minutes: float = 15
    unlock_max_attempts: int = 5
    unlock_lockout_minutes: float = 15
    share_timeout_seconds: float = 10
    request_rate_limit: int = 60  # mutating requests per IP per minute
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "vault.db"

    @property
    def audit_log_path(self) -> Path:
        return self.data_dir / "audit.log"

    @property
    def token_path(self) -> Path:
        return self.data_dir / ".ws-token"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 load_env_file: bool = True) -> "VaultSettings":
        """
        Build settings from the environment.

        Args:
            environ: Mapping to read (default: os.environ)
            load_env_file: Load ./.env into os.environ first

        Raises:
            ValueError: A variable is set but not parseable
        """
        if environ is None:
            if load_env_file:
                load_dotenv()
            environ = os.environ

        def get(name: str):
            return environ.get(ENV_PREFIX + name)

        settings = cls()
        if get("DATA_DIR"):
            settings.data_dir = Path(get("DATA_DIR")).expanduser()
        if get("HOST"):
            settings.host = get("HOST")
        if get("LOG_LEVEL"):
            settings.log_level = get("LOG_LEVEL").upper()

        for name, cast in (
            ("port", int),
            ("max_keys", int),
            ("rotation_interval_days", int),
            ("auto_lock_minutes", float),
            ("unlock_max_attempts", int),
            ("unlock_lockout_minutes", float),
            ("share_timeout_seconds", float),
            ("request_rate_limit", int),
        ):
            raw = get(name.upper())
            if raw is None or raw == "":
                continue
            try:
                setattr(settings, name, cast(raw))
            except ValueError:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}")

        return settings
