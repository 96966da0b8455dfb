# Sharing - Peer Authentication Token
#
# A 256-bit random token, generated once and persisted with owner-only
# permissions. The agent must present it in its first WebSocket message.

import logging
import os
import secrets
from pathlib import Path

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32  # 256 bits


def load_or_create_token(token_path: Path) -> str:
    """
    Load the peer token, generating it on first use.

    Security: the file is created with mode 0600 in a single os.open()
    call, so it is never readable by other users, even briefly.

    Returns:
        The token as 64 hex characters
    """
    token_path = Path(token_path)
    if token_path.exists():
        token = token_path.read_text(encoding="utf-8").strip()
        if token:
            return token
        logger.warning("Empty peer token file at %s, regenerating", token_path)

    token_path.parent.mkdir(parents=True, exist_ok=True)
    token = secrets.token_hex(TOKEN_BYTES)
    fd = os.open(token_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(token)
    # O_CREAT mode is ignored for an existing file; enforce it either way
    os.chmod(token_path, 0o600)

    logger.info("Generated new peer auth token at %s", token_path)
    return token


def verify_token(candidate: object, expected: str) -> bool:
    """Constant-time comparison to prevent timing attacks."""
    if not isinstance(candidate, str) or not candidate:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))
