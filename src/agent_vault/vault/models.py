# Vault - Data Model
#
# CredentialRecord mirrors one row of the `keys` table. The encrypted
# value is never included in to_dict(); plaintext is only produced by
# VaultStore.get_value().

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_ROTATION_INTERVAL_DAYS = 90
ROTATION_WARNING_DAYS = 7
SECONDS_PER_DAY = 86400


class ShareStatus(str, Enum):
    """Where a credential stands with the connected agent."""
    NONE = "none"
    PENDING = "pending"
    SHARED = "shared"
    ERROR = "error"


@dataclass
class CredentialRecord:
    """Metadata for one stored secret."""
    id: str                       # 128-bit random token, hex
    name: str
    service: Optional[str]
    url: Optional[str]
    encrypted_value: str          # base64(nonce || tag || ciphertext)
    created_at: str               # ISO 8601 UTC
    last_rotated_at: str          # ISO 8601 UTC
    rotation_interval_days: int = DEFAULT_ROTATION_INTERVAL_DAYS
    shared_with: Optional[str] = None
    share_status: ShareStatus = ShareStatus.NONE

    @property
    def is_shared(self) -> bool:
        return bool(self.shared_with)

    def days_since_rotation(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        elapsed = now - datetime.fromisoformat(self.last_rotated_at)
        return math.floor(elapsed.total_seconds() / SECONDS_PER_DAY)

    def days_until_rotation(self, now: Optional[datetime] = None) -> int:
        return self.rotation_interval_days - self.days_since_rotation(now)

    def needs_rotation(self, now: Optional[datetime] = None) -> bool:
        return self.days_until_rotation(now) <= ROTATION_WARNING_DAYS

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        days_since = self.days_since_rotation(now)
        days_until = self.rotation_interval_days - days_since
        return {
            "id": self.id,
            "name": self.name,
            "service": self.service,
            "url": self.url,
            "created_at": self.created_at,
            "last_rotated": self.last_rotated_at,
            "rotation_interval": self.rotation_interval_days,
            "shared_with": self.shared_with,
            "share_status": self.share_status.value,
            "is_shared": self.is_shared,
            "days_since_rotation": days_since,
            "days_until_rotation": days_until,
            "needs_rotation": days_until <= ROTATION_WARNING_DAYS,
            # Intentionally omit: encrypted_value
        }
