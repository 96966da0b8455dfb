# Vault Module - Encrypted Credential Storage
#
# Credential values encrypted with AES-256-GCM
# Master password with PBKDF2 key derivation

from .encryption import EncryptionService
from .models import CredentialRecord, ShareStatus
from .session import VaultSession
from .unlock_guard import UnlockGuard
from .vault_store import VaultStore

__all__ = [
    "CredentialRecord",
    "EncryptionService",
    "ShareStatus",
    "UnlockGuard",
    "VaultSession",
    "VaultStore",
]
