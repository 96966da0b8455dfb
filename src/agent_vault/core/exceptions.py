"""
AgentVault Exception Classes

Every failure the vault reports to a caller is one of these. The API layer
renders them as ``{"error": ..., "code": ...}`` with ``status_code``.
"""

from typing import Any, Dict, Optional


class VaultError(Exception):
    """Base exception for vault operations"""

    code = "vault_error"
    status_code = 500

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.__doc__ or self.code
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class ValidationError(VaultError):
    """Input rejected before touching storage"""
    code = "validation_error"
    status_code = 400


class NotInitializedError(VaultError):
    """Vault not initialized"""
    code = "not_initialized"
    status_code = 409


class InitializedError(VaultError):
    """Vault already initialized"""
    code = "already_initialized"
    status_code = 409


class InvalidPasswordError(VaultError):
    """Invalid password"""
    code = "invalid_password"
    status_code = 401


class LockedOutError(VaultError):
    """Raised when too many failed unlock attempts came from one source"""
    code = "locked_out"
    status_code = 429

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(
            message or f"Too many failed attempts. Try again in {retry_after} seconds.",
            retry_after=retry_after,
        )


class VaultLockedError(VaultError):
    """Vault locked"""
    code = "vault_locked"
    status_code = 401


class NotFoundError(VaultError):
    """Key not found"""
    code = "not_found"
    status_code = 404


class DecryptionError(VaultError):
    """Decryption failed"""
    code = "decryption_failed"
    status_code = 500


class IntegrityError(DecryptionError):
    """Raised when an authentication tag does not verify (wrong key, tampering, truncation)"""
    code = "integrity_error"


class CapacityError(VaultError):
    """Maximum number of keys reached"""
    code = "capacity_exceeded"
    status_code = 400


class NotConnectedError(VaultError):
    """Agent not connected"""
    code = "not_connected"
    status_code = 503


class ShareTimeoutError(VaultError):
    """Agent did not confirm receipt in time"""
    code = "share_timeout"
    status_code = 504


class ShareInProgressError(VaultError):
    """A share for this key is already waiting for confirmation"""
    code = "share_in_progress"
    status_code = 409


class VaultCorruptedError(VaultError):
    """Vault metadata is corrupted; reset required"""
    code = "vault_corrupted"
    status_code = 500


class RateLimitedError(VaultError):
    """Too many requests from this address"""
    code = "rate_limited"
    status_code = 429

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message, retry_after=retry_after)
