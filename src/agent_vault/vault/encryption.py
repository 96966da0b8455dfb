# Vault - Encryption Service
#
# Master password → Encryption key (PBKDF2-HMAC-SHA256)
# Value encryption (AES-256-GCM)
# Sealed blob layout: nonce (12) || tag (16) || ciphertext

import os
import base64
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import IntegrityError


class EncryptionService:
    """
    Key derivation and authenticated encryption for vault values.

    Flow:
    1. User enters master password
    2. PBKDF2 derives 256-bit key from password + salt
    3. AES-256-GCM seals each value with a fresh random nonce
    4. The nonce and tag travel inside the blob, so decrypt needs only the key
    """

    # PBKDF2 parameters (OWASP recommendations)
    PBKDF2_ITERATIONS = 600_000  # OWASP 2023: 600k iterations for PBKDF2-SHA256
    KEY_LENGTH = 32  # 256 bits for AES-256
    SALT_LENGTH = 32  # 256-bit salt
    NONCE_LENGTH = 12  # 96-bit nonce for GCM (recommended)
    TAG_LENGTH = 16

    @staticmethod
    def derive_key(master_password: str, salt: bytes) -> bytes:
        """
        Derive encryption key from master password using PBKDF2.

        Deterministic: the same password and salt always give the same key.

        Args:
            master_password: User's master password
            salt: Random salt (stored in vault_meta)

        Returns:
            256-bit encryption key
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=EncryptionService.KEY_LENGTH,
            salt=salt,
            iterations=EncryptionService.PBKDF2_ITERATIONS,
        )

        return kdf.derive(master_password.encode('utf-8'))

    @staticmethod
    def generate_salt() -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(EncryptionService.SALT_LENGTH)

    @staticmethod
    def encrypt(plaintext: Union[str, bytes], key: bytes) -> bytes:
        """
        Encrypt plaintext using AES-256-GCM.

        Args:
            plaintext: Secret to encrypt (str is UTF-8 encoded)
            key: 256-bit encryption key (from derive_key)

        Returns:
            Sealed blob: nonce || tag || ciphertext
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode('utf-8')

        # Fresh nonce for every call (must never repeat under one key)
        nonce = os.urandom(EncryptionService.NONCE_LENGTH)

        # AESGCM returns ciphertext || tag
        sealed = AESGCM(bytes(key)).encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-EncryptionService.TAG_LENGTH], sealed[-EncryptionService.TAG_LENGTH:]

        return nonce + tag + ciphertext

    @staticmethod
    def decrypt(blob: bytes, key: bytes) -> bytes:
        """
        Decrypt a sealed blob produced by encrypt().

        Raises:
            IntegrityError: On tag mismatch, wrong key, truncated blob
                or malformed key. Never returns unauthenticated bytes.
        """
        header = EncryptionService.NONCE_LENGTH + EncryptionService.TAG_LENGTH
        if len(blob) < header:
            raise IntegrityError("Sealed data is truncated")

        nonce = blob[:EncryptionService.NONCE_LENGTH]
        tag = blob[EncryptionService.NONCE_LENGTH:header]
        ciphertext = blob[header:]

        try:
            return AESGCM(bytes(key)).decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise IntegrityError("Authentication tag mismatch")
        except ValueError as e:
            # AESGCM rejects keys of the wrong size
            raise IntegrityError(f"Invalid key: {e}")

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """
        Encode binary data for database storage (base64).

        SQLite columns and audit lines are TEXT, so blobs are base64-encoded.
        """
        return base64.b64encode(data).decode('utf-8')

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """Decode base64-encoded data from database."""
        return base64.b64decode(data.encode('utf-8'), validate=True)

    @staticmethod
    def encrypt_text(plaintext: str, key: bytes) -> str:
        """Encrypt a string and return the storage (base64) form."""
        return EncryptionService.encode_for_storage(EncryptionService.encrypt(plaintext, key))

    @staticmethod
    def decrypt_text(stored: str, key: bytes) -> str:
        """Inverse of encrypt_text(). Malformed base64 counts as an integrity failure."""
        try:
            blob = EncryptionService.decode_from_storage(stored)
        except (ValueError, TypeError):
            raise IntegrityError("Sealed data is not valid base64")

        plaintext = EncryptionService.decrypt(blob, key)
        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError:
            raise IntegrityError("Decrypted data is not valid UTF-8")
