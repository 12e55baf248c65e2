"""Encryption utilities for host credentials and sensitive settings.

Secrets (SSH passwords, private keys, key passphrases, registry passwords)
are stored in a versioned envelope:

    v1:<iv base64>:<auth tag base64>:<ciphertext base64>

using AES-256-GCM from the cryptography library. The 32-byte key is derived
with SHA-256 from the ``FLEETDOCK_ENCRYPTION_KEY`` environment variable.

Values without the ``v1:`` prefix are treated as legacy plaintext and
returned unchanged by :meth:`EncryptionService.decrypt`.
"""

import base64
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = "v1"
_IV_BYTES = 12
_TAG_BYTES = 16


class EncryptionService:
    """Encrypt and decrypt secrets in the versioned AES-GCM envelope.

    Example:
        >>> service = EncryptionService("my-key")
        >>> token = service.encrypt("hunter2")
        >>> token.startswith("v1:")
        True
        >>> service.decrypt(token)
        'hunter2'
        >>> service.decrypt("legacy-plaintext")
        'legacy-plaintext'
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """Initialize encryption service.

        Args:
            encryption_key: Raw key material (default: from env var)

        Raises:
            ValueError: If no key material is configured
        """
        key_str = encryption_key or os.getenv("FLEETDOCK_ENCRYPTION_KEY")
        if not key_str:
            raise ValueError(
                "Encryption key not configured. Set FLEETDOCK_ENCRYPTION_KEY environment variable."
            )
        self._aesgcm = AESGCM(hashlib.sha256(key_str.encode("utf-8")).digest())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a plaintext string into a ``v1:`` envelope.

        Empty and None values are not encrypted and yield None.
        """
        if not plaintext:
            return None

        iv = os.urandom(_IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext; the envelope keeps them apart
        payload, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return ":".join(
            [
                ENVELOPE_VERSION,
                base64.b64encode(iv).decode("ascii"),
                base64.b64encode(tag).decode("ascii"),
                base64.b64encode(payload).decode("ascii"),
            ]
        )

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """Decrypt an envelope, passing legacy plaintext through.

        Returns:
            Plaintext, or None when the value is empty or cannot be decrypted
            (wrong key, tampered data, malformed envelope).
        """
        if not value:
            return None
        if not value.startswith(f"{ENVELOPE_VERSION}:"):
            return value

        try:
            _, iv_b64, tag_b64, payload_b64 = value.split(":", 3)
            iv = base64.b64decode(iv_b64)
            tag = base64.b64decode(tag_b64)
            payload = base64.b64decode(payload_b64)
            return self._aesgcm.decrypt(iv, payload + tag, None).decode("utf-8")
        except InvalidTag:
            logger.warning("Decryption failed: invalid tag (wrong key or tampered data)")
            return None
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Decryption failed: malformed envelope ({type(e).__name__})")
            return None

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        """Check whether a stored value uses the versioned envelope."""
        return bool(value) and value.startswith(f"{ENVELOPE_VERSION}:")


# Global encryption service instance (lazy initialization)
_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Return the process encryption service, creating it on first use."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service


def is_encryption_configured() -> bool:
    """Check if an encryption key is available in the environment."""
    return bool(os.getenv("FLEETDOCK_ENCRYPTION_KEY"))
