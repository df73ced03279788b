"""
Encryption boundary for the stored user profile (AES-256-GCM).

Stored format is ``<iv hex>:<tag hex>:<ciphertext hex>``. Profiles written
before encryption was enabled are plain JSON and are still readable.
"""

import hashlib
import json
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .logging_config import get_logger

logger = get_logger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16


class ProfileCryptoError(Exception):
    """Custom exception for profile encryption errors."""
    pass


class ProfileCipher:
    """Encrypts and decrypts the core profile as a single atomic operation."""

    def __init__(self, secret: Optional[str]):
        """
        Initialize the cipher.

        Args:
            secret: Key material; the AES key is its SHA-256 digest

        Raises:
            ProfileCryptoError: If no key material is configured
        """
        if not secret:
            raise ProfileCryptoError('No profile encryption key configured (PROFILE_ENCRYPTION_KEY or DATABASE_URL)')
        self._aead = AESGCM(hashlib.sha256(secret.encode('utf-8')).digest())

    def encrypt(self, profile: Dict[str, Any]) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, json.dumps(profile, ensure_ascii=False).encode('utf-8'), None)
        # cryptography appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f'{iv.hex()}:{tag.hex()}:{ciphertext.hex()}'

    def decrypt(self, stored: Optional[str]) -> Dict[str, Any]:
        """Decrypt a stored profile.

        Args:
            stored: Value read from the store

        Returns:
            The profile dict (empty when nothing is stored)

        Raises:
            ProfileCryptoError: If the value is neither a valid ciphertext nor legacy JSON
        """
        if not stored:
            return {}

        parts = stored.split(':')
        if len(parts) != 3:
            return self._legacy_plaintext(stored)

        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
            return json.loads(plaintext.decode('utf-8'))
        except ValueError as e:
            return self._legacy_plaintext(stored, cause=e)
        except InvalidTag as e:
            logger.error('Profile decryption failed: authentication tag mismatch')
            raise ProfileCryptoError(f'Profile decryption failed: {e!r}')

    def _legacy_plaintext(self, stored: str, cause: Optional[Exception] = None) -> Dict[str, Any]:
        try:
            profile = json.loads(stored)
        except json.JSONDecodeError as e:
            logger.error(f'Stored profile is neither encrypted nor JSON: {cause or e}')
            raise ProfileCryptoError(f'Unreadable stored profile: {cause or e}')
        if not isinstance(profile, dict):
            raise ProfileCryptoError('Stored profile is not an object')
        logger.debug('Read legacy plaintext profile')
        return profile
