"""Seller credential encryption helpers.

Seller GitHub tokens are stored encrypted at rest with AES-256-GCM. The
stored value is base64(iv || ciphertext || tag) with a 12-byte IV and a
16-byte authentication tag, keyed by a 64 hex character secret.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16


class CredentialError(Exception):
    """Raised when a stored credential cannot be encrypted or decrypted."""


def _load_key(hex_key: str) -> bytes:
    try:
        key = bytes.fromhex(hex_key)
    except ValueError as e:
        raise CredentialError("Encryption key must be hex encoded") from e
    if len(key) != 32:
        raise CredentialError("Encryption key must be 32 bytes (64 hex characters)")
    return key


def encrypt_token(plaintext: str, hex_key: str) -> str:
    """Encrypt a token for storage.

    Args:
        plaintext: The raw GitHub token.
        hex_key: 64 hex character AES-256 key.

    Returns:
        Base64 string of iv || ciphertext || tag.
    """
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_load_key(hex_key)).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(iv + sealed).decode("ascii")


def decrypt_token(encrypted: str, hex_key: str) -> str:
    """Decrypt a stored token.

    Args:
        encrypted: Base64 string produced by encrypt_token.
        hex_key: 64 hex character AES-256 key.

    Returns:
        The plaintext token.

    Raises:
        CredentialError: If the value is malformed or fails authentication.
    """
    key = _load_key(hex_key)
    try:
        raw = base64.b64decode(encrypted, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialError("Stored credential is not valid base64") from e

    if len(raw) < IV_LENGTH + TAG_LENGTH:
        raise CredentialError("Stored credential is too short")

    iv, sealed = raw[:IV_LENGTH], raw[IV_LENGTH:]
    try:
        return AESGCM(key).decrypt(iv, sealed, None).decode("utf-8")
    except InvalidTag as e:
        logger.warning("Credential failed authentication during decryption")
        raise CredentialError("Stored credential could not be decrypted") from e
