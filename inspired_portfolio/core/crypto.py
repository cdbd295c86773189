"""
AES-256-GCM encryption for exchange credentials stored at rest.

Each value is encrypted with a fresh 12-byte IV and stored as three base64
strings: iv, authTag and cipherText.
"""

from __future__ import annotations

import base64
import binascii
import os
import re
from typing import TypedDict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from inspired_portfolio.core.errors import CredentialsUnavailable, EncryptionKeyError

KEY_LENGTH = 32
IV_LENGTH = 12
TAG_LENGTH = 16

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class EncryptedPayload(TypedDict):
    iv: str
    authTag: str
    cipherText: str


def decode_key(raw_key: str) -> bytes:
    """Accept a 32-byte key as base64, hex, or 32 UTF-8 characters."""
    normalized = raw_key.strip()

    if _BASE64_RE.match(normalized):
        try:
            decoded = base64.b64decode(normalized, validate=True)
        except binascii.Error:
            decoded = b""
        if len(decoded) == KEY_LENGTH:
            return decoded

    if _HEX_RE.match(normalized):
        try:
            decoded = bytes.fromhex(normalized)
        except ValueError:
            decoded = b""
        if len(decoded) == KEY_LENGTH:
            return decoded

    encoded = normalized.encode("utf-8")
    if len(normalized) == KEY_LENGTH and len(encoded) == KEY_LENGTH:
        return encoded

    raise EncryptionKeyError(
        "BINANCE_CREDENTIALS_ENCRYPTION_KEY must be a 32-byte key encoded as base64, hex, or 32-character UTF-8."
    )


class CredentialCipher:
    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise EncryptionKeyError(f"encryption key must be {KEY_LENGTH} bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plain_text: str) -> EncryptedPayload:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plain_text.encode("utf-8"), None)
        # cryptography appends the tag to the ciphertext
        cipher_text, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return {
            "iv": base64.b64encode(iv).decode("ascii"),
            "authTag": base64.b64encode(tag).decode("ascii"),
            "cipherText": base64.b64encode(cipher_text).decode("ascii"),
        }

    def decrypt(self, payload: EncryptedPayload) -> str:
        try:
            iv = base64.b64decode(payload["iv"])
            tag = base64.b64decode(payload["authTag"])
            cipher_text = base64.b64decode(payload["cipherText"])
            plain = self._aead.decrypt(iv, cipher_text + tag, None)
        except (KeyError, binascii.Error, InvalidTag, ValueError) as e:
            raise CredentialsUnavailable("stored credential could not be decrypted") from e
        return plain.decode("utf-8")
