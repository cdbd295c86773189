# inspired_portfolio/adapters/secrets.py
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Mapping
from typing import Any, Protocol, cast

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from inspired_portfolio.core.crypto import decode_key
from inspired_portfolio.core.errors import EncryptionKeyError

logger = logging.getLogger(__name__)

SECRET_CACHE_TTL_SECONDS = int(os.getenv("SECRET_CACHE_TTL_SECONDS", "300"))  # 5m
SECRET_KEY_FIELD = "encryption_key"

# --- Typing helpers ----------------------------------------------------------

class _SecretsManager(Protocol):
    def get_secret_value(self, *, SecretId: str, VersionStage: str | None = None) -> Mapping[str, Any]: ...

def _strip_wrapping_quotes(s: str) -> str:
    s = s.strip()
    if len(s) >= 2 and ((s[0] == s[-1] == '"') or (s[0] == s[-1] == "'")):
        return s[1:-1]
    return s

def _extract_key(secret_str: str) -> str:
    # SecretString is either the bare key or {"encryption_key": "..."}
    try:
        parsed = json.loads(secret_str)
    except ValueError:
        return _strip_wrapping_quotes(secret_str)
    if isinstance(parsed, dict):
        v = parsed.get(SECRET_KEY_FIELD)  # type: ignore  # noqa: PGH003
        if not isinstance(v, str) or not v.strip():
            raise EncryptionKeyError(f"Secret missing or invalid '{SECRET_KEY_FIELD}'")
        return _strip_wrapping_quotes(v)
    if isinstance(parsed, str):
        return _strip_wrapping_quotes(parsed)
    raise EncryptionKeyError("SecretString must be a key string or a JSON object")


class EncryptionKeyProvider:
    """
    Resolves the 32-byte credential encryption key.

    An explicit key (BINANCE_CREDENTIALS_ENCRYPTION_KEY) wins; otherwise the key is
    read from AWS Secrets Manager (AWSCURRENT) and cached for SECRET_CACHE_TTL_SECONDS.
    """

    def __init__(
        self,
        raw_key: str | None = None,
        secret_name: str | None = None,
        secrets_client: _SecretsManager | None = None,
    ) -> None:
        self.raw_key = raw_key
        self.secret_name = secret_name
        self._secrets = secrets_client

        self._key_cache: bytes | None = None
        self._key_cache_expiry: float = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.raw_key or self.secret_name)

    def _client(self) -> _SecretsManager:
        if self._secrets is None:
            self._secrets = boto3.client("secretsmanager")  # type: ignore  # noqa: PGH003
        return self._secrets

    def _load_from_aws(self) -> bytes:
        if not self.secret_name:
            raise EncryptionKeyError("No encryption key secret configured")
        try:
            resp = self._client().get_secret_value(SecretId=self.secret_name, VersionStage="AWSCURRENT")
        except (ClientError, BotoCoreError) as e:
            raise EncryptionKeyError(f"Failed to read secret '{self.secret_name}': {e}") from e  # noqa: TRY003

        secret_str = cast(str, resp.get("SecretString") or "")
        if not secret_str:
            raise EncryptionKeyError(f"Secret '{self.secret_name}' has no SecretString")
        return decode_key(_extract_key(secret_str))

    def get_key(self, *, force_refresh: bool = False) -> bytes:
        if self.raw_key:
            return decode_key(self.raw_key)
        if not self.secret_name:
            raise EncryptionKeyError("BINANCE_CREDENTIALS_ENCRYPTION_KEY environment variable is not set.")

        now = time.time()
        if (not force_refresh) and self._key_cache and now < self._key_cache_expiry:
            return self._key_cache

        key = self._load_from_aws()
        logger.info("Loaded credential encryption key from secret %s", self.secret_name)
        self._key_cache = key
        self._key_cache_expiry = now + SECRET_CACHE_TTL_SECONDS
        return key

    def invalidate(self) -> None:
        self._key_cache = None
        self._key_cache_expiry = 0.0
