from __future__ import annotations

import logging

from inspired_portfolio.adapters.binance_client import ExchangeCredentials
from inspired_portfolio.adapters.secrets import EncryptionKeyProvider
from inspired_portfolio.core.crypto import CredentialCipher
from inspired_portfolio.core.errors import CredentialsNotFound, CredentialsUnavailable
from inspired_portfolio.storage.ddb import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)


class CredentialService:
    """Encrypts, stores and resolves a user's Binance API credentials."""

    def __init__(self, store: CredentialStore, keys: EncryptionKeyProvider) -> None:
        self.store = store
        self.keys = keys

    def _cipher(self, *, force_refresh: bool = False) -> CredentialCipher:
        return CredentialCipher(self.keys.get_key(force_refresh=force_refresh))

    def describe(self, user_id: str) -> CredentialRecord | None:
        return self.store.get(user_id)

    def save(
        self,
        user_id: str,
        *,
        api_key: str,
        api_secret: str,
        passphrase: str | None = None,
        label: str | None = None,
        use_testnet: bool = False,
    ) -> CredentialRecord:
        cipher = self._cipher()
        record = self.store.upsert(
            user_id,
            api_key=cipher.encrypt(api_key),
            api_secret=cipher.encrypt(api_secret),
            passphrase=cipher.encrypt(passphrase) if passphrase else None,
            use_testnet=use_testnet,
            label=label,
        )
        logger.info("Stored Binance credentials for user %s (testnet=%s)", user_id, use_testnet)
        return record

    def delete(self, user_id: str) -> None:
        self.store.delete(user_id)
        logger.info("Deleted Binance credentials for user %s", user_id)

    def _decrypt(self, record: CredentialRecord, cipher: CredentialCipher) -> ExchangeCredentials:
        return ExchangeCredentials(
            api_key=cipher.decrypt(record.api_key),
            api_secret=cipher.decrypt(record.api_secret),
            use_testnet=record.use_testnet,
            label=record.label,
            passphrase=cipher.decrypt(record.passphrase) if record.passphrase else None,
        )

    def resolve(self, user_id: str) -> tuple[CredentialRecord, ExchangeCredentials]:
        record = self.store.get(user_id)
        if record is None:
            raise CredentialsNotFound(user_id)

        try:
            return record, self._decrypt(record, self._cipher())
        except CredentialsUnavailable:
            if not self.keys.secret_name:
                raise
            # the key may have rotated since it was cached; reload once and retry
            logger.warning("Decryption failed for user %s; refreshing encryption key", user_id)
            self.keys.invalidate()
            return record, self._decrypt(record, self._cipher(force_refresh=True))
