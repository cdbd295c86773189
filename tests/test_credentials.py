import base64
import json

import pytest
from botocore.exceptions import ClientError

from inspired_portfolio.adapters.secrets import EncryptionKeyProvider
from inspired_portfolio.core.crypto import CredentialCipher, decode_key
from inspired_portfolio.core.errors import CredentialsNotFound, CredentialsUnavailable, EncryptionKeyError
from inspired_portfolio.services.credentials import CredentialService

RAW = bytes(range(32))


@pytest.mark.parametrize(
    "encoded",
    [base64.b64encode(RAW).decode(), RAW.hex(), "  " + RAW.hex() + "\n"],
)
def test_decode_key_accepts_base64_and_hex(encoded):
    assert decode_key(encoded) == RAW


def test_decode_key_accepts_32_characters():
    assert decode_key("a" * 32) == b"a" * 32


@pytest.mark.parametrize("bad", ["short", "00" * 10, "é" * 32])
def test_decode_key_rejects_other_lengths(bad):
    with pytest.raises(EncryptionKeyError):
        decode_key(bad)


def test_cipher_round_trip_uses_fresh_iv():
    cipher = CredentialCipher(RAW)
    first = cipher.encrypt("api-secret")
    second = cipher.encrypt("api-secret")
    assert first["iv"] != second["iv"]
    assert cipher.decrypt(first) == "api-secret"


def test_cipher_rejects_tampered_payload():
    cipher = CredentialCipher(RAW)
    payload = cipher.encrypt("api-secret")
    payload["cipherText"] = base64.b64encode(b"x" * 10).decode()
    with pytest.raises(CredentialsUnavailable):
        cipher.decrypt(payload)


def test_resolve_decrypts_stored_credentials(store, keys):
    service = CredentialService(store, keys)
    service.save("u1", api_key="key", api_secret="secret", passphrase="phrase", label=None, use_testnet=True)

    record, creds = service.resolve("u1")

    assert (creds.api_key, creds.api_secret, creds.passphrase) == ("key", "secret", "phrase")
    assert creds.use_testnet is True
    assert record.created_at == record.updated_at
    assert "secret" not in repr(creds)


def test_resolve_missing_credentials(store, keys):
    with pytest.raises(CredentialsNotFound):
        CredentialService(store, keys).resolve("nobody")


def test_saving_without_passphrase_clears_it(store, keys):
    service = CredentialService(store, keys)
    service.save("u1", api_key="k", api_secret="s", passphrase="p")
    service.save("u1", api_key="k", api_secret="s")
    assert service.describe("u1").passphrase is None


class FakeSecrets:
    def __init__(self, secret_string=None, error=None):
        self.secret_string = secret_string
        self.error = error
        self.calls = 0

    def get_secret_value(self, *, SecretId, VersionStage=None):  # noqa: N803
        self.calls += 1
        if self.error:
            raise self.error
        return {"SecretString": self.secret_string}


def test_key_from_secrets_manager_is_cached():
    secrets = FakeSecrets(json.dumps({"encryption_key": RAW.hex()}))
    provider = EncryptionKeyProvider(secret_name="creds-key", secrets_client=secrets)

    assert provider.get_key() == RAW
    assert provider.get_key() == RAW
    assert secrets.calls == 1

    provider.invalidate()
    provider.get_key()
    assert secrets.calls == 2


def test_key_from_secrets_manager_plain_string():
    secrets = FakeSecrets('"' + base64.b64encode(RAW).decode() + '"')
    assert EncryptionKeyProvider(secret_name="k", secrets_client=secrets).get_key() == RAW


def test_key_provider_errors():
    with pytest.raises(EncryptionKeyError):
        EncryptionKeyProvider().get_key()
    with pytest.raises(EncryptionKeyError):
        EncryptionKeyProvider()._load_from_aws()

    denied = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetSecretValue")
    with pytest.raises(EncryptionKeyError):
        EncryptionKeyProvider(secret_name="k", secrets_client=FakeSecrets(error=denied)).get_key()
