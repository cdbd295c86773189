from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, cast

import boto3
from mypy_boto3_dynamodb import DynamoDBServiceResource
from mypy_boto3_dynamodb.service_resource import Table
from mypy_boto3_dynamodb.type_defs import GetItemOutputTypeDef

from inspired_portfolio.core.crypto import EncryptedPayload


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class CredentialRecord:
    """Encrypted Binance credentials for one user, as stored."""

    user_id: str
    api_key: EncryptedPayload
    api_secret: EncryptedPayload
    passphrase: EncryptedPayload | None
    use_testnet: bool
    label: str | None
    created_at: str | None
    updated_at: str | None


class CredentialStore:
    def __init__(self, table_name: str, client: DynamoDBServiceResource | None = None) -> None:
        self.table_name = table_name

        self.dynamodb = client or boto3.resource("dynamodb")  # type: ignore  # noqa: PGH003
        self.table: Table = self.dynamodb.Table(table_name)  # type: ignore  # noqa: PGH003

    @staticmethod
    def _pk(user_id: str) -> str:
        return f"binance_credentials#{user_id}"

    def get(self, user_id: str) -> CredentialRecord | None:
        resp: GetItemOutputTypeDef = self.table.get_item(Key={"pk": self._pk(user_id)})  # type: ignore  # noqa: PGH003

        item = cast(dict[str, Any] | None, resp.get("Item"))
        if not item:
            return None

        return CredentialRecord(
            user_id=user_id,
            api_key=cast(EncryptedPayload, item["api_key"]),
            api_secret=cast(EncryptedPayload, item["api_secret"]),
            passphrase=cast(EncryptedPayload | None, item.get("passphrase")),
            use_testnet=bool(item.get("use_testnet", False)),
            label=item.get("label"),
            created_at=item.get("created_at"),
            updated_at=item.get("updated_at"),
        )

    def upsert(
        self,
        user_id: str,
        *,
        api_key: EncryptedPayload,
        api_secret: EncryptedPayload,
        passphrase: EncryptedPayload | None,
        use_testnet: bool,
        label: str | None,
    ) -> CredentialRecord:
        existing = self.get(user_id)
        now = _now_iso()
        created_at = existing.created_at if existing and existing.created_at else now

        doc: dict[str, Any] = {
            "pk": self._pk(user_id),
            "api_key": dict(api_key),
            "api_secret": dict(api_secret),
            "use_testnet": use_testnet,
            "label": label,
            "created_at": created_at,
            "updated_at": now,
        }
        # a missing passphrase clears any previously stored one
        if passphrase is not None:
            doc["passphrase"] = dict(passphrase)
        self.table.put_item(Item=doc)

        return CredentialRecord(
            user_id=user_id,
            api_key=api_key,
            api_secret=api_secret,
            passphrase=passphrase,
            use_testnet=use_testnet,
            label=label,
            created_at=created_at,
            updated_at=now,
        )

    def delete(self, user_id: str) -> None:
        self.table.delete_item(Key={"pk": self._pk(user_id)})
