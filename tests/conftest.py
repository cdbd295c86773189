from __future__ import annotations

import base64
import copy
import json
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from inspired_portfolio.adapters.binance_client import BinanceClient, ExchangeCredentials
from inspired_portfolio.adapters.secrets import EncryptionKeyProvider
from inspired_portfolio.storage.ddb import CredentialStore

TEST_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
BASE_URL = "https://binance.test"


class FakeTable:
    def __init__(self) -> None:
        self.items: dict[str, dict[str, Any]] = {}

    def get_item(self, Key: dict[str, Any]) -> dict[str, Any]:  # noqa: N803
        item = self.items.get(Key["pk"])
        return {"Item": copy.deepcopy(item)} if item else {}

    def put_item(self, Item: dict[str, Any]) -> dict[str, Any]:  # noqa: N803
        self.items[Item["pk"]] = copy.deepcopy(Item)
        return {}

    def delete_item(self, Key: dict[str, Any]) -> dict[str, Any]:  # noqa: N803
        self.items.pop(Key["pk"], None)
        return {}


class FakeDynamoDB:
    def __init__(self) -> None:
        self.tables: dict[str, FakeTable] = {}

    def Table(self, name: str) -> FakeTable:  # noqa: N802
        return self.tables.setdefault(name, FakeTable())


def kline_row(close_time: int, close: float) -> list[Any]:
    return [close_time - 1000, "0", "0", "0", str(close), "0", close_time, "0", 0, "0", "0", "0"]


def invalid_symbol() -> httpx.Response:
    return httpx.Response(400, json={"code": -1121, "msg": "Invalid symbol."})


class FakeBinance:
    """In-process stand-in for the Binance spot REST API."""

    def __init__(self) -> None:
        self.balances: list[dict[str, str]] = []
        self.prices: dict[str, float] = {}
        self.klines: dict[str, list[tuple[int, float]]] = {}
        self.overrides: dict[str, Callable[[], httpx.Response]] = {}
        self.kline_errors: dict[str, Callable[[], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def hold(self, asset: str, free: str, locked: str = "0") -> None:
        self.balances.append({"asset": asset, "free": free, "locked": locked})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return self.overrides[path]()

        if path == "/api/v3/account":
            return httpx.Response(
                200,
                json={"balances": self.balances, "updateTime": 1_700_000_000_000},
                headers={"x-mbx-used-weight-1m": "20"},
            )

        if path == "/api/v3/ticker/price":
            raw = request.url.params.get("symbols")
            symbols = json.loads(raw) if raw else list(self.prices)
            if any(s not in self.prices for s in symbols):
                return invalid_symbol()
            return httpx.Response(
                200,
                json=[{"symbol": s, "price": str(self.prices[s])} for s in symbols],
                headers={"x-mbx-used-weight-1m": "22"},
            )

        if path == "/api/v3/klines":
            symbol = request.url.params["symbol"]
            if symbol in self.kline_errors:
                return self.kline_errors[symbol]()
            if symbol not in self.klines:
                return invalid_symbol()
            limit = int(request.url.params["limit"])
            rows = [kline_row(t, c) for t, c in self.klines[symbol][-limit:]]
            return httpx.Response(200, json=rows)

        return httpx.Response(404, json={"code": -1, "msg": "Unknown path"})

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def client(self, credentials: ExchangeCredentials | None = None, **kwargs: Any) -> BinanceClient:
        return BinanceClient(
            credentials or ExchangeCredentials(api_key="test-key", api_secret="test-secret"),
            base_url=BASE_URL,
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


def series(symbol_closes: list[float], *, start: int = 1_700_000_000_000, step: int = 86_400_000) -> list[tuple[int, float]]:
    return [(start + i * step, close) for i, close in enumerate(symbol_closes)]


@pytest.fixture
def binance() -> FakeBinance:
    return FakeBinance()


@pytest.fixture
def keys() -> EncryptionKeyProvider:
    return EncryptionKeyProvider(raw_key=TEST_KEY)


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(table_name="test-credentials", client=FakeDynamoDB())  # type: ignore[arg-type]


@pytest.fixture
def api(binance: FakeBinance, keys: EncryptionKeyProvider, store: CredentialStore) -> Iterator[SimpleNamespace]:
    from inspired_portfolio.api import app as app_module
    from inspired_portfolio.core.auth import generate_token

    app_module.app.dependency_overrides[app_module.get_credential_store] = lambda: store
    app_module.app.dependency_overrides[app_module.get_key_provider] = lambda: keys
    app_module.app.dependency_overrides[app_module.get_client_factory] = lambda: binance.client

    client = TestClient(app_module.app)
    client.cookies.set(app_module.settings.auth_cookie_name, generate_token("user-1", app_module.settings.jwt_secret))

    def connect(use_testnet: bool = False, label: str | None = "main") -> None:
        from inspired_portfolio.services.credentials import CredentialService

        CredentialService(store, keys).save(
            "user-1", api_key="test-key", api_secret="test-secret", label=label, use_testnet=use_testnet
        )

    try:
        yield SimpleNamespace(client=client, binance=binance, store=store, connect=connect)
    finally:
        app_module.app.dependency_overrides.clear()
