from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from inspired_portfolio.adapters.binance_client import AccountSnapshot, ApiResponse, PriceQuote, RateLimitInfo
from inspired_portfolio.core.assets import STABLECOINS, base_asset, is_stable, parse_quantity, price_symbol
from inspired_portfolio.core.models import Holding, HoldingsSummary
from inspired_portfolio.services.prices import MAX_SYMBOLS_PER_REQUEST, resolve_prices

logger = logging.getLogger(__name__)


class BalanceSource(Protocol):
    async def get_account_information(self) -> ApiResponse[AccountSnapshot]: ...

    async def get_ticker_prices(self, symbols: list[str] | None = None) -> ApiResponse[list[PriceQuote]]: ...


@dataclass(frozen=True)
class BalanceReport:
    holdings: list[Holding]
    summary: HoldingsSummary
    account_rate_limit: RateLimitInfo
    price_rate_limit_headers: dict[str, str]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_price_symbols(assets: list[str], stablecoins: frozenset[str] = STABLECOINS) -> list[str]:
    """One <ASSET>USDT symbol per non-stable asset, deduplicated, first-seen order."""
    symbols: dict[str, None] = {}
    for asset in assets:
        if not asset or is_stable(asset, stablecoins):
            continue
        symbols.setdefault(price_symbol(asset), None)
    return list(symbols)


def compute_holdings(
    account: AccountSnapshot,
    prices: dict[str, float],
    *,
    stablecoins: frozenset[str] = STABLECOINS,
    unsupported_symbols: list[str] | None = None,
) -> tuple[list[Holding], HoldingsSummary]:
    holdings: list[Holding] = []
    missing: dict[str, None] = {}
    total_value = 0.0

    for balance in account.balances:
        free = parse_quantity(balance.free)
        locked = parse_quantity(balance.locked)
        total = free + locked
        if total <= 0:
            continue

        asset = balance.asset.upper()
        if is_stable(asset, stablecoins):
            unit_price: float | None = 1.0
            unit_price_symbol = f"{asset}/USD"
        else:
            unit_price_symbol = price_symbol(asset)
            unit_price = prices.get(unit_price_symbol)

        value = total * unit_price if unit_price is not None else None
        holdings.append(
            Holding(
                asset=asset,
                free=free,
                locked=locked,
                total=total,
                unit_price=unit_price,
                unit_price_symbol=unit_price_symbol,
                value=value,
            )
        )

        if value is None:
            missing.setdefault(asset, None)
        else:
            total_value += value

    for symbol in unsupported_symbols or []:
        missing.setdefault(base_asset(symbol), None)

    summary = HoldingsSummary(
        total_value=total_value,
        total_value_computed_assets=total_value,
        missing_price_assets=list(missing),
        computed_at=_utc_now_iso(),
    )
    return holdings, summary


async def aggregate_balances(
    client: BalanceSource,
    *,
    stablecoins: frozenset[str] = STABLECOINS,
    batch_size: int = MAX_SYMBOLS_PER_REQUEST,
) -> BalanceReport:
    account_resp = await client.get_account_information()
    account = account_resp.data

    # only assets still held need a price
    held = [
        b.asset
        for b in account.balances
        if parse_quantity(b.free) + parse_quantity(b.locked) > 0
    ]
    symbols = build_price_symbols(held, stablecoins)

    lookup = await resolve_prices(client, symbols, batch_size=batch_size)
    if lookup.unsupported:
        logger.info("No USDT market for %s", ", ".join(lookup.unsupported))

    holdings, summary = compute_holdings(
        account,
        lookup.prices,
        stablecoins=stablecoins,
        unsupported_symbols=lookup.unsupported,
    )
    return BalanceReport(
        holdings=holdings,
        summary=summary,
        account_rate_limit=account_resp.rate_limit,
        price_rate_limit_headers=lookup.rate_limit_headers,
    )
