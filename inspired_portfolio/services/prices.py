"""
Two-tier spot price resolution.

Symbols are requested in batches; a batch rejected because it contains an
unknown symbol (code -1121) is retried one symbol at a time, and symbols the
exchange does not list resolve to ``PriceUnsupported`` instead of failing the
whole lookup. Any other exchange error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Protocol, Union

from inspired_portfolio.adapters.binance_client import ApiResponse, ExchangeApiError, PriceQuote

logger = logging.getLogger(__name__)

MAX_SYMBOLS_PER_REQUEST = 100


class PriceSource(Protocol):
    async def get_ticker_prices(self, symbols: list[str] | None = None) -> ApiResponse[list[PriceQuote]]: ...


@dataclass(frozen=True)
class PriceFound:
    symbol: str
    price: float


@dataclass(frozen=True)
class PriceUnsupported:
    symbol: str


PriceResult = Union[PriceFound, PriceUnsupported]


@dataclass
class PriceLookup:
    results: list[PriceResult] = field(default_factory=list)
    rate_limit_headers: dict[str, str] = field(default_factory=dict)

    @property
    def prices(self) -> dict[str, float]:
        return {r.symbol: r.price for r in self.results if isinstance(r, PriceFound)}

    @property
    def unsupported(self) -> list[str]:
        seen: dict[str, None] = {}
        for r in self.results:
            if isinstance(r, PriceUnsupported):
                seen.setdefault(r.symbol, None)
        return list(seen)


def chunked(items: list[str], size: int) -> list[list[str]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


def _found(quotes: list[PriceQuote]) -> list[PriceResult]:
    out: list[PriceResult] = []
    for quote in quotes:
        try:
            price = float(quote.price)
        except ValueError:
            continue
        if math.isfinite(price):
            out.append(PriceFound(symbol=quote.symbol.upper(), price=price))
    return out


async def _fetch_single(client: PriceSource, symbol: str, lookup: PriceLookup) -> list[PriceResult]:
    try:
        resp = await client.get_ticker_prices([symbol])
    except ExchangeApiError as e:
        if e.is_unsupported_symbol:
            logger.info("Symbol %s is not listed on the exchange", symbol)
            return [PriceUnsupported(symbol=symbol)]
        raise
    lookup.rate_limit_headers.update(resp.rate_limit.raw_headers)
    return _found(resp.data)


async def _fetch_batch(client: PriceSource, chunk: list[str], lookup: PriceLookup) -> list[PriceResult]:
    try:
        resp = await client.get_ticker_prices(chunk)
    except ExchangeApiError as e:
        if not e.is_unsupported_symbol:
            raise
        logger.info("Batch of %d symbols rejected (%s); resolving individually", len(chunk), e.message)
        singles = await asyncio.gather(*(_fetch_single(client, symbol, lookup) for symbol in chunk))
        return [result for group in singles for result in group]
    lookup.rate_limit_headers.update(resp.rate_limit.raw_headers)
    return _found(resp.data)


async def resolve_prices(
    client: PriceSource,
    symbols: list[str],
    *,
    batch_size: int = MAX_SYMBOLS_PER_REQUEST,
) -> PriceLookup:
    lookup = PriceLookup()
    unique = list(dict.fromkeys(s.upper() for s in symbols))
    if not unique:
        return lookup

    batches = await asyncio.gather(*(_fetch_batch(client, chunk, lookup) for chunk in chunked(unique, batch_size)))
    for group in batches:
        lookup.results.extend(group)
    return lookup
