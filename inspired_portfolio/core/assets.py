from __future__ import annotations

import math

QUOTE_ASSET = "USDT"
USD = "USD"

# Assets valued 1:1 against USD; never looked up through the price API.
STABLECOINS: frozenset[str] = frozenset({"USDT", "USDC", "BUSD", "FDUSD", "TUSD", "DAI", "EUR", "GBP"})


def is_stable(asset: str, stablecoins: frozenset[str] = STABLECOINS) -> bool:
    normalized = asset.upper()
    return normalized == USD or normalized in stablecoins


def price_symbol(asset: str) -> str:
    return f"{asset.upper()}{QUOTE_ASSET}"


def base_asset(symbol: str) -> str:
    upper = symbol.upper()
    return upper[: -len(QUOTE_ASSET)] if upper.endswith(QUOTE_ASSET) else upper


def parse_quantity(value: object) -> float:
    """Decimal string to float; anything unparsable, NaN or infinite is zero."""
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0
