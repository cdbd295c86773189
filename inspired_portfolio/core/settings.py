from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "fallback-secret-key"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() == "true"


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str
    credentials_table: str
    jwt_secret: str
    auth_cookie_name: str
    encryption_key: str | None
    encryption_key_secret_name: str | None
    binance_base_url: str | None
    use_testnet_default: bool
    recv_window_ms: int
    request_timeout_seconds: float
    price_batch_size: int
    history_max_assets: int
    history_dust_threshold: float
    kline_stagger_ms: int
    cors_allow_origin: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    table = os.getenv("CREDENTIALS_TABLE", "inspired_binance_credentials")
    if not table:
        raise RuntimeError("CREDENTIALS_TABLE must not be empty")
    jwt_secret = os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET
    if jwt_secret == DEFAULT_JWT_SECRET:
        logger.warning("JWT_SECRET is not set; session tokens are signed with the built-in fallback secret")
    return Settings(
        app_name=os.getenv("APP_NAME", "inspired-portfolio-api"),
        app_version=os.getenv("APP_VERSION", "0.1.0"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        credentials_table=table,
        jwt_secret=jwt_secret,
        auth_cookie_name=os.getenv("AUTH_COOKIE_NAME", "user-auth-token"),
        encryption_key=os.getenv("BINANCE_CREDENTIALS_ENCRYPTION_KEY") or None,
        encryption_key_secret_name=os.getenv("CREDENTIALS_KEY_SECRET_NAME") or None,
        binance_base_url=os.getenv("BINANCE_API_BASE_URL") or None,
        use_testnet_default=_env_bool("BINANCE_USE_TESTNET_DEFAULT"),
        recv_window_ms=int(os.getenv("BINANCE_RECV_WINDOW_MS", "60000")),
        request_timeout_seconds=float(os.getenv("BINANCE_REQUEST_TIMEOUT_SECONDS", "15")),
        price_batch_size=int(os.getenv("PRICE_BATCH_SIZE", "100")),
        history_max_assets=int(os.getenv("HISTORY_MAX_ASSETS", "6")),
        history_dust_threshold=float(os.getenv("HISTORY_DUST_THRESHOLD", "0.001")),
        kline_stagger_ms=int(os.getenv("KLINE_STAGGER_MS", "50")),
        cors_allow_origin=os.getenv("CORS_ALLOW_ORIGIN", "*"),
    )
