from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from inspired_portfolio.adapters.binance_client import BinanceClient, ExchangeApiError, ExchangeCredentials
from inspired_portfolio.adapters.secrets import EncryptionKeyProvider
from inspired_portfolio.core.assets import STABLECOINS
from inspired_portfolio.core.auth import require_user
from inspired_portfolio.core.errors import (
    CredentialsNotFound,
    CredentialsUnavailable,
    EncryptionKeyError,
    PortfolioError,
    classify_exchange_error,
)
from inspired_portfolio.core.models import (
    CredentialsMetadata,
    CredentialsStatus,
    HealthResponse,
    HistoryResponse,
    PortfolioResponse,
    RateLimitSnapshot,
    SuccessResponse,
)
from inspired_portfolio.core.ranges import DEFAULT_RANGE, RANGE_CONFIG
from inspired_portfolio.core.settings import Settings, get_settings
from inspired_portfolio.services.balances import aggregate_balances
from inspired_portfolio.services.credentials import CredentialService
from inspired_portfolio.services.history import build_history
from inspired_portfolio.storage.ddb import CredentialRecord, CredentialStore

settings: Settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.cors_allow_origin],
    allow_credentials=settings.cors_allow_origin != "*",
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

ENCRYPTION_KEY_MISSING = "Server configuration error: Encryption key not configured. Please contact support."

ClientFactory = Callable[[ExchangeCredentials], BinanceClient]

# --- Dependencies (overridable in tests) --------------------------------------


@lru_cache(maxsize=1)
def get_credential_store() -> CredentialStore:
    return CredentialStore(table_name=settings.credentials_table)


@lru_cache(maxsize=1)
def get_key_provider() -> EncryptionKeyProvider:
    return EncryptionKeyProvider(
        raw_key=settings.encryption_key,
        secret_name=settings.encryption_key_secret_name,
    )


def get_credential_service(
    store: CredentialStore = Depends(get_credential_store),
    keys: EncryptionKeyProvider = Depends(get_key_provider),
) -> CredentialService:
    return CredentialService(store, keys)


def get_client_factory() -> ClientFactory:
    def make_client(credentials: ExchangeCredentials) -> BinanceClient:
        return BinanceClient(
            credentials,
            base_url=settings.binance_base_url,
            recv_window_ms=settings.recv_window_ms,
            deadline_seconds=settings.request_timeout_seconds,
        )

    return make_client


# --- Error rendering ------------------------------------------------------------


@app.exception_handler(PortfolioError)
async def _portfolio_error(_: Request, exc: PortfolioError) -> JSONResponse:
    return JSONResponse(exc.payload, status_code=exc.status)


@app.exception_handler(ExchangeApiError)
async def _exchange_error(request: Request, exc: ExchangeApiError) -> JSONResponse:
    status, payload = classify_exchange_error(exc)
    logger.warning("Exchange error on %s: status=%s code=%s %s", request.url.path, exc.status, exc.code, exc.message)
    return JSONResponse(payload, status_code=status)


def _now_epoch() -> int:
    return int(time.time())


async def _resolve_credentials(service: CredentialService, user_id: str) -> tuple[CredentialRecord, ExchangeCredentials]:
    try:
        return await run_in_threadpool(service.resolve, user_id)
    except CredentialsNotFound as e:
        raise PortfolioError(404, "No Binance credentials found for user") from e
    except (CredentialsUnavailable, EncryptionKeyError) as e:
        logger.error("Cannot decrypt Binance credentials for user %s: %s", user_id, e)
        raise PortfolioError(500, "Failed to decrypt Binance credentials") from e


def _parse_current_value(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


# --- Routes -----------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(name=settings.app_name, version=settings.app_version, time=_now_epoch())


@app.get("/api/portfolio/balances", response_model=PortfolioResponse)
async def portfolio_balances(
    user_id: str = Depends(require_user),
    service: CredentialService = Depends(get_credential_service),
    make_client: ClientFactory = Depends(get_client_factory),
) -> PortfolioResponse:
    try:
        record, credentials = await _resolve_credentials(service, user_id)
        async with make_client(credentials) as client:
            report = await aggregate_balances(
                client,
                stablecoins=STABLECOINS,
                batch_size=settings.price_batch_size,
            )
    except (PortfolioError, ExchangeApiError):
        raise
    except Exception as e:
        logger.exception("Unexpected error fetching Binance balances for user %s", user_id)
        raise PortfolioError(500, "Failed to fetch Binance balances") from e

    return PortfolioResponse(
        holdings=report.holdings,
        summary=report.summary,
        credentials_metadata=CredentialsMetadata(
            use_testnet=credentials.use_testnet,
            label=credentials.label,
            updated_at=record.updated_at,
        ),
        rate_limit=RateLimitSnapshot(
            account=report.account_rate_limit.raw_headers or None,
            prices=report.price_rate_limit_headers or None,
        ),
    )


@app.get("/api/portfolio/history", response_model=HistoryResponse)
async def portfolio_history(
    range_key: str = Query(DEFAULT_RANGE, alias="range"),
    current_value: str | None = Query(None, alias="currentValue"),
    user_id: str = Depends(require_user),
    service: CredentialService = Depends(get_credential_service),
    make_client: ClientFactory = Depends(get_client_factory),
) -> Any:
    config = RANGE_CONFIG.get(range_key)
    if config is None:
        raise PortfolioError(400, "Invalid range parameter")

    target = _parse_current_value(current_value)

    # the chart is optional on the page: apart from missing or undecryptable
    # credentials, failures degrade to an empty series at 200
    hints: dict[str, Any] = {}
    try:
        _, credentials = await _resolve_credentials(service, user_id)
        async with make_client(credentials) as client:
            report = await build_history(
                client,
                range_key,
                config,
                target,
                stablecoins=STABLECOINS,
                max_assets=settings.history_max_assets,
                dust_threshold=settings.history_dust_threshold,
                stagger_seconds=settings.kline_stagger_ms / 1000,
                batch_size=settings.price_batch_size,
            )
        return HistoryResponse(data=report.data, metadata=report.metadata)
    except PortfolioError:
        raise
    except ExchangeApiError as e:
        logger.warning("Portfolio history for user %s degraded: %s", user_id, e.message)
        _, payload = classify_exchange_error(e)
        hints = {k: v for k, v in payload.items() if k != "error"}
    except Exception:
        logger.exception("Error fetching portfolio history for user %s", user_id)

    return JSONResponse(
        {
            "data": [],
            "error": "Unable to load chart data at this time. Please try again later.",
            **hints,
            "metadata": {
                "range": range_key,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        },
        status_code=200,
    )


def _sanitize(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "false"):
            return normalized == "true"
    return None


@app.get("/api/portfolio/credentials", response_model=CredentialsStatus)
async def credentials_status(
    user_id: str = Depends(require_user),
    service: CredentialService = Depends(get_credential_service),
) -> CredentialsStatus:
    try:
        existing = await run_in_threadpool(service.describe, user_id)
    except Exception as e:
        logger.exception("Failed to fetch Binance credentials metadata for user %s", user_id)
        raise PortfolioError(500, "Failed to fetch Binance credentials") from e

    return CredentialsStatus(
        connected=existing is not None,
        has_passphrase=bool(existing and existing.passphrase),
        use_testnet=existing.use_testnet if existing else settings.use_testnet_default,
        label=existing.label if existing else None,
        created_at=existing.created_at if existing else None,
        updated_at=existing.updated_at if existing else None,
    )


@app.post("/api/portfolio/credentials", response_model=SuccessResponse)
async def save_credentials(
    request: Request,
    user_id: str = Depends(require_user),
    service: CredentialService = Depends(get_credential_service),
) -> SuccessResponse:
    try:
        body = await request.json()
    except ValueError as e:
        raise PortfolioError(400, "Invalid JSON body") from e
    if not isinstance(body, dict):
        raise PortfolioError(400, "Invalid JSON body")

    api_key = _sanitize(body.get("apiKey"))
    api_secret = _sanitize(body.get("apiSecret"))
    if not api_key:
        raise PortfolioError(400, "apiKey is required")
    if not api_secret:
        raise PortfolioError(400, "apiSecret is required")

    if not service.keys.configured:
        logger.error("BINANCE_CREDENTIALS_ENCRYPTION_KEY is not configured")
        raise PortfolioError(500, ENCRYPTION_KEY_MISSING)

    use_testnet = _parse_bool(body.get("useTestnet"))
    try:
        await run_in_threadpool(
            lambda: service.save(
                user_id,
                api_key=api_key,
                api_secret=api_secret,
                passphrase=_sanitize(body.get("passphrase")),
                label=_sanitize(body.get("label")),
                use_testnet=use_testnet if use_testnet is not None else settings.use_testnet_default,
            )
        )
    except EncryptionKeyError as e:
        logger.error("Encryption key unusable: %s", e)
        raise PortfolioError(500, ENCRYPTION_KEY_MISSING) from e
    except Exception as e:
        logger.exception("Failed to store Binance credentials for user %s", user_id)
        raise PortfolioError(500, "Failed to store Binance credentials") from e

    return SuccessResponse()


@app.delete("/api/portfolio/credentials", response_model=SuccessResponse)
async def delete_credentials(
    user_id: str = Depends(require_user),
    service: CredentialService = Depends(get_credential_service),
) -> SuccessResponse:
    try:
        await run_in_threadpool(service.delete, user_id)
    except Exception as e:
        logger.exception("Failed to delete Binance credentials for user %s", user_id)
        raise PortfolioError(500, "Failed to delete Binance credentials") from e
    return SuccessResponse()
