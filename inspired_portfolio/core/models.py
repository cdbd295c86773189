from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Holding(CamelModel):
    asset: str = Field(..., examples=["BTC"])
    free: float
    locked: float
    total: float = Field(..., gt=0)
    unit_price: float | None = None
    unit_price_symbol: str | None = None
    value: float | None = None


class HoldingsSummary(CamelModel):
    total_value: float
    total_value_computed_assets: float
    missing_price_assets: list[str]
    computed_at: str


class CredentialsMetadata(CamelModel):
    use_testnet: bool
    label: str | None = None
    updated_at: str | None = None


class RateLimitSnapshot(CamelModel):
    account: dict[str, str] | None = None
    prices: dict[str, str] | None = None


class PortfolioResponse(CamelModel):
    holdings: list[Holding]
    summary: HoldingsSummary
    credentials_metadata: CredentialsMetadata | None = None
    rate_limit: RateLimitSnapshot | None = None


class ChartDatum(CamelModel):
    label: str
    value: float


class HistoryResponse(CamelModel):
    data: list[ChartDatum]
    metadata: dict[str, Any] | None = None


class CredentialsStatus(CamelModel):
    connected: bool
    has_passphrase: bool
    use_testnet: bool
    label: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class SuccessResponse(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    ok: bool = True
    name: str
    version: str
    time: int
