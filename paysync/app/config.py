"""Synchronization engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import math
import os

from .sync.models import PlanTier


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL pool."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int
    pool_min: int
    pool_max: int

    def connection_kwargs(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class SyncConfig:
    """Configuration for webhook ingestion, processing and reconciliation."""

    webhook_secret: str
    signature_header: str
    signature_tolerance_seconds: int
    webhook_deadline_seconds: float
    lease_seconds: float
    duplicate_poll_interval_seconds: float
    duplicate_poll_timeout_seconds: float
    provider_api_base: str
    provider_api_key: str
    provider_timeout_seconds: float
    reconcile_enabled: bool
    reconcile_interval_seconds: float
    reconcile_deadline_seconds: float
    reconcile_page_size: int
    rate_limit_retries: int
    rate_limit_backoff_seconds: float
    outcome_log_capacity: int
    log_level: str
    database: DatabaseConfig
    price_tiers: Mapping[str, PlanTier] = field(default_factory=dict)


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def parse_price_tiers(raw: Optional[str]) -> Dict[str, PlanTier]:
    """Parse ``price_a:pro,price_b:team`` into a price id to tier map."""

    tiers: Dict[str, PlanTier] = {}
    if not raw:
        return tiers
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        price_id, sep, tier = chunk.partition(":")
        if not sep or not price_id.strip():
            raise ValueError(f"Expected price_id:tier, got {chunk!r}")
        try:
            tiers[price_id.strip()] = PlanTier(tier.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown plan tier {tier.strip()!r} for price {price_id.strip()!r}") from exc
    return tiers


def _connect_timeout(value: Optional[str]) -> int:
    timeout = _to_float(value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env

    pool_min = max(1, _to_int(env_mapping.get("DB_POOL_MIN"), default=1))
    pool_max = max(pool_min, _to_int(env_mapping.get("DB_POOL_MAX"), default=10))
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "paysync_db"),
        user=env_mapping.get("DB_USER", "paysync_user"),
        password=env_mapping.get("DB_PASSWORD", "paysync_pass"),
        connect_timeout=_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        pool_min=pool_min,
        pool_max=pool_max,
    )


def load_sync_config(env: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """Load :class:`SyncConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    signature_header = (env_mapping.get("BILLING_SIGNATURE_HEADER") or "Billing-Signature").strip()
    provider_api_base = env_mapping.get("PROVIDER_API_BASE") or "http://localhost:12111/v1"
    log_level = (env_mapping.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO"

    return SyncConfig(
        webhook_secret=env_mapping.get("BILLING_WEBHOOK_SECRET", ""),
        signature_header=signature_header or "Billing-Signature",
        signature_tolerance_seconds=max(
            0, _to_int(env_mapping.get("BILLING_SIGNATURE_TOLERANCE_SECONDS"), default=300)
        ),
        webhook_deadline_seconds=max(0.1, _to_float(env_mapping.get("WEBHOOK_DEADLINE_SECONDS"), default=10.0)),
        lease_seconds=max(1.0, _to_float(env_mapping.get("IDEMPOTENCY_LEASE_SECONDS"), default=30.0)),
        duplicate_poll_interval_seconds=max(
            0.001, _to_float(env_mapping.get("DUPLICATE_POLL_INTERVAL_SECONDS"), default=0.05)
        ),
        duplicate_poll_timeout_seconds=max(
            0.0, _to_float(env_mapping.get("DUPLICATE_POLL_TIMEOUT_SECONDS"), default=2.0)
        ),
        provider_api_base=provider_api_base.rstrip("/"),
        provider_api_key=env_mapping.get("PROVIDER_API_KEY", ""),
        provider_timeout_seconds=max(0.1, _to_float(env_mapping.get("PROVIDER_TIMEOUT_SECONDS"), default=10.0)),
        reconcile_enabled=_to_bool(env_mapping.get("RECONCILE_ENABLED"), default=True),
        reconcile_interval_seconds=max(
            1.0, _to_float(env_mapping.get("RECONCILE_INTERVAL_SECONDS"), default=3600.0)
        ),
        reconcile_deadline_seconds=max(
            1.0, _to_float(env_mapping.get("RECONCILE_DEADLINE_SECONDS"), default=900.0)
        ),
        reconcile_page_size=min(100, max(1, _to_int(env_mapping.get("RECONCILE_PAGE_SIZE"), default=100))),
        rate_limit_retries=max(0, _to_int(env_mapping.get("PROVIDER_RATE_LIMIT_RETRIES"), default=5)),
        rate_limit_backoff_seconds=max(
            0.0, _to_float(env_mapping.get("PROVIDER_RATE_LIMIT_BACKOFF_SECONDS"), default=2.0)
        ),
        outcome_log_capacity=max(1, _to_int(env_mapping.get("OUTCOME_LOG_CAPACITY"), default=1000)),
        log_level=log_level,
        database=load_database_config(env_mapping),
        price_tiers=parse_price_tiers(env_mapping.get("PRICE_TIER_MAP")),
    )


__all__ = [
    "DatabaseConfig",
    "SyncConfig",
    "load_database_config",
    "load_sync_config",
    "parse_price_tiers",
]
