"""Service configuration loaded from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .app.billing.catalog import PLAN_CATALOG

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class EmailConfig:
    """Outbound delivery settings for billing notifications."""

    provider_name: str = "dev"
    from_email: str = "billing@example.com"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class BillingConfig:
    """Runtime settings for the billing service."""

    store: str = "postgres"
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "seatledger"
    db_user: str = "postgres"
    db_password: str = ""
    db_connect_timeout: int = 5
    db_pool_min: int = 1
    db_pool_max: int = 10
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    signature_header: str = "Payment-Signature"
    grace_period_days: int = 7
    app_base_url: str = "http://localhost:5173"
    notification_workers: int = 2
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 300.0
    sweep_batch_size: int = 100
    sweep_max_attempts: int = 5
    expire_grace_periods: bool = True
    log_level: str = "INFO"
    email: EmailConfig = field(default_factory=EmailConfig)
    price_ids: Dict[str, str] = field(default_factory=dict)

    @property
    def db_connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": self.db_connect_timeout,
        }


def load_email_config(env: Optional[Mapping[str, str]] = None) -> EmailConfig:
    env_mapping = os.environ if env is None else env
    return EmailConfig(
        provider_name=(env_mapping.get("EMAIL_PROVIDER") or "dev").strip().lower() or "dev",
        from_email=env_mapping.get("FROM_EMAIL") or "billing@example.com",
        smtp_host=env_mapping.get("SMTP_HOST") or "localhost",
        smtp_port=_env_int(env_mapping, "SMTP_PORT", 587, minimum=1),
        smtp_username=env_mapping.get("SMTP_USER") or None,
        smtp_password=env_mapping.get("SMTP_PASS") or None,
        smtp_use_tls=_env_bool(env_mapping, "SMTP_USE_TLS", True),
        smtp_timeout_seconds=_env_float(env_mapping, "SMTP_TIMEOUT_SECONDS", 30.0, minimum=1.0),
    )


def _price_ids(env: Mapping[str, str]) -> Dict[str, str]:
    """Collect ``PAYMENTS_<TIER>_<INTERVAL>_PLAN_ID`` entries keyed by plan key."""

    price_ids: Dict[str, str] = {}
    for definition in PLAN_CATALOG.values():
        if definition.price == 0:
            continue
        variable = f"PAYMENTS_{definition.tier.value.upper()}_{definition.billing_interval.value.upper()}_PLAN_ID"
        value = (env.get(variable) or "").strip()
        if value:
            price_ids[definition.key] = value
    return price_ids


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables.

    Raises :class:`ValueError` naming the offending variable when a value
    cannot be parsed or falls outside its allowed range.
    """

    env_mapping = os.environ if env is None else env

    store = (env_mapping.get("BILLING_STORE") or "postgres").strip().lower()
    if store not in {"postgres", "memory"}:
        raise ValueError(f"BILLING_STORE must be 'postgres' or 'memory', got {store!r}")

    pool_min = _env_int(env_mapping, "DB_POOL_MIN", 1, minimum=1)

    return BillingConfig(
        store=store,
        db_host=env_mapping.get("DB_HOST") or "localhost",
        db_port=_env_int(env_mapping, "DB_PORT", 5432, minimum=1),
        db_name=env_mapping.get("DB_NAME") or "seatledger",
        db_user=env_mapping.get("DB_USER") or "postgres",
        db_password=env_mapping.get("DB_PASSWORD", ""),
        db_connect_timeout=_env_int(env_mapping, "DB_CONNECT_TIMEOUT", 5, minimum=0),
        db_pool_min=pool_min,
        db_pool_max=_env_int(env_mapping, "DB_POOL_MAX", max(10, pool_min), minimum=pool_min),
        webhook_secret=env_mapping.get("PAYMENTS_WEBHOOK_SECRET", ""),
        webhook_tolerance_seconds=_env_int(env_mapping, "PAYMENTS_WEBHOOK_TOLERANCE_SECONDS", 300, minimum=0),
        signature_header=env_mapping.get("PAYMENTS_SIGNATURE_HEADER") or "Payment-Signature",
        grace_period_days=_env_int(env_mapping, "BILLING_GRACE_PERIOD_DAYS", 7, minimum=0),
        app_base_url=(env_mapping.get("APP_BASE_URL") or "http://localhost:5173").rstrip("/"),
        notification_workers=_env_int(env_mapping, "NOTIFICATION_WORKERS", 2, minimum=1),
        sweep_enabled=_env_bool(env_mapping, "BILLING_SWEEP_ENABLED", True),
        sweep_interval_seconds=_env_float(env_mapping, "BILLING_SWEEP_INTERVAL_SECONDS", 300.0, minimum=1.0),
        sweep_batch_size=_env_int(env_mapping, "BILLING_SWEEP_BATCH_SIZE", 100, minimum=1),
        sweep_max_attempts=_env_int(env_mapping, "BILLING_SWEEP_MAX_ATTEMPTS", 5, minimum=1),
        expire_grace_periods=_env_bool(env_mapping, "BILLING_EXPIRE_GRACE_PERIODS", True),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").strip().upper(),
        email=load_email_config(env_mapping),
        price_ids=_price_ids(env_mapping),
    )
