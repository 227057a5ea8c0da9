"""Configuration helpers for the cashier administration backend."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple
import json
import math
import os

try:
    from cashier_admin.app.billing.models import BillableKind
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "cashier_admin":
        raise
    from app.billing.models import BillableKind  # type: ignore[no-redef]


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the local subscription store."""

    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int

    def connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class CashierConfig:
    """Process-wide settings for the provider adapter and read path."""

    stripe_secret: Optional[str]
    stripe_api_version: Optional[str]
    subscription_name: str
    billable_kind: BillableKind
    plan_limit: int
    invoice_limit: int
    read_workers: int
    read_attempts: int
    retry_backoff: float
    session_secret: str
    session_cookie_name: str
    database: DatabaseConfig
    addon_plans: Tuple[Mapping[str, Any], ...] = field(default_factory=tuple)


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


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def _parse_billable_kind(raw_value: Optional[str]) -> BillableKind:
    lowered = (raw_value or "user").strip().lower() or "user"
    try:
        return BillableKind(lowered)
    except ValueError as exc:
        allowed = ", ".join(kind.value for kind in BillableKind)
        raise ValueError(f"CASHIER_BILLABLE_KIND must be one of {allowed}, got {raw_value!r}") from exc


def _parse_addon_plans(raw_value: Optional[str]) -> Tuple[Mapping[str, Any], ...]:
    if raw_value is None or not raw_value.strip():
        return ()
    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError as exc:
        raise ValueError("CASHIER_ADDON_PLANS must be a JSON list of plan objects") from exc
    if not isinstance(parsed, list) or not all(isinstance(item, dict) for item in parsed):
        raise ValueError("CASHIER_ADDON_PLANS must be a JSON list of plan objects")
    return tuple(parsed)


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "cashier_db"),
        user=env_mapping.get("DB_USER", "cashier_user"),
        password=env_mapping.get("DB_PASSWORD", "cashier_pass"),
        connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
    )


def load_cashier_config(env: Optional[Mapping[str, str]] = None) -> CashierConfig:
    """Load :class:`CashierConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret = (env_mapping.get("STRIPE_SECRET") or "").strip() or None
    stripe_api_version = (env_mapping.get("STRIPE_API_VERSION") or "").strip() or None
    subscription_name = (env_mapping.get("CASHIER_SUBSCRIPTION_NAME") or "default").strip() or "default"

    return CashierConfig(
        stripe_secret=stripe_secret,
        stripe_api_version=stripe_api_version,
        subscription_name=subscription_name,
        billable_kind=_parse_billable_kind(env_mapping.get("CASHIER_BILLABLE_KIND")),
        plan_limit=max(1, _to_int(env_mapping.get("CASHIER_PLAN_LIMIT"), default=100)),
        invoice_limit=max(1, _to_int(env_mapping.get("CASHIER_INVOICE_LIMIT"), default=24)),
        read_workers=max(1, _to_int(env_mapping.get("CASHIER_READ_WORKERS"), default=8)),
        read_attempts=max(1, _to_int(env_mapping.get("STRIPE_READ_ATTEMPTS"), default=3)),
        retry_backoff=max(0.0, _to_float(env_mapping.get("STRIPE_RETRY_BACKOFF"), default=0.5)),
        session_secret=env_mapping.get("JWT_SECRET_KEY", "dev-secret-change-me"),
        session_cookie_name=env_mapping.get("SESSION_COOKIE_NAME", "session"),
        database=load_database_config(env_mapping),
        addon_plans=_parse_addon_plans(env_mapping.get("CASHIER_ADDON_PLANS")),
    )


__all__ = ["CashierConfig", "DatabaseConfig", "load_cashier_config", "load_database_config"]
