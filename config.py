"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig, StripeConfig

logger = logging.getLogger(__name__)


def _env_bool(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in ("true", "1", "yes")


def _env_int(name: str, fallback: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return int(fallback)
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer in %s=%r, using %s", name, raw, fallback)
        return int(fallback)


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, StripeConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    stripe_cfg = raw.get("stripe", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    currency = os.environ.get(
        "BILLING_CURRENCY", billing_cfg.get("currency", app_cfg.get("base_currency", "BRL"))
    ).upper()

    return (
        AppConfig(
            name=app_cfg.get("name", "VetBilling"),
            secret_key=secret_key,
            base_currency=currency,
        ),
        BillingConfig(
            trial_days=_env_int("BILLING_TRIAL_DAYS", billing_cfg.get("trial_days", 14)),
            currency=currency,
            default_plan_id=os.environ.get(
                "BILLING_DEFAULT_PLAN", billing_cfg.get("default_plan_id", "plan-basic")
            ),
            invoice_number_pattern=os.environ.get(
                "INVOICE_NUMBER_PATTERN",
                billing_cfg.get("invoice_number_pattern", "INV-[YYYY]-[CCCCCC]"),
            ),
            trial_warning_days=_env_int(
                "BILLING_TRIAL_WARNING_DAYS", billing_cfg.get("trial_warning_days", 3)
            ),
        ),
        StripeConfig(
            enabled=_env_bool("STRIPE_ENABLED", stripe_cfg.get("enabled", False)),
            secret_key=os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", "")),
            webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///vet_billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
