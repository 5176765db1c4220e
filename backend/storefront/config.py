# backend/storefront/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the instance by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///storefront.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Pricing: GST 18% expressed in basis points, fixed discount tiers
    TAX_RATE_BPS = _env_int("TAX_RATE_BPS", 1800)
    ALLOWED_DISCOUNT_PERCENTS = (0, 5, 10, 15, 20)
    PAYMENT_METHODS = ("cash", "card", "upi")

    # Order numbers are date + random suffix; unique constraint + retry
    ORDER_NUMBER_MAX_ATTEMPTS = _env_int("ORDER_NUMBER_MAX_ATTEMPTS", 5)

    # Loyalty: points per 100 currency units spent, tiers by lifetime points
    POINTS_PER_100 = _env_int("POINTS_PER_100", 10)
    LOYALTY_TIER_THRESHOLDS = (
        ("bronze", 0),
        ("silver", 500),
        ("gold", 1500),
        ("platinum", 5000),
    )

    # Inventory
    DEFAULT_LOW_STOCK_THRESHOLD = 5
    REORDER_POLICY = os.environ.get("REORDER_POLICY", "threshold_multiple")
    REORDER_MULTIPLIER = _env_int("REORDER_MULTIPLIER", 3)
    REORDER_TARGET_STOCK = _env_int("REORDER_TARGET_STOCK", 20)

    # Reconciliation: processing orders older than this are considered stale
    RECONCILE_GRACE_MINUTES = _env_int("RECONCILE_GRACE_MINUTES", 10)
