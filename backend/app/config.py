"""Application configuration.

Env-based settings for the booking pipeline. Everything has a development
default so the app boots without a .env file; production injects env vars
directly.
"""
from __future__ import annotations

import os


def _env_flag(name: str, default: bool = True) -> bool:
    """Read a boolean-like flag from environment.

    Accepted falsy values: "0", "false", "off", "no" (case-insensitive).
    Anything else (or unset) falls back to `default`.
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"0", "false", "off", "no"}:
        return False
    if value in {"1", "true", "on", "yes"}:
        return True
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Application constants
API_PREFIX = "/api"
APP_NAME = "Hotel Booking Pipeline API"
APP_VERSION = "1.0.0"
APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def is_production() -> bool:
    return APP_ENV == "production"


# Storage
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "hotel_booking")
MONGO_SERVER_SELECTION_TIMEOUT_MS = _env_int("MONGO_SERVER_SELECTION_TIMEOUT_MS", 5000)

# Booking session
SESSION_TTL_MINUTES = _env_int("SESSION_TTL_MINUTES", 20)

# Result cache
SEARCH_CACHE_TTL_SECONDS = _env_int("SEARCH_CACHE_TTL_SECONDS", 5 * 60)
AUTOSUGGEST_CACHE_TTL_SECONDS = _env_int("AUTOSUGGEST_CACHE_TTL_SECONDS", 2 * 60 * 60)
CACHE_TIMEOUT_SECONDS = _env_float("CACHE_TIMEOUT_SECONDS", 1.0)

# Downstream hotel-id list limit
HOTEL_ID_BATCH_SIZE = 50

# External supplier configuration
SUPPLIER_BASE_URL = os.environ.get("SUPPLIER_BASE_URL", "https://api.hotel-supplier.test/v1")
SUPPLIER_API_KEY = os.environ.get("SUPPLIER_API_KEY", "")
SUPPLIER_TIMEOUT_SECONDS = _env_float("SUPPLIER_TIMEOUT_SECONDS", 30.0)

# Ledger (wallet)
LEDGER_TIMEOUT_SECONDS = _env_float("LEDGER_TIMEOUT_SECONDS", 5.0)
WALLET_DEFAULT_CURRENCY = os.environ.get("WALLET_DEFAULT_CURRENCY", "INR")
COMPENSATION_MAX_ATTEMPTS = _env_int("COMPENSATION_MAX_ATTEMPTS", 3)
COMPENSATION_RETRY_DELAY_SECONDS = _env_float("COMPENSATION_RETRY_DELAY_SECONDS", 0.5)

# Payment gateway (redirect + signed callback)
GATEWAY_PAYMENT_URL = os.environ.get("GATEWAY_PAYMENT_URL", "https://secure.payment-gateway.test/transaction")
GATEWAY_REFUND_URL = os.environ.get("GATEWAY_REFUND_URL", "https://api.payment-gateway.test/refund")
GATEWAY_MERCHANT_ID = os.environ.get("GATEWAY_MERCHANT_ID", "")
GATEWAY_ACCESS_CODE = os.environ.get("GATEWAY_ACCESS_CODE", "")
GATEWAY_WORKING_KEY = os.environ.get("GATEWAY_WORKING_KEY", "dev-gateway-working-key")
GATEWAY_TIMEOUT_SECONDS = _env_float("GATEWAY_TIMEOUT_SECONDS", 15.0)
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8001")

# Notifications
ENABLE_BOOKING_NOTIFICATIONS: bool = _env_flag("ENABLE_BOOKING_NOTIFICATIONS", default=True)
NOTIFICATION_TIMEOUT_SECONDS = _env_float("NOTIFICATION_TIMEOUT_SECONDS", 10.0)
SMS_API_URL = os.environ.get("SMS_API_URL", "https://api.textlocal.in/send/")
SMS_API_KEY = os.environ.get("SMS_API_KEY", "")
SMS_SENDER_ID = os.environ.get("SMS_SENDER_ID", "TRIPBZ")
ADMIN_NOTIFY_MOBILE = os.environ.get("ADMIN_NOTIFY_MOBILE", "")
ADMIN_NOTIFY_EMAIL = os.environ.get("ADMIN_NOTIFY_EMAIL", "")

# AWS SES (booking e-mails are only logged when these are missing)
AWS_REGION = os.environ.get("AWS_REGION", "")
AWS_ACCESS_KEY_ID = os.environ.get("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY = os.environ.get("AWS_SECRET_ACCESS_KEY", "")
AWS_SES_FROM_EMAIL = os.environ.get("AWS_SES_FROM_EMAIL", "")
