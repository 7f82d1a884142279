# backend/marketplace/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/marketplace.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///marketplace.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Orders
    ORDER_NUMBER_PREFIX = os.environ.get("ORDER_NUMBER_PREFIX", "ORD")
    ORDER_TAX_RATE_BPS = int(os.environ.get("ORDER_TAX_RATE_BPS", "1600"))  # 16%

    # Geocoding / routing provider (OpenRouteService-compatible)
    ORS_API_KEY = os.environ.get("ORS_API_KEY", "")
    ORS_BASE_URL = os.environ.get("ORS_BASE_URL", "https://api.openrouteservice.org")
    GEO_TIMEOUT_SECONDS = float(os.environ.get("GEO_TIMEOUT_SECONDS", "5.0"))

    # Retry policy for lock / version conflicts
    DB_RETRY_ATTEMPTS = int(os.environ.get("DB_RETRY_ATTEMPTS", "3"))
    DB_RETRY_BACKOFF_SECONDS = float(os.environ.get("DB_RETRY_BACKOFF_SECONDS", "0.1"))

    DISPATCH_ON_READY_FOR_PICKUP = _env_bool("DISPATCH_ON_READY_FOR_PICKUP", True)
