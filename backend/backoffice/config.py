# backend/backoffice/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Stock ledger contention retry (OperationalError / StaleDataError)
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))
    LEDGER_RETRY_BACKOFF = float(os.environ.get("LEDGER_RETRY_BACKOFF", "0.1"))

    # Celery (background tasks)
    CELERY_BROKER_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    # Run tasks in-process instead of on a worker (tests)
    CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_ALWAYS_EAGER", False)
    CELERY_TASK_EAGER_PROPAGATES = _env_bool("CELERY_EAGER_PROPAGATES", False)

    # Marketplace stock sync
    MARKETPLACE_SYNC_ENABLED = _env_bool("MARKETPLACE_SYNC_ENABLED", True)
    MARKETPLACE_SYNC_MAX_ATTEMPTS = int(os.environ.get("MARKETPLACE_SYNC_MAX_ATTEMPTS", "3"))
    MARKETPLACE_SYNC_BACKOFF_BASE = float(os.environ.get("MARKETPLACE_SYNC_BACKOFF_BASE", "0.6"))
    MARKETPLACE_HTTP_TIMEOUT = float(os.environ.get("MARKETPLACE_HTTP_TIMEOUT", "10"))
    MARKETPLACE_USER_AGENT = os.environ.get("MARKETPLACE_USER_AGENT", "Backoffice (ops@backoffice.local)")

    TIENDANUBE_API_BASE = os.environ.get("TIENDANUBE_API_BASE", "https://api.tiendanube.com/v1")
    MERCADOLIBRE_API_BASE = os.environ.get("MERCADOLIBRE_API_BASE", "https://api.mercadolibre.com")
