from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_db_path: str
    database_url: str
    auth_enabled: bool
    jwt_secret: str
    jwt_algorithm: str
    worker_enabled: bool
    worker_interval_seconds: int
    worker_batch_size: int
    worker_success_rate: float
    claim_lease_seconds: int
    receipt_endpoint_url: str
    receipt_timeout_seconds: float
    receipt_service_token: str


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/crm.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        auth_enabled=_bool_env("AUTH_ENABLED", False),
        jwt_secret=os.getenv("JWT_SECRET", "dev-only-secret-change-in-prod").strip(),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256").strip(),
        worker_enabled=_bool_env("WORKER_ENABLED", True),
        worker_interval_seconds=max(1, min(3600, _int_env("WORKER_INTERVAL_SECONDS", 5))),
        worker_batch_size=max(1, min(1000, _int_env("WORKER_BATCH_SIZE", 50))),
        worker_success_rate=max(0.0, min(1.0, _float_env("WORKER_SUCCESS_RATE", 0.9))),
        claim_lease_seconds=max(1, _int_env("CLAIM_LEASE_SECONDS", 60)),
        receipt_endpoint_url=os.getenv("RECEIPT_ENDPOINT_URL", "").strip(),
        receipt_timeout_seconds=max(0.1, _float_env("RECEIPT_TIMEOUT_SECONDS", 10.0)),
        receipt_service_token=os.getenv("RECEIPT_SERVICE_TOKEN", "").strip(),
    )
