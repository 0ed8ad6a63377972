#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, inspect, text

from alembic import command

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from config import DATABASE_URL
from settlement.models import Base

_REQUIRED_TABLES = (
    "settlement_orders",
    "settlement_user_credits",
    "settlement_credit_grants",
    "settlement_webhook_audit_logs",
)


def _env_int(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def _wait_for_postgres(database_url: str) -> None:
    max_attempts = _env_int("INIT_DB_MAX_ATTEMPTS", 30)
    sleep_seconds = _env_int("INIT_DB_SLEEP_SECONDS", 2)
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        for attempt in range(1, max_attempts + 1):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                print(f"[init-prod-db] postgres reachable (attempt={attempt})")
                return
            except Exception as exc:  # noqa: BLE001
                print(f"[init-prod-db] waiting for postgres (attempt={attempt}/{max_attempts}): {exc}")
                time.sleep(max(1, sleep_seconds))
        raise RuntimeError("postgres is not reachable after retries")
    finally:
        engine.dispose()


def _run_alembic_migrations(database_url: str) -> None:
    cfg = AlembicConfig(str(ROOT_DIR / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT_DIR / "alembic"))
    cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(cfg, "head")
    print("[init-prod-db] alembic upgrade head completed")


def _fallback_create_all(database_url: str) -> None:
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        Base.metadata.create_all(bind=engine)
        print("[init-prod-db] fallback create_all completed")
    finally:
        engine.dispose()


def _verify_tables(database_url: str) -> None:
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        existing = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    missing = [name for name in _REQUIRED_TABLES if name not in existing]
    if missing:
        raise RuntimeError(f"settlement tables missing after init: {', '.join(missing)}")
    print(f"[init-prod-db] settlement tables present: {len(_REQUIRED_TABLES)}")


def main() -> int:
    database_url = str(DATABASE_URL or os.getenv("DATABASE_URL", "")).strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is missing")
    if not database_url.lower().startswith("postgresql"):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")

    _wait_for_postgres(database_url)

    try:
        _run_alembic_migrations(database_url)
    except Exception as exc:  # noqa: BLE001
        print(f"[init-prod-db] alembic failed, fallback to create_all: {exc}")
        _fallback_create_all(database_url)

    _verify_tables(database_url)
    print("[init-prod-db] initialization completed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
