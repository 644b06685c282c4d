#!/usr/bin/env python3
from __future__ import annotations

import os
import sys
import time
from pathlib import Path

from sqlalchemy import create_engine, text

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from config import ADMIN_BOOTSTRAP_EMAIL, ADMIN_BOOTSTRAP_PASSWORD, DATABASE_URL  # noqa: E402
from monetization import AccountService, Database  # noqa: E402


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


def _bootstrap_admin_user(database: Database) -> None:
    email = str(os.getenv("PROD_ADMIN_EMAIL", ADMIN_BOOTSTRAP_EMAIL)).strip().lower()
    password = str(os.getenv("PROD_ADMIN_PASSWORD", ADMIN_BOOTSTRAP_PASSWORD)).strip()
    if not email or not password:
        print("[init-prod-db] skip admin bootstrap: PROD_ADMIN_EMAIL/PROD_ADMIN_PASSWORD missing")
        return
    with database.session() as session:
        user = AccountService(session).ensure_admin(email=email, password=password)
        if user is None:
            print(f"[init-prod-db] admin bootstrap rejected for {email}")
            return
        print(f"[init-prod-db] admin user ensured: {user.email} ({user.id})")


def main() -> int:
    database_url = str(DATABASE_URL or os.getenv("DATABASE_URL", "")).strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is missing")
    if not database_url.lower().startswith("postgresql"):
        raise RuntimeError("DATABASE_URL must be PostgreSQL in production")

    _wait_for_postgres(database_url)

    database = Database(database_url).open()
    try:
        database.upgrade_schema()
        print("[init-prod-db] alembic upgrade head completed")
        _bootstrap_admin_user(database)
    finally:
        database.close()
    print("[init-prod-db] initialization completed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
