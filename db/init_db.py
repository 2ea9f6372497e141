#!/usr/bin/env python3
"""Initialize the local Postgres with the scan result schema.

Usage:
  python -m db.init_db               # uses env (.env) DB_* to connect and apply schema
  POSTGRES_DSN='host=... user=... password=... dbname=...' python -m db.init_db
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import psycopg

from .config import connect, resolve_dsn

logger = logging.getLogger(__name__)


def read_schema_sql() -> str:
    schema_path = Path(__file__).resolve().parent / "schema.sql"
    if not schema_path.exists():
        raise SystemExit(f"schema.sql not found at {schema_path}")
    return schema_path.read_text(encoding="utf-8")


def apply_schema(conn, sql: str) -> None:
    with conn.cursor() as cur:
        cur.execute(sql)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    dsn = resolve_dsn()
    logger.info("Connecting with DSN: %s", dsn.replace(os.getenv("DB_PASS") or "\0", "******"))
    try:
        conn = connect(dsn)
    except psycopg.Error as e:
        raise SystemExit(f"Unable to connect to Postgres: {e}")
    try:
        logger.info("Applying schema.sql ...")
        apply_schema(conn, read_schema_sql())
        logger.info("Schema applied.")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
