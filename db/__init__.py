"""Database utilities for the scan result store.

Provides connection helpers and the polling document store. See db/init_db.py
to initialize the schema on a local Postgres instance.
"""

from .config import build_dsn, connect, resolve_dsn

__all__ = ["build_dsn", "connect", "resolve_dsn"]
