# app/db/db.py
"""
Database connection module.

Provides:
 - connect_db(db_url): async connect and create tables if needed
 - disconnect_db(): async disconnect
 - get_database(): return the connected databases.Database instance
 - get_metadata(): return SQLAlchemy MetaData (for table definitions)
"""
import logging
from typing import Optional, Tuple

import sqlalchemy
from sqlalchemy import create_engine
from databases import Database

logger = logging.getLogger("ivr-flow-engine.db")

# Shared metadata used by db models
metadata = sqlalchemy.MetaData()

# Database instance (databases.Database)
_database: Optional[Database] = None


def _normalize_sqlite_url(url: str) -> Tuple[str, str]:
    """
    Convert a DB URL into:
      - async_url for databases.Database (sqlite -> sqlite+aiosqlite)
      - sync_url for SQLAlchemy create_engine (sqlite+aiosqlite -> sqlite)
    """
    # If using sqlite and not aiosqlite, convert
    if url.startswith("sqlite:///") and "+aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///"), url
    # If already aiosqlite
    if url.startswith("sqlite+aiosqlite:///"):
        return url, url.replace("+aiosqlite", "")
    # For other DBs, assume URL is fine for both (may need adjustments per DB)
    return url, url


async def connect_db(db_url: str) -> Database:
    """
    Connect the global Database instance and ensure tables are created.

    Usage: await connect_db(settings.DB_URL)
    """
    global _database
    # table definitions register themselves on `metadata` at import time
    import app.models.db_models  # noqa: F401

    async_url, sync_url = _normalize_sqlite_url(db_url)

    if _database is not None and _database.is_connected:
        logger.debug("Database already connected")
        return _database

    # Create tables (synchronously) using SQLAlchemy engine against sync_url
    engine = create_engine(sync_url, connect_args={"check_same_thread": False} if sync_url.startswith("sqlite") else {})
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()
    logger.info("Ensured database tables are created (sync_url=%s)", sync_url)

    _database = Database(async_url)
    logger.info("Connecting to database: %s", async_url)
    await _database.connect()
    return _database


async def disconnect_db() -> None:
    """Disconnect the global Database instance if connected."""
    global _database
    if _database is not None and _database.is_connected:
        logger.info("Disconnecting database")
        await _database.disconnect()
    _database = None


def get_database() -> Database:
    """Return the connected Database instance."""
    if _database is None:
        raise RuntimeError("database is not connected; call connect_db() first")
    return _database


def get_metadata() -> sqlalchemy.MetaData:
    return metadata
