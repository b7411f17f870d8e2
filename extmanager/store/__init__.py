"""Store module - SQLite database management"""

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from .migrator import MigrationError, Migrator

logger = logging.getLogger(__name__)

__all__ = [
    "get_connection",
    "init_db",
    "ensure_migrations",
    "get_migration_status",
    "MigrationError",
    "Migrator",
]


def get_connection(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    """
    Open a connection with the pragmas every store user expects

    Args:
        db_path: Database file path
        timeout: Seconds to wait for a locked database

    Returns:
        sqlite3.Connection with sqlite3.Row row factory
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute(f"PRAGMA busy_timeout={int(timeout * 1000)}")
    return conn


def ensure_migrations(db_path: Path, migrations_dir: Optional[Path] = None) -> int:
    """Apply pending migrations, returns the number applied"""
    if migrations_dir is None:
        migrator = Migrator(db_path)
    else:
        migrator = Migrator(db_path, migrations_dir)
    return migrator.migrate()


def init_db(db_path: Path) -> Path:
    """
    Create the database if needed and bring its schema up to date

    Returns:
        The database path
    """
    if db_path.exists():
        logger.debug(f"Database already exists: {db_path}")
    else:
        logger.info(f"Creating new database: {db_path}")

    migrated = ensure_migrations(db_path)
    if migrated > 0:
        logger.info(f"Applied {migrated} pending migrations")
    return db_path


def get_migration_status(db_path: Path) -> dict:
    return Migrator(db_path).status()
