from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from extmanager.store import get_migration_status, init_db
from extmanager.store.migrator import MigrationError, Migrator


def test_init_db_creates_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "extmanager.db"
    init_db(db_path)

    conn = sqlite3.connect(str(db_path))
    try:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()

    assert {"extension_versions", "repositories", "execution_ledger", "package_states"} <= tables


def test_migrate_is_idempotent(tmp_path: Path) -> None:
    migrator = Migrator(tmp_path / "extmanager.db")
    assert migrator.migrate() >= 1
    assert migrator.migrate() == 0


def test_status(tmp_path: Path) -> None:
    db_path = tmp_path / "extmanager.db"
    assert get_migration_status(db_path)["error"] == "Database not found"

    init_db(db_path)
    status = get_migration_status(db_path)
    assert status["pending"] == []
    assert status["current_version"] == status["latest_version"] >= 1


def test_custom_migrations_apply_in_order(tmp_path: Path) -> None:
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    (migrations / "schema_v02_add_notes.sql").write_text(
        "ALTER TABLE items ADD COLUMN note TEXT;", encoding="utf-8"
    )
    (migrations / "schema_v01.sql").write_text("CREATE TABLE items (id INTEGER);", encoding="utf-8")

    migrator = Migrator(tmp_path / "custom.db", migrations)
    assert [version for version, _ in migrator.get_available_migrations()] == [1, 2]
    assert migrator.migrate() == 2


def test_failed_migration_raises(tmp_path: Path) -> None:
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    (migrations / "schema_v01.sql").write_text("CREATE TABLE broken (", encoding="utf-8")

    with pytest.raises(MigrationError):
        Migrator(tmp_path / "broken.db", migrations).migrate()
