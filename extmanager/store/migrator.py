"""Schema migrations for the extension store

Each file in the migrations directory is named ``schema_vNN.sql`` or
``schema_vNN_<label>.sql``. Files run in version order, one transaction per
file, and every applied version is recorded in ``schema_version`` so a
database is only ever moved forward.
"""

import logging
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, NamedTuple

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_FILENAME = re.compile(r"^schema_v(?P<version>\d+)(?:_[a-z0-9_]+)?\.sql$")


class MigrationError(Exception):
    """Raised when a migration script cannot be applied"""
    pass


class Migration(NamedTuple):
    version: int
    path: Path

    @property
    def label(self) -> str:
        return f"v{self.version:02d}"


class Migrator:
    """Moves one SQLite database up to the newest bundled schema"""

    def __init__(self, db_path: Path, migrations_dir: Path = MIGRATIONS_DIR):
        self.db_path = Path(db_path)
        self.migrations_dir = Path(migrations_dir)

    @contextmanager
    def _open(self) -> Iterator[sqlite3.Connection]:
        # isolation_level=None leaves transaction control to the scripts below
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        try:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                " version INTEGER PRIMARY KEY,"
                " applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
            )
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _applied_version(conn: sqlite3.Connection) -> int:
        (version,) = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_version").fetchone()
        return version

    def get_available_migrations(self) -> List[Migration]:
        """Migration files found on disk, lowest version first"""
        found = []
        for candidate in self.migrations_dir.glob("schema_v*.sql"):
            match = _FILENAME.match(candidate.name)
            if match is None:
                logger.warning(f"Ignoring oddly named migration file: {candidate.name}")
                continue
            found.append(Migration(int(match.group("version")), candidate))
        return sorted(found)

    def _pending(self, conn: sqlite3.Connection) -> List[Migration]:
        applied = self._applied_version(conn)
        return [m for m in self.get_available_migrations() if m.version > applied]

    def _apply(self, conn: sqlite3.Connection, migration: Migration) -> None:
        logger.info(f"Applying schema {migration.label} from {migration.path.name}")
        script = migration.path.read_text(encoding="utf-8")
        try:
            conn.executescript(
                "BEGIN;\n"
                f"{script}\n;\n"
                f"INSERT INTO schema_version (version) VALUES ({migration.version});\n"
                "COMMIT;"
            )
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            logger.error(f"Schema {migration.label} failed on {self.db_path}: {e}")
            raise MigrationError(f"Migration {migration.label} failed: {e}") from e

    def migrate(self) -> int:
        """Apply every pending migration and return how many ran"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._open() as conn:
            pending = self._pending(conn)
            for migration in pending:
                self._apply(conn, migration)

        if pending:
            logger.info(f"{self.db_path} is now at schema {pending[-1].label}")
        return len(pending)

    def status(self) -> dict:
        available = self.get_available_migrations()
        latest = available[-1].version if available else 0

        if not self.db_path.exists():
            return {
                "current_version": 0,
                "latest_version": latest,
                "pending": [m.label for m in available],
                "error": "Database not found",
            }

        with self._open() as conn:
            return {
                "current_version": self._applied_version(conn),
                "latest_version": latest,
                "pending": [m.label for m in self._pending(conn)],
            }
