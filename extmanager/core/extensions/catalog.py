"""Package catalog: every known extension version, backed by SQLite"""

import gzip
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from extmanager.core.extensions.exceptions import CatalogError, InvalidVersionError
from extmanager.core.extensions.models import (
    STABLE_RANK_THRESHOLD,
    ConstraintEdge,
    ExtensionVersion,
    MirrorRecord,
    constraints_to_edges,
)
from extmanager.core.extensions.versioning import (
    Version,
    VersionRange,
    coerce_version,
    parse_version,
    to_integer_version,
)
from extmanager.store import get_connection, init_db

logger = logging.getLogger(__name__)

VersionLike = Union[Version, str, int]

_FIELDS = (
    "extension_key",
    "version",
    "integer_version",
    "title",
    "description",
    "state",
    "state_rank",
    "review_state",
    "category",
    "author_name",
    "author_email",
    "author_company",
    "last_updated",
    "content_hash",
    "serialized_dependencies",
    "download_counter",
    "all_download_counter",
    "update_comment",
    "documentation_link",
)


def _integer_bound(value: Optional[VersionLike]) -> int:
    """Integer version for a bound given as Version, string or integer; 0 for None/empty"""
    if value is None or value == "":
        return 0
    return to_integer_version(coerce_version(value))


class ExtensionCatalog:
    """
    Queryable index of extension versions keyed by (extension_key, version)

    Writes happen in a single transaction so readers on other connections
    never see a half-updated set of current flags. Reads need no locking.
    """

    def __init__(self, db_path: Path):
        """
        Initialize catalog

        Args:
            db_path: Database file path; the schema is created if missing
        """
        self.db_path = db_path
        init_db(db_path)

    def _get_connection(self) -> sqlite3.Connection:
        return get_connection(self.db_path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_entry(entry: Union[ExtensionVersion, Dict[str, Any]]) -> ExtensionVersion:
        if isinstance(entry, ExtensionVersion):
            return entry
        try:
            if isinstance(entry, dict) and isinstance(entry.get("dependencies"), dict):
                # Constraint map as found in package metadata
                entry = {**entry, "dependencies": constraints_to_edges(entry["dependencies"])}
            return ExtensionVersion.model_validate(entry)
        except ValidationError as e:
            key = entry.get("extension_key", "?") if isinstance(entry, dict) else "?"
            raise InvalidVersionError(f"Invalid catalog entry for '{key}': {e}") from e

    def upsert_versions(self, entries: Iterable[Union[ExtensionVersion, Dict[str, Any]]]) -> int:
        """
        Bulk insert extension versions and recompute current flags

        Existing (extension_key, version) rows keep their attributes; only the
        download counters are refreshed.

        Args:
            entries: ExtensionVersion objects or raw dicts

        Returns:
            Number of entries processed

        Raises:
            InvalidVersionError: If any entry has a malformed version or range;
                nothing is written in that case
            CatalogError: If the database write fails
        """
        versions = [self._coerce_entry(entry) for entry in entries]
        if not versions:
            return 0

        touched_keys = sorted({v.extension_key for v in versions})
        logger.info(
            f"Upserting {len(versions)} extension versions for {len(touched_keys)} extensions"
        )

        rows = [self._to_row(v) for v in versions]
        placeholders = ", ".join("?" for _ in _FIELDS)

        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                f"""
                INSERT INTO extension_versions ({", ".join(_FIELDS)})
                VALUES ({placeholders})
                ON CONFLICT (extension_key, version) DO UPDATE SET
                    download_counter = excluded.download_counter,
                    all_download_counter = excluded.all_download_counter
                """,
                rows,
            )
            for extension_key in touched_keys:
                self._recompute_current(conn, extension_key)
            conn.commit()

        except sqlite3.Error as e:
            conn.rollback()
            raise CatalogError(f"Failed to upsert extension versions: {e}")

        finally:
            conn.close()

        return len(versions)

    @staticmethod
    def _recompute_current(conn: sqlite3.Connection, extension_key: str) -> None:
        """Mark the highest stable-or-better version current, else the highest overall"""
        row = conn.execute(
            """
            SELECT id FROM extension_versions
            WHERE extension_key = ? AND state_rank >= ?
            ORDER BY integer_version DESC, id DESC
            LIMIT 1
            """,
            (extension_key, STABLE_RANK_THRESHOLD),
        ).fetchone()

        if row is None:
            row = conn.execute(
                """
                SELECT id FROM extension_versions
                WHERE extension_key = ?
                ORDER BY integer_version DESC, id DESC
                LIMIT 1
                """,
                (extension_key,),
            ).fetchone()

        conn.execute(
            "UPDATE extension_versions SET current_version = 0 WHERE extension_key = ?",
            (extension_key,),
        )
        if row is not None:
            conn.execute(
                "UPDATE extension_versions SET current_version = 1 WHERE id = ?",
                (row["id"],),
            )

    def increment_download_counter(self, extension_key: str, version: str) -> None:
        """Count a download of one version"""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE extension_versions
                SET download_counter = download_counter + 1,
                    all_download_counter = all_download_counter + 1
                WHERE extension_key = ? AND version = ?
                """,
                (extension_key, str(parse_version(version))),
            )
            conn.commit()
            if cursor.rowcount == 0:
                logger.warning(f"Cannot count download of unknown version {extension_key} {version}")

        except sqlite3.Error as e:
            raise CatalogError(f"Failed to update download counter: {e}")

        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: tuple) -> List[ExtensionVersion]:
        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_version(row) for row in rows]

        except sqlite3.Error as e:
            raise CatalogError(f"Catalog query failed: {e}")

        finally:
            conn.close()

    def _query_one(self, sql: str, params: tuple) -> Optional[ExtensionVersion]:
        results = self._query(sql, params)
        return results[0] if results else None

    def find_version(self, extension_key: str, version: VersionLike) -> Optional[ExtensionVersion]:
        """Exact (extension_key, version) lookup"""
        return self._query_one(
            "SELECT * FROM extension_versions WHERE extension_key = ? AND integer_version = ? "
            "ORDER BY id DESC LIMIT 1",
            (extension_key, _integer_bound(version)),
        )

    def find_current(self, extension_key: str) -> Optional[ExtensionVersion]:
        """The version flagged current for a key"""
        return self._query_one(
            "SELECT * FROM extension_versions WHERE extension_key = ? AND current_version = 1",
            (extension_key,),
        )

    def find_highest_available(self, extension_key: str) -> Optional[ExtensionVersion]:
        """Highest version regardless of state"""
        return self._query_one(
            "SELECT * FROM extension_versions WHERE extension_key = ? "
            "ORDER BY integer_version DESC, id DESC LIMIT 1",
            (extension_key,),
        )

    def find_highest_satisfying(
        self,
        extension_key: str,
        version_range: Union[VersionRange, str, None]
    ) -> Optional[ExtensionVersion]:
        """
        Highest version within a range

        Ties on integer_version are broken in favour of the most recently
        imported row.
        """
        if not isinstance(version_range, VersionRange):
            version_range = VersionRange.parse(version_range)

        floor, ceiling = version_range.integer_bounds()
        sql = "SELECT * FROM extension_versions WHERE extension_key = ? AND integer_version >= ?"
        params: tuple = (extension_key, floor)
        if ceiling is not None:
            sql += " AND integer_version <= ?"
            params += (ceiling,)
        sql += " ORDER BY integer_version DESC, id DESC LIMIT 1"

        return self._query_one(sql, params)

    def find_versions_in_range(
        self,
        extension_key: str,
        floor_exclusive: Optional[VersionLike],
        ceiling_inclusive: Optional[VersionLike] = 0
    ) -> List[ExtensionVersion]:
        """
        All versions above floor_exclusive up to ceiling_inclusive, ascending

        A ceiling of 0 (or None) means unbounded.
        """
        floor = _integer_bound(floor_exclusive)
        ceiling = _integer_bound(ceiling_inclusive)

        sql = "SELECT * FROM extension_versions WHERE extension_key = ? AND integer_version > ?"
        params: tuple = (extension_key, floor)
        if ceiling > 0:
            sql += " AND integer_version <= ?"
            params += (ceiling,)
        sql += " ORDER BY integer_version ASC, id ASC"

        return self._query(sql, params)

    def collect_update_comments(
        self,
        extension_key: str,
        floor_exclusive: Optional[VersionLike],
        ceiling_inclusive: Optional[VersionLike] = 0
    ) -> Dict[str, str]:
        """Update comments of the intermediate versions, highest version first"""
        versions = self.find_versions_in_range(extension_key, floor_exclusive, ceiling_inclusive)
        return {v.version: v.update_comment for v in reversed(versions)}

    def list_extension_keys(self) -> List[str]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT DISTINCT extension_key FROM extension_versions ORDER BY extension_key"
            ).fetchall()
            return [row["extension_key"] for row in rows]
        finally:
            conn.close()

    def list_versions(self, extension_key: str) -> List[ExtensionVersion]:
        """All versions of a key, highest first"""
        return self._query(
            "SELECT * FROM extension_versions WHERE extension_key = ? "
            "ORDER BY integer_version DESC, id DESC",
            (extension_key,),
        )

    def count_versions(self) -> int:
        conn = self._get_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM extension_versions").fetchone()[0]
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Mirror bookkeeping
    # ------------------------------------------------------------------

    def record_mirror_update(self, title: str, url: str = "", extension_count: Optional[int] = None) -> MirrorRecord:
        """
        Store the last update time and extension count of a mirror

        Args:
            title: Mirror title
            url: Mirror base URL
            extension_count: Number of distinct extensions; counted from the
                catalog when omitted
        """
        if extension_count is None:
            extension_count = len(self.list_extension_keys())

        now = int(time.time())
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO repositories (title, url, last_update, extension_count)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (title) DO UPDATE SET
                    url = excluded.url,
                    last_update = excluded.last_update,
                    extension_count = excluded.extension_count
                """,
                (title, url, now, extension_count),
            )
            conn.commit()

        except sqlite3.Error as e:
            raise CatalogError(f"Failed to record mirror update: {e}")

        finally:
            conn.close()

        logger.info(f"Mirror '{title}' updated: {extension_count} extensions")
        return MirrorRecord(title=title, url=url, last_update=now, extension_count=extension_count)

    def get_mirror(self, title: str) -> Optional[MirrorRecord]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM repositories WHERE title = ?", (title,)).fetchone()
            if row is None:
                return None
            return MirrorRecord(
                title=row["title"],
                url=row["url"],
                last_update=row["last_update"],
                extension_count=row["extension_count"],
            )
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(version: ExtensionVersion) -> tuple:
        dependencies = json.dumps([edge.model_dump(mode="json") for edge in version.dependencies])
        return (
            version.extension_key,
            version.version,
            version.integer_version,
            version.title,
            version.description,
            version.state.value,
            version.state_rank,
            version.review_state,
            version.category,
            version.author_name,
            version.author_email,
            version.author_company,
            version.last_updated,
            version.content_hash,
            dependencies,
            version.download_counter,
            version.all_download_counter,
            version.update_comment,
            version.documentation_link,
        )

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> ExtensionVersion:
        try:
            dependencies = [
                ConstraintEdge.model_validate(edge)
                for edge in json.loads(row["serialized_dependencies"] or "[]")
            ]
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                f"Ignoring unreadable dependencies of {row['extension_key']} {row['version']}: {e}"
            )
            dependencies = []

        return ExtensionVersion(
            extension_key=row["extension_key"],
            version=row["version"],
            title=row["title"],
            description=row["description"],
            state=row["state"],
            review_state=row["review_state"],
            category=row["category"],
            author_name=row["author_name"],
            author_email=row["author_email"],
            author_company=row["author_company"],
            last_updated=row["last_updated"],
            content_hash=row["content_hash"],
            dependencies=dependencies,
            current=bool(row["current_version"]),
            download_counter=row["download_counter"],
            all_download_counter=row["all_download_counter"],
            update_comment=row["update_comment"],
            documentation_link=row["documentation_link"],
        )


def read_catalog_dump(path: Path) -> List[Dict[str, Any]]:
    """
    Read a JSON catalog dump (optionally gzip-compressed)

    The dump is either a list of entries or an object with an 'extensions'
    list. Entries use the ExtensionVersion field names; 'dependencies' may
    be a list of edges or a constraint map.

    Raises:
        CatalogError: If the file cannot be read or has the wrong shape
    """
    path = Path(path)
    opener = gzip.open if path.suffix == ".gz" else open
    try:
        with opener(path, "rt", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"Failed to read catalog dump {path}: {e}")

    if isinstance(data, dict):
        data = data.get("extensions")
    if not isinstance(data, list):
        raise CatalogError(f"Catalog dump {path} must contain a list of extension versions")

    logger.info(f"Read {len(data)} entries from {path.name}")
    return data
