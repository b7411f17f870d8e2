"""Execution ledger: durable record of one-time side effects"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from extmanager.core.extensions.exceptions import LedgerError
from extmanager.store import get_connection, init_db

logger = logging.getLogger(__name__)

# Namespaces used by the setup steps
EXTENSION_DATA_IMPORT = "extension_data_import"
SITE_CONFIG_IMPORT = "site_config_import"


class ExecutionLedger:
    """
    Write-once key/value store keyed by (namespace, key)

    Markers are JSON scalars (bool, int or a hash string). An empty marker
    (empty string, 0 or false) records a step that found nothing to do and
    does not count as done; the first non-empty marker written for a key
    wins. Entries are never removed through this class.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        init_db(db_path)
        self._cache: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        """
        Return the marker for an entry, or None when it was never set

        Raises:
            LedgerError: If the ledger cannot be read
        """
        cache_key = (namespace, key)
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT marker FROM execution_ledger WHERE namespace = ? AND entry_key = ?",
                (namespace, key),
            ).fetchone()

        except sqlite3.Error as e:
            raise LedgerError(f"Failed to read ledger entry {namespace}/{key}: {e}")

        finally:
            conn.close()

        if row is None:
            return None

        marker = json.loads(row["marker"])
        with self._lock:
            self._cache[cache_key] = marker
        return marker

    def has(self, namespace: str, key: str) -> bool:
        """True when an entry exists, whatever its marker"""
        return self.get(namespace, key) is not None

    def is_done(self, namespace: str, key: str) -> bool:
        """True when the entry carries a non-empty marker"""
        return bool(self.get(namespace, key))

    def set(self, namespace: str, key: str, marker: Any = True) -> bool:
        """
        Record a marker

        Returns:
            True if the entry was written, False if a non-empty marker
            already existed

        Raises:
            LedgerError: If the ledger cannot be written
        """
        if marker is None:
            raise ValueError("Ledger markers must not be None")

        encoded = json.dumps(marker)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO execution_ledger (namespace, entry_key, marker)
                VALUES (?, ?, ?)
                ON CONFLICT (namespace, entry_key) DO UPDATE SET marker = excluded.marker
                WHERE execution_ledger.marker IN ('""', '0', 'false')
                """,
                (namespace, key, encoded),
            )
            conn.commit()
            written = cursor.rowcount > 0

        except sqlite3.Error as e:
            raise LedgerError(f"Failed to write ledger entry {namespace}/{key}: {e}")

        finally:
            conn.close()

        with self._lock:
            self._cache.pop((namespace, key), None)

        if written:
            logger.debug(f"Ledger entry recorded: {namespace}/{key}")
        else:
            logger.debug(f"Ledger entry already present, keeping first marker: {namespace}/{key}")
        return written
