"""Package activation state and the view of installed packages"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from extmanager.core.extensions.exceptions import (
    ActivationError,
    InvalidVersionError,
    MetadataError,
)
from extmanager.core.extensions.models import InstalledPackage, constraints_to_edges
from extmanager.core.extensions.protocols import MetadataStore, PackageActivation
from extmanager.core.extensions.versioning import parse_version
from extmanager.store import get_connection, init_db

logger = logging.getLogger(__name__)


class SQLitePackageActivation:
    """PackageActivation backed by the package_states table"""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        init_db(db_path)

    def _set_active(self, extension_key: str, active: bool) -> None:
        action, verb = ("Activating", "activate") if active else ("Deactivating", "deactivate")
        logger.info(f"{action} package: {extension_key}")

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO package_states (extension_key, active, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT (extension_key) DO UPDATE SET
                    active = excluded.active,
                    updated_at = excluded.updated_at
                """,
                (extension_key, int(active)),
            )
            conn.commit()

        except sqlite3.Error as e:
            raise ActivationError(f"Failed to {verb} package {extension_key}: {e}")

        finally:
            conn.close()

    def activate(self, extension_key: str) -> None:
        self._set_active(extension_key, True)

    def deactivate(self, extension_key: str) -> None:
        self._set_active(extension_key, False)

    def is_active(self, extension_key: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT active FROM package_states WHERE extension_key = ?",
                (extension_key,),
            ).fetchone()
            return bool(row and row["active"])
        finally:
            conn.close()

    def list_active(self) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT extension_key FROM package_states WHERE active = 1 ORDER BY extension_key"
            ).fetchall()
            return [row["extension_key"] for row in rows]
        finally:
            conn.close()


class InstalledPackageSet:
    """
    In-memory view of the active packages and their declared constraints

    Rebuilt from the activation state and on-disk metadata by refresh();
    otherwise only changed by the orchestrator through add() and remove().
    """

    def __init__(self, activation: PackageActivation, metadata_store: MetadataStore, extensions_dir: Path):
        self.activation = activation
        self.metadata_store = metadata_store
        self.extensions_dir = Path(extensions_dir)
        self._packages: Dict[str, InstalledPackage] = {}
        self._lock = threading.RLock()

    def load_package(self, extension_key: str) -> InstalledPackage:
        """Build the installed view of one package from its metadata file"""
        path = self.extensions_dir / extension_key
        try:
            metadata = self.metadata_store.read_metadata(path) or {}
        except MetadataError as e:
            logger.warning(f"Unreadable metadata for active package {extension_key}: {e}")
            metadata = {}

        try:
            version = str(parse_version(str(metadata.get("version") or "0.0.0")))
        except InvalidVersionError:
            logger.warning(f"Invalid version in metadata of {extension_key}: {metadata.get('version')!r}")
            version = "0.0.0"

        try:
            dependencies = constraints_to_edges(metadata.get("constraints"))
        except (InvalidVersionError, ValidationError, AttributeError) as e:
            logger.warning(f"Ignoring invalid constraints of {extension_key}: {e}")
            dependencies = []

        return InstalledPackage(
            extension_key=extension_key,
            version=version,
            dependencies=dependencies,
            path=str(path),
        )

    def refresh(self) -> None:
        """Reload from the activation state"""
        packages = {key: self.load_package(key) for key in self.activation.list_active()}
        with self._lock:
            self._packages = packages
        logger.debug(f"Installed package set refreshed: {len(packages)} active")

    def get(self, extension_key: str) -> Optional[InstalledPackage]:
        with self._lock:
            return self._packages.get(extension_key)

    def is_installed(self, extension_key: str) -> bool:
        with self._lock:
            return extension_key in self._packages

    def add(self, package: InstalledPackage) -> None:
        with self._lock:
            self._packages[package.extension_key] = package

    def remove(self, extension_key: str) -> None:
        with self._lock:
            self._packages.pop(extension_key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._packages)

    def packages(self) -> List[InstalledPackage]:
        with self._lock:
            return [self._packages[key] for key in sorted(self._packages)]
