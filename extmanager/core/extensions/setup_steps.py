"""
One-time setup imports run after a package is activated

Every step is guarded by the execution ledger, so installing a package a
second time repeats none of these side effects. Package layout:

    Initialisation/Files/          copied to <files_dir>/<extension_key>/
    ext_tables_static.sql          handed to DataImporter.import_static_sql
    Initialisation/data.json       handed to DataImporter.import_data_file
    Initialisation/data.xml        (used when data.json is absent)
    Initialisation/Site/<id>/      copied to <site_config_dir>/<id>/
"""

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from extmanager.core.extensions.exceptions import DataImportError, DirectoryOperationError
from extmanager.core.extensions.ledger import (
    EXTENSION_DATA_IMPORT,
    SITE_CONFIG_IMPORT,
    ExecutionLedger,
)
from extmanager.core.extensions.observers import ObserverRegistry
from extmanager.core.extensions.protocols import DataImporter

logger = logging.getLogger(__name__)

INITIAL_FILES_DIR = "Initialisation/Files"
STATIC_SQL_FILE = "ext_tables_static.sql"
DATA_IMPORT_FILES = ("Initialisation/data.xml", "Initialisation/data.json")
DATA_IMPORTED_MARKER = "Initialisation/dataImported"
SITE_CONFIG_DIR = "Initialisation/Site"
SITE_CONFIG_FILE = "config.yaml"


class NullCacheManager:
    """CacheManager for hosts without caches; only logs"""

    def flush_caches(self) -> None:
        logger.info("Flushing all caches")

    def flush_caches_in_group(self, group: str) -> None:
        logger.info(f"Flushing cache group: {group}")

    def reload_caches(self) -> None:
        logger.info("Reloading caches")


class NullSchemaUpdater:
    """SchemaUpdater for hosts without a database schema"""

    def update_database(self) -> None:
        logger.info("Database schema update requested")


class NullDataImporter:
    """DataImporter that skips imports with a log entry"""

    def import_static_sql(self, sql: str) -> None:
        logger.info(f"Skipping static SQL import ({len(sql)} bytes)")

    def import_data_file(self, path: Path) -> Dict[str, Dict[int, int]]:
        logger.info(f"Skipping data import: {path}")
        return {}


class SetupRunner:
    """Runs the ledger-guarded setup steps of a package"""

    def __init__(
        self,
        ledger: ExecutionLedger,
        files_dir: Path,
        site_config_dir: Path,
        data_importer: Optional[DataImporter] = None,
        observers: Optional[ObserverRegistry] = None
    ):
        """
        Args:
            ledger: Execution ledger guarding each step
            files_dir: Destination root for initial files
            site_config_dir: Directory holding one sub-directory per site
            data_importer: Host importer (logging no-op by default)
            observers: Notified after a data import
        """
        self.ledger = ledger
        self.files_dir = Path(files_dir)
        self.site_config_dir = Path(site_config_dir)
        self.data_importer = data_importer or NullDataImporter()
        self.observers = observers or ObserverRegistry()

    @staticmethod
    def _ledger_key(extension_key: str, relative_path: str) -> str:
        return f"{extension_key}/{relative_path}"

    def run(self, extension_key: str, package_dir: Path) -> List[str]:
        """
        Run every setup step for a package

        A failed data import stops the run before the site configuration,
        whose rootPageId depends on the imported page ids.

        Returns:
            Names of the steps that performed work in this call

        Raises:
            DataImportError: If the data import fails
            DirectoryOperationError: If files cannot be copied
        """
        package_dir = Path(package_dir)
        performed = []

        if self.import_initial_files(extension_key, package_dir):
            performed.append("initial_files")
        if self.import_static_sql(extension_key, package_dir):
            performed.append("static_sql")

        id_map = self.import_data(extension_key, package_dir)
        if id_map is not None:
            performed.append("data_import")

        if self.import_site_configuration(extension_key, package_dir, id_map):
            performed.append("site_config")

        return performed

    def import_initial_files(self, extension_key: str, package_dir: Path) -> bool:
        """Copy Initialisation/Files to the files directory once"""
        ledger_key = self._ledger_key(extension_key, INITIAL_FILES_DIR)
        if self.ledger.is_done(EXTENSION_DATA_IMPORT, ledger_key):
            return False

        source = package_dir / INITIAL_FILES_DIR
        if not source.is_dir():
            return False

        destination = self.files_dir / extension_key
        logger.info(f"Importing initial files of {extension_key} to {destination}")
        try:
            shutil.copytree(source, destination, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            raise DirectoryOperationError(f"Could not copy initial files to {destination}: {e}", path=str(destination))

        self.ledger.set(EXTENSION_DATA_IMPORT, ledger_key, 1)
        return True

    def import_static_sql(self, extension_key: str, package_dir: Path) -> bool:
        """
        Import static SQL once

        The marker is the md5 of the imported file. A package without the
        file gets an empty marker, which leaves the step open for a later
        version that ships one.
        """
        ledger_key = self._ledger_key(extension_key, STATIC_SQL_FILE)
        if self.ledger.is_done(EXTENSION_DATA_IMPORT, ledger_key):
            return False

        sql_file = package_dir / STATIC_SQL_FILE
        file_hash = ""
        if sql_file.is_file():
            content = sql_file.read_text(encoding='utf-8')
            file_hash = hashlib.md5(content.encode('utf-8')).hexdigest()
            logger.info(f"Importing static SQL of {extension_key}")
            self.data_importer.import_static_sql(content)

        self.ledger.set(EXTENSION_DATA_IMPORT, ledger_key, file_hash)
        return bool(file_hash)

    def import_data(self, extension_key: str, package_dir: Path) -> Optional[Dict[str, Dict[int, int]]]:
        """
        Import the structured data file once

        Returns:
            Id maps of the import, or None when nothing was imported

        Raises:
            DataImportError: If the importer rejects the file; no marker is
                written, so the next install retries the import
        """
        ledger_keys = [
            self._ledger_key(extension_key, DATA_IMPORT_FILES[-1]),
            self._ledger_key(extension_key, DATA_IMPORTED_MARKER),
        ]
        if any(self.ledger.is_done(EXTENSION_DATA_IMPORT, key) for key in ledger_keys):
            return None

        import_file = None
        for relative_path in DATA_IMPORT_FILES:
            if (package_dir / relative_path).is_file():
                import_file = package_dir / relative_path
        if import_file is None:
            return None

        logger.info(f"Importing data of {extension_key} from {import_file.name}")
        try:
            id_map = self.data_importer.import_data_file(import_file) or {}
        except DataImportError as e:
            logger.warning(f"Data import of {extension_key} failed: {e}")
            raise

        self.ledger.set(EXTENSION_DATA_IMPORT, ledger_keys[1], 1)
        self.observers.notify_data_imported(extension_key, import_file)
        return id_map

    def existing_sites(self) -> List[str]:
        if not self.site_config_dir.is_dir():
            return []
        return sorted(p.name for p in self.site_config_dir.iterdir() if p.is_dir())

    def import_site_configuration(
        self,
        extension_key: str,
        package_dir: Path,
        id_map: Optional[Dict[str, Dict[int, int]]] = None
    ) -> bool:
        """
        Copy site configurations shipped by the package

        Existing site identifiers are never overwritten. The rootPageId of
        each new site is remapped through the page id map of the data import.
        """
        source_root = package_dir / SITE_CONFIG_DIR
        if not source_root.is_dir():
            return False

        existing = set(self.existing_sites())
        self.site_config_dir.mkdir(parents=True, exist_ok=True)

        imported = []
        for site_dir in sorted(p for p in source_root.iterdir() if p.is_dir()):
            identifier = site_dir.name
            if identifier in existing:
                logger.warning(
                    f"Skipped importing site configuration from {extension_key} "
                    f"due to existing site identifier {identifier}"
                )
                continue

            target_dir = self.site_config_dir / identifier
            if self.ledger.is_done(SITE_CONFIG_IMPORT, identifier) or target_dir.is_dir():
                continue

            try:
                shutil.copytree(site_dir, target_dir)
            except (OSError, shutil.Error) as e:
                raise DirectoryOperationError(f"Could not copy site configuration {identifier}: {e}", path=str(target_dir))

            self.ledger.set(SITE_CONFIG_IMPORT, identifier, 1)
            imported.append(identifier)

        imported_pages = (id_map or {}).get("pages") or {}
        for identifier in imported:
            self._remap_root_page(identifier, imported_pages)

        return bool(imported)

    def _remap_root_page(self, identifier: str, imported_pages: Dict[int, int]) -> None:
        config_file = self.site_config_dir / identifier / SITE_CONFIG_FILE
        if not config_file.is_file():
            return

        with open(config_file, 'r', encoding='utf-8') as f:
            configuration = yaml.safe_load(f) or {}

        exported_page_id = configuration.get("rootPageId")
        imported_page_id = imported_pages.get(exported_page_id)
        if imported_page_id is None:
            logger.warning(
                f"Imported site configuration with identifier {identifier} "
                f"could not be mapped to imported page id"
            )
            return

        configuration["rootPageId"] = imported_page_id
        with open(config_file, 'w', encoding='utf-8') as f:
            yaml.safe_dump(configuration, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Site {identifier}: rootPageId {exported_page_id} -> {imported_page_id}")
