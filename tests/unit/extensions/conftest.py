from __future__ import annotations

import io
import json
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pytest

from extmanager.core.extensions.activation import InstalledPackageSet, SQLitePackageActivation
from extmanager.core.extensions.archive import ZipArchiveExtractor
from extmanager.core.extensions.catalog import ExtensionCatalog
from extmanager.core.extensions.directories import PackageDirectoryManager
from extmanager.core.extensions.exceptions import DataImportError, DownloadFailedError
from extmanager.core.extensions.ledger import ExecutionLedger
from extmanager.core.extensions.metadata import METADATA_FILENAME, JsonMetadataStore
from extmanager.core.extensions.observers import ActivationObserver, ObserverRegistry
from extmanager.core.extensions.orchestrator import InstallationOrchestrator, KeyedLockRegistry
from extmanager.core.extensions.resolver import DependencyResolver
from extmanager.core.extensions.setup_steps import SetupRunner


def make_archive(files: Dict[str, Union[bytes, str]], root: str = "") -> bytes:
    """Zip bytes with every file placed below an optional top-level directory"""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            info = zipfile.ZipInfo(f"{root}{name}", date_time=(2024, 1, 1, 0, 0, 0))
            info.external_attr = 0o644 << 16
            zf.writestr(info, content)
    return buf.getvalue()


def catalog_entry(
    key: str,
    version: str,
    state: str = "stable",
    depends: Optional[Dict[str, str]] = None,
    conflicts: Optional[Dict[str, str]] = None,
    suggests: Optional[Dict[str, str]] = None,
    **extra,
) -> dict:
    return {
        "extension_key": key,
        "version": version,
        "title": key.capitalize(),
        "state": state,
        "dependencies": {
            "depends": depends or {},
            "conflicts": conflicts or {},
            "suggests": suggests or {},
        },
        **extra,
    }


class FakeDownloader:
    """Serves registered archives; unknown versions get a minimal package"""

    def __init__(self) -> None:
        self.archives: Dict[Tuple[str, str], bytes] = {}
        self.failures: set = set()
        self.calls: List[Tuple[str, str]] = []

    def add(self, key: str, version: str, files: Dict[str, Union[bytes, str]]) -> None:
        self.archives[(key, version)] = make_archive(files, root=f"{key}/")

    def fetch(self, extension_key: str, version: str) -> bytes:
        self.calls.append((extension_key, version))
        if extension_key in self.failures:
            raise DownloadFailedError(f"mirror unreachable for {extension_key}", extension_key=extension_key)
        archive = self.archives.get((extension_key, version))
        if archive is None:
            archive = make_archive({
                METADATA_FILENAME: json.dumps({"title": extension_key}),
                "README.md": f"# {extension_key}\n",
            })
        return archive


class RecordingCacheManager:
    def __init__(self, fail: bool = False) -> None:
        self.calls: List[str] = []
        self.fail = fail

    def flush_caches(self) -> None:
        self.calls.append("flush_all")

    def flush_caches_in_group(self, group: str) -> None:
        if self.fail:
            raise RuntimeError("cache backend down")
        self.calls.append(f"flush:{group}")

    def reload_caches(self) -> None:
        self.calls.append("reload")


class RecordingSchemaUpdater:
    def __init__(self) -> None:
        self.calls = 0

    def update_database(self) -> None:
        self.calls += 1


class RecordingDataImporter:
    def __init__(self, id_map: Optional[Dict[str, Dict[int, int]]] = None, fail: bool = False) -> None:
        self.static_sql: List[str] = []
        self.data_files: List[Path] = []
        self.id_map = id_map or {}
        self.fail = fail

    def import_static_sql(self, sql: str) -> None:
        self.static_sql.append(sql)

    def import_data_file(self, path: Path) -> Dict[str, Dict[int, int]]:
        if self.fail:
            raise DataImportError(f"cannot parse {path.name}")
        self.data_files.append(path)
        return self.id_map


class RecordingObserver(ActivationObserver):
    def __init__(self) -> None:
        self.events: List[Tuple[str, str]] = []

    def on_activated(self, extension_key: str) -> None:
        self.events.append(("activated", extension_key))

    def on_deactivated(self, extension_key: str) -> None:
        self.events.append(("deactivated", extension_key))

    def on_data_imported(self, extension_key: str, import_path: Path) -> None:
        self.events.append(("data_imported", extension_key))


@dataclass
class ExtensionEnv:
    root: Path
    catalog: ExtensionCatalog
    ledger: ExecutionLedger
    activation: SQLitePackageActivation
    metadata_store: JsonMetadataStore
    installed: InstalledPackageSet
    directories: PackageDirectoryManager
    resolver: DependencyResolver
    setup_runner: SetupRunner
    orchestrator: InstallationOrchestrator
    downloader: FakeDownloader
    cache: RecordingCacheManager
    schema: RecordingSchemaUpdater
    importer: RecordingDataImporter
    observer: RecordingObserver
    locks: KeyedLockRegistry = field(default_factory=KeyedLockRegistry)

    @property
    def extensions_dir(self) -> Path:
        return self.root / "extensions"

    def add_versions(self, *entries: dict) -> None:
        self.catalog.upsert_versions(entries)

    def activate_existing(self, key: str, version: str, constraints: Optional[dict] = None) -> Path:
        """Put an already active package on disk without going through install"""
        package_dir = self.extensions_dir / key
        package_dir.mkdir(parents=True, exist_ok=True)
        metadata = {"title": key, "version": version}
        if constraints is not None:
            metadata["constraints"] = constraints
        self.metadata_store.write_metadata(package_dir, metadata)
        self.activation.activate(key)
        self.installed.refresh()
        return package_dir

    def make_orchestrator(self, **overrides) -> InstallationOrchestrator:
        options = dict(
            catalog=self.catalog,
            resolver=self.resolver,
            installed=self.installed,
            directories=self.directories,
            downloader=self.downloader,
            extractor=ZipArchiveExtractor(),
            metadata_store=self.metadata_store,
            activation=self.activation,
            setup_runner=self.setup_runner,
            observers=self.setup_runner.observers,
            cache_manager=self.cache,
            schema_updater=self.schema,
            lock_timeout=1.0,
            locks=self.locks,
        )
        options.update(overrides)
        return InstallationOrchestrator(**options)


@pytest.fixture
def env(tmp_path: Path) -> ExtensionEnv:
    db_path = tmp_path / "extmanager.db"
    extensions_dir = tmp_path / "extensions"
    extensions_dir.mkdir()

    catalog = ExtensionCatalog(db_path)
    ledger = ExecutionLedger(db_path)
    activation = SQLitePackageActivation(db_path)
    metadata_store = JsonMetadataStore()
    installed = InstalledPackageSet(activation, metadata_store, extensions_dir)
    directories = PackageDirectoryManager(extensions_dir, site_root=tmp_path / "site")
    resolver = DependencyResolver(catalog, installed, platform_versions={"cms": "12.4.0"})

    observer = RecordingObserver()
    observers = ObserverRegistry()
    observers.register(observer)

    importer = RecordingDataImporter(id_map={"pages": {1: 42}})
    setup_runner = SetupRunner(
        ledger,
        files_dir=tmp_path / "files",
        site_config_dir=tmp_path / "sites",
        data_importer=importer,
        observers=observers,
    )

    environment = ExtensionEnv(
        root=tmp_path,
        catalog=catalog,
        ledger=ledger,
        activation=activation,
        metadata_store=metadata_store,
        installed=installed,
        directories=directories,
        resolver=resolver,
        setup_runner=setup_runner,
        orchestrator=None,  # type: ignore[arg-type]
        downloader=FakeDownloader(),
        cache=RecordingCacheManager(),
        schema=RecordingSchemaUpdater(),
        importer=importer,
        observer=observer,
    )
    environment.orchestrator = environment.make_orchestrator()
    return environment
