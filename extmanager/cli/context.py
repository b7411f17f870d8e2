"""Wiring of the extension manager components from settings"""

from dataclasses import dataclass
from typing import Optional

from extmanager.config import Settings, load_settings
from extmanager.core.extensions.activation import InstalledPackageSet, SQLitePackageActivation
from extmanager.core.extensions.archive import ZipArchiveExtractor
from extmanager.core.extensions.catalog import ExtensionCatalog
from extmanager.core.extensions.directories import PackageDirectoryManager
from extmanager.core.extensions.downloader import MirrorDownloader
from extmanager.core.extensions.ledger import ExecutionLedger
from extmanager.core.extensions.metadata import JsonMetadataStore
from extmanager.core.extensions.observers import ObserverRegistry
from extmanager.core.extensions.orchestrator import InstallationOrchestrator
from extmanager.core.extensions.report import ExtensionStatusReport
from extmanager.core.extensions.resolver import DependencyResolver
from extmanager.core.extensions.setup_steps import SetupRunner


@dataclass
class Services:
    settings: Settings
    catalog: ExtensionCatalog
    ledger: ExecutionLedger
    activation: SQLitePackageActivation
    metadata_store: JsonMetadataStore
    installed: InstalledPackageSet
    directories: PackageDirectoryManager
    resolver: DependencyResolver
    orchestrator: InstallationOrchestrator
    report: ExtensionStatusReport


def build_services(settings: Optional[Settings] = None, download_only: bool = False) -> Services:
    """Create every component against the configured paths and database"""
    settings = settings or load_settings()
    settings.ensure_directories()

    db_path = settings.database_path
    catalog = ExtensionCatalog(db_path)
    ledger = ExecutionLedger(db_path)
    activation = SQLitePackageActivation(db_path)
    metadata_store = JsonMetadataStore()
    installed = InstalledPackageSet(activation, metadata_store, settings.extensions_path)
    directories = PackageDirectoryManager(settings.extensions_path, site_root=settings.home_path())
    observers = ObserverRegistry()

    resolver = DependencyResolver(
        catalog,
        installed,
        platform_versions=settings.platform_versions,
    )

    orchestrator = InstallationOrchestrator(
        catalog=catalog,
        resolver=resolver,
        installed=installed,
        directories=directories,
        downloader=MirrorDownloader(
            settings.mirror_url,
            max_retries=settings.download_retries,
            timeout=settings.download_timeout,
        ),
        extractor=ZipArchiveExtractor(),
        metadata_store=metadata_store,
        activation=activation,
        setup_runner=SetupRunner(
            ledger,
            files_dir=settings.files_path,
            site_config_dir=settings.site_config_path,
            observers=observers,
        ),
        observers=observers,
        download_only=download_only or not settings.automatic_installation,
        lock_timeout=settings.lock_timeout,
    )

    report = ExtensionStatusReport(
        catalog,
        activation,
        metadata_store,
        settings.extensions_path,
        settings.mirror_title,
    )

    return Services(
        settings=settings,
        catalog=catalog,
        ledger=ledger,
        activation=activation,
        metadata_store=metadata_store,
        installed=installed,
        directories=directories,
        resolver=resolver,
        orchestrator=orchestrator,
        report=report,
    )
