"""Extension installation and dependency resolution

Components:
- versioning: Version triples and version ranges
- catalog: SQLite-backed index of known extension versions
- resolver: Dependency-first resolution plans
- orchestrator: Install/uninstall state machine
- ledger: Write-once record of one-time setup steps
- directories: Symlink-safe package directory handling
- setup_steps: Ledger-guarded imports after activation
- downloader / archive / metadata / activation: default collaborators
- report: Mirror and withdrawn-version status checks
"""

from extmanager.core.extensions.exceptions import (
    ActivationError,
    CatalogError,
    ConflictError,
    CorruptArchiveError,
    DataImportError,
    DependencyBlockedError,
    DirectoryOperationError,
    DownloadFailedError,
    ExtensionError,
    ExtensionNotFoundError,
    InvalidVersionError,
    LedgerError,
    MetadataError,
    OperationInProgressError,
    ResolutionError,
    UnresolvableDependencyError,
)
from extmanager.core.extensions.versioning import (
    Version,
    VersionRange,
    compare_versions,
    parse_version,
    range_contains,
    to_integer_version,
)
from extmanager.core.extensions.models import (
    ConstraintEdge,
    DependencyKind,
    ExtensionState,
    ExtensionVersion,
    InstalledPackage,
    InstallOutcome,
    InstallResult,
    PackageResult,
    PackageState,
    ResolutionPlan,
)
from extmanager.core.extensions.catalog import ExtensionCatalog
from extmanager.core.extensions.ledger import ExecutionLedger
from extmanager.core.extensions.directories import PackageDirectoryManager
from extmanager.core.extensions.activation import InstalledPackageSet, SQLitePackageActivation
from extmanager.core.extensions.archive import ZipArchiveExtractor
from extmanager.core.extensions.downloader import MirrorDownloader
from extmanager.core.extensions.metadata import JsonMetadataStore
from extmanager.core.extensions.observers import ActivationObserver, ObserverRegistry
from extmanager.core.extensions.setup_steps import SetupRunner
from extmanager.core.extensions.resolver import DependencyResolver
from extmanager.core.extensions.orchestrator import InstallationOrchestrator
from extmanager.core.extensions.report import ExtensionStatusReport

__all__ = [
    # Exceptions
    "ActivationError",
    "CatalogError",
    "ConflictError",
    "CorruptArchiveError",
    "DataImportError",
    "DependencyBlockedError",
    "DirectoryOperationError",
    "DownloadFailedError",
    "ExtensionError",
    "ExtensionNotFoundError",
    "InvalidVersionError",
    "LedgerError",
    "MetadataError",
    "OperationInProgressError",
    "ResolutionError",
    "UnresolvableDependencyError",
    # Versions
    "Version",
    "VersionRange",
    "compare_versions",
    "parse_version",
    "range_contains",
    "to_integer_version",
    # Models
    "ConstraintEdge",
    "DependencyKind",
    "ExtensionState",
    "ExtensionVersion",
    "InstalledPackage",
    "InstallOutcome",
    "InstallResult",
    "PackageResult",
    "PackageState",
    "ResolutionPlan",
    # Components
    "ExtensionCatalog",
    "ExecutionLedger",
    "PackageDirectoryManager",
    "InstalledPackageSet",
    "SQLitePackageActivation",
    "ZipArchiveExtractor",
    "MirrorDownloader",
    "JsonMetadataStore",
    "ActivationObserver",
    "ObserverRegistry",
    "SetupRunner",
    "DependencyResolver",
    "InstallationOrchestrator",
    "ExtensionStatusReport",
]
