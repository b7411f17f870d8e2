"""
Installation orchestrator

Executes resolution plans package by package through the states

    PENDING -> FILES_ENSURED -> METADATA_WRITTEN -> ACTIVATED -> SETUP_COMPLETE

with FAILED as the terminal error state. A failed package only takes down
the packages that depend on it; independent packages of the same batch are
still attempted.
"""

import json
import logging
import re
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from extmanager.core.extensions.activation import InstalledPackageSet
from extmanager.core.extensions.archive import create_archive
from extmanager.core.extensions.catalog import ExtensionCatalog
from extmanager.core.extensions.directories import PackageDirectoryManager
from extmanager.core.extensions.downloader import calculate_sha256
from extmanager.core.extensions.exceptions import (
    CatalogError,
    CorruptArchiveError,
    DependencyBlockedError,
    DirectoryOperationError,
    DownloadFailedError,
    ExtensionError,
    ExtensionNotFoundError,
    MetadataError,
    OperationInProgressError,
)
from extmanager.core.extensions.metadata import (
    METADATA_FILENAME,
    deep_merge,
    normalize_metadata,
)
from extmanager.core.extensions.models import (
    EXTENSION_KEY_PATTERN,
    ExtensionVersion,
    InstalledPackage,
    InstallOutcome,
    InstallResult,
    PackageResult,
    PackageState,
    ResolutionPlan,
    constraints_to_edges,
)
from extmanager.core.extensions.observers import ObserverRegistry
from extmanager.core.extensions.protocols import (
    ArchiveExtractor,
    CacheManager,
    Downloader,
    MetadataStore,
    PackageActivation,
    SchemaUpdater,
)
from extmanager.core.extensions.resolver import DependencyResolver
from extmanager.core.extensions.setup_steps import (
    NullCacheManager,
    NullSchemaUpdater,
    SetupRunner,
)
from extmanager.core.extensions.versioning import parse_version

logger = logging.getLogger(__name__)

SYSTEM_CACHE_GROUP = "system"
ARCHIVE_EXTRACTED = "archive_extracted"
# news_1.2.0.zip, news_1.2.0_202401011200.zip
ARCHIVE_NAME_SUFFIX = re.compile(r"_\d+\.\d+\.\d+.*$")
DEFAULT_LOCK_TIMEOUT = 30.0


class KeyedLockRegistry:
    """
    One non-reentrant lock per extension key

    Holding the lock for a key twice from the same thread times out like
    any other contention.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Raises:
            OperationInProgressError: If the lock is not acquired in time
        """
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout if timeout is not None else -1):
            raise OperationInProgressError(key)
        try:
            yield
        finally:
            lock.release()


# Shared by every orchestrator in the process
package_locks = KeyedLockRegistry()


class InstallationOrchestrator:
    """Installs, uninstalls and removes extension packages"""

    def __init__(
        self,
        catalog: ExtensionCatalog,
        resolver: DependencyResolver,
        installed: InstalledPackageSet,
        directories: PackageDirectoryManager,
        downloader: Downloader,
        extractor: ArchiveExtractor,
        metadata_store: MetadataStore,
        activation: PackageActivation,
        setup_runner: SetupRunner,
        observers: Optional[ObserverRegistry] = None,
        cache_manager: Optional[CacheManager] = None,
        schema_updater: Optional[SchemaUpdater] = None,
        download_only: bool = False,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
        locks: Optional[KeyedLockRegistry] = None
    ):
        """
        Args:
            download_only: Fetch and unpack the requested package without
                activating it or its dependencies
            lock_timeout: Seconds to wait for another operation on the same
                key (None waits forever)
            locks: Lock registry; defaults to the process-wide one
        """
        self.catalog = catalog
        self.resolver = resolver
        self.installed = installed
        self.directories = directories
        self.downloader = downloader
        self.extractor = extractor
        self.metadata_store = metadata_store
        self.activation = activation
        self.setup_runner = setup_runner
        self.observers = observers or ObserverRegistry()
        self.cache_manager = cache_manager or NullCacheManager()
        self.schema_updater = schema_updater or NullSchemaUpdater()
        self.download_only = download_only
        self.lock_timeout = lock_timeout
        self.locks = locks or package_locks

    @property
    def is_download_only(self) -> bool:
        return self.download_only or self.resolver.skip_dependency_check

    # ------------------------------------------------------------------
    # Resolve / install
    # ------------------------------------------------------------------

    def resolve(self, extension_key: str, version: Optional[str] = None) -> ResolutionPlan:
        """Refresh the installed set and resolve an install request"""
        self.installed.refresh()
        return self.resolver.resolve_key(extension_key, version)

    def install(
        self,
        extension_key: str,
        version: Optional[str] = None,
        cancel: Optional[threading.Event] = None
    ) -> InstallResult:
        """
        Resolve and install an extension with its dependencies

        Args:
            extension_key: Extension to install
            version: Exact version, defaults to the current catalog version
            cancel: Checked between packages; packages not yet started are
                reported as skipped once it is set

        Returns:
            InstallResult with the plan and one PackageResult per package
        """
        root = self.resolver.find_root(extension_key, version)
        if root is None:
            plan = self.resolver.resolve_key(extension_key, version)
            logger.warning(f"Cannot install {extension_key}: not found in catalog")
            return InstallResult(plan=plan)

        return self.install_version(root, cancel)

    def install_version(self, root: ExtensionVersion, cancel: Optional[threading.Event] = None) -> InstallResult:
        """Install a known extension version with its dependencies, see install"""
        self.installed.refresh()
        plan = self.resolver.resolve(root)

        if self.is_download_only:
            return self._download(root, plan)

        result = InstallResult(plan=plan)
        if not plan.ok:
            logger.warning(f"Not installing {root}: resolution failed")
            return result

        logger.info(f"Starting installation: {root} ({len(plan.ordered_install_set)} packages)")

        failed_keys = set()
        activated: List[Tuple[ExtensionVersion, Dict[str, Any]]] = []

        for entry in plan.ordered_install_set:
            key = entry.extension_key

            if cancel is not None and cancel.is_set():
                result.packages[key] = self._skipped(entry, "installation cancelled")
                failed_keys.add(key)
                continue

            blocked_by = [edge.target_key for edge in entry.depends if edge.target_key in failed_keys]
            if blocked_by:
                result.packages[key] = self._skipped(entry, f"dependency not installed: {', '.join(blocked_by)}")
                failed_keys.add(key)
                continue

            package_result, metadata = self._install_package(entry)
            result.packages[key] = package_result
            if package_result.state == PackageState.FAILED:
                failed_keys.add(key)
            else:
                activated.append((entry, metadata))

        if activated:
            self._finish_batch(result, activated)

        for entry, _ in activated:
            package_result = result.packages[entry.extension_key]
            if package_result.state == PackageState.ACTIVATED:
                self._run_setup(entry, package_result)

        outcomes = {key: (r.outcome or r.state).value for key, r in result.packages.items()}
        logger.info(f"Installation finished for {root}: {outcomes}")
        return result

    def _skipped(self, entry: ExtensionVersion, reason: str) -> PackageResult:
        logger.warning(f"Skipping {entry}: {reason}")
        return PackageResult(
            extension_key=entry.extension_key,
            version=entry.version,
            outcome=InstallOutcome.SKIPPED,
            reason=reason,
        )

    def _fail(self, result: PackageResult, error: Exception) -> None:
        result.state = PackageState.FAILED
        result.outcome = InstallOutcome.FAILED
        result.reason = str(error)
        result.error = error

    def _download(self, root: ExtensionVersion, plan: ResolutionPlan) -> InstallResult:
        """Fetch and unpack only the requested package"""
        logger.info(f"Download only: {root}")
        result = InstallResult(plan=plan)
        package_result = PackageResult(extension_key=root.extension_key, version=root.version)
        result.packages[root.extension_key] = package_result

        try:
            with self.locks.hold(root.extension_key, self.lock_timeout):
                package_dir, existing, fresh = self._ensure_files(root, package_result)
                self._write_metadata(root, package_dir, existing, fresh, package_result)
            package_result.outcome = InstallOutcome.DOWNLOADED

        except ExtensionError as e:
            logger.error(f"Download of {root} failed: {e}")
            self._fail(package_result, e)

        except Exception as e:
            logger.error(f"Unexpected error while downloading {root}: {e}", exc_info=True)
            self._fail(package_result, e)

        return result

    def _install_package(self, entry: ExtensionVersion) -> Tuple[PackageResult, Dict[str, Any]]:
        """Files, metadata and activation of one package"""
        result = PackageResult(extension_key=entry.extension_key, version=entry.version)
        metadata: Dict[str, Any] = {}

        try:
            with self.locks.hold(entry.extension_key, self.lock_timeout):
                package_dir, existing, fresh = self._ensure_files(entry, result)
                metadata = self._write_metadata(entry, package_dir, existing, fresh, result)
                self._activate(entry, package_dir, metadata, result)

        except ExtensionError as e:
            logger.error(f"Installation of {entry} failed in state {result.state.value}: {e}")
            self._fail(result, e)

        except Exception as e:
            logger.error(f"Unexpected error while installing {entry}: {e}", exc_info=True)
            self._fail(result, e)

        return result, metadata

    def _read_existing_metadata(self, package_dir: Path) -> Optional[Dict[str, Any]]:
        if package_dir.is_symlink() or not package_dir.is_dir():
            return None
        try:
            return self.metadata_store.read_metadata(package_dir)
        except MetadataError as e:
            logger.warning(f"Ignoring unreadable metadata in {package_dir}: {e}")
            return None

    @staticmethod
    def _same_version(metadata: Optional[Dict[str, Any]], version: str) -> bool:
        if not metadata or not metadata.get("version"):
            return False
        try:
            return parse_version(str(metadata["version"])) == parse_version(version)
        except ExtensionError:
            return False

    def _ensure_files(
        self,
        entry: ExtensionVersion,
        result: PackageResult
    ) -> Tuple[Path, Optional[Dict[str, Any]], Dict[str, Any]]:
        """
        Make the package files present locally

        Returns:
            (package directory, metadata found on disk, metadata shipped in
            the archive)
        """
        key = entry.extension_key
        package_dir = self.directories.get_extension_dir(key)
        existing = self._read_existing_metadata(package_dir)

        if self._same_version(existing, entry.version):
            logger.info(f"Files of {entry} already present, skipping download")
            result.state = PackageState.FILES_ENSURED
            result.completed_steps.append("files_present")
            return package_dir, existing, {}

        try:
            archive = self.downloader.fetch(key, entry.version)
        except DownloadFailedError as e:
            e.extension_key = key
            raise

        if entry.content_hash:
            actual_hash = calculate_sha256(archive)
            if actual_hash != entry.content_hash:
                raise CorruptArchiveError(
                    f"Hash mismatch for {entry}: expected {entry.content_hash}, got {actual_hash}",
                    extension_key=key,
                )

        try:
            files = self.extractor.extract(archive)
        except CorruptArchiveError as e:
            e.extension_key = key
            raise

        fresh = self._archive_metadata(str(entry), files)

        self.directories.ensure_clean(package_dir)
        self.directories.write_files(package_dir, files)

        try:
            self.catalog.increment_download_counter(key, entry.version)
        except CatalogError as e:
            logger.warning(f"Could not count download of {entry}: {e}")

        result.state = PackageState.FILES_ENSURED
        result.completed_steps.append("files_downloaded")
        return package_dir, existing, fresh

    @staticmethod
    def _archive_metadata(label: str, files: Dict[str, bytes]) -> Dict[str, Any]:
        raw = files.get(METADATA_FILENAME)
        if raw is None:
            return {}
        try:
            data = json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MetadataError(f"Invalid {METADATA_FILENAME} in archive of {label}: {e}")
        if not isinstance(data, dict):
            raise MetadataError(f"Invalid {METADATA_FILENAME} in archive of {label}: not an object")
        return data

    def _write_metadata(
        self,
        entry: ExtensionVersion,
        package_dir: Path,
        existing: Optional[Dict[str, Any]],
        fresh: Dict[str, Any],
        result: PackageResult
    ) -> Dict[str, Any]:
        """Merge, normalize and persist the package metadata"""
        merged = deep_merge(existing or {}, fresh)
        merged["version"] = entry.version
        merged.setdefault("title", entry.title)
        merged.setdefault("state", entry.state.value)

        if not merged.get("constraints") and "dependencies" not in merged and entry.dependencies:
            merged["constraints"] = entry.constraints()

        created = self.directories.ensure_configured_directories_exist(entry.extension_key, merged)
        for directory in created:
            logger.info(f"Created directory for {entry.extension_key}: {directory}")

        metadata = normalize_metadata(merged)
        self.metadata_store.write_metadata(package_dir, metadata)

        result.state = PackageState.METADATA_WRITTEN
        result.completed_steps.append("metadata_written")
        return metadata

    def _activate(
        self,
        entry: ExtensionVersion,
        package_dir: Path,
        metadata: Dict[str, Any],
        result: PackageResult
    ) -> None:
        key = entry.extension_key
        self.activation.activate(key)
        self.installed.add(InstalledPackage(
            extension_key=key,
            version=entry.version,
            dependencies=constraints_to_edges(metadata.get("constraints")),
            path=str(package_dir),
        ))
        result.state = PackageState.ACTIVATED
        result.completed_steps.append("activated")
        self.observers.notify_activated(key)

    def _finish_batch(self, result: InstallResult, activated: List[Tuple[ExtensionVersion, Dict[str, Any]]]) -> None:
        """One cache flush, cache reload and schema update for the whole batch"""
        try:
            if any(metadata.get("clear_cache_on_load") for _, metadata in activated):
                self.cache_manager.flush_caches()
            else:
                self.cache_manager.flush_caches_in_group(SYSTEM_CACHE_GROUP)
            self.cache_manager.reload_caches()
            self.schema_updater.update_database()

        except Exception as e:
            logger.error(f"Post-activation step failed: {e}", exc_info=True)
            for entry, _ in activated:
                self._fail(result.packages[entry.extension_key], e)

    def _run_setup(self, entry: ExtensionVersion, result: PackageResult) -> None:
        try:
            with self.locks.hold(entry.extension_key, self.lock_timeout):
                package_dir = self.directories.get_extension_dir(entry.extension_key)
                performed = self.setup_runner.run(entry.extension_key, package_dir)

            result.completed_steps.extend(performed)
            result.state = PackageState.SETUP_COMPLETE
            result.outcome = InstallOutcome.INSTALLED
            logger.info(f"Installed {entry}")

        except ExtensionError as e:
            logger.error(f"Setup of {entry} failed: {e}")
            self._fail(result, e)
            result.reason = f"setup failed after activation: {e}"

        except Exception as e:
            logger.error(f"Unexpected error during setup of {entry}: {e}", exc_info=True)
            self._fail(result, e)

    # ------------------------------------------------------------------
    # Local archives
    # ------------------------------------------------------------------

    def _archive_entry(self, archive_path: Path, metadata: Dict[str, Any]) -> ExtensionVersion:
        """
        Catalog entry for an uploaded archive

        The key comes from the metadata or, failing that, from the file name
        (news_1.2.0.zip -> news). Versions unknown to the catalog are built
        from the archive metadata.
        """
        key = str(metadata.get("extension_key") or ARCHIVE_NAME_SUFFIX.sub("", archive_path.stem))
        if not EXTENSION_KEY_PATTERN.match(key):
            raise ExtensionError(f"No valid extension key for {archive_path.name}: {key!r}")

        version = str(parse_version(str(metadata.get("version") or "0.0.0")))
        known = self.catalog.find_version(key, version)
        if known is not None:
            return known

        normalized = normalize_metadata(metadata)
        try:
            return ExtensionVersion(
                extension_key=key,
                version=version,
                title=str(normalized.get("title") or ""),
                description=str(normalized.get("description") or ""),
                state=normalized.get("state"),
                dependencies=constraints_to_edges(normalized.get("constraints")),
            )
        except ValueError as e:
            raise MetadataError(f"Invalid {METADATA_FILENAME} in {archive_path.name}: {e}")

    def install_from_archive(
        self,
        archive_path: Path,
        activate: bool = True,
        overwrite: bool = False
    ) -> InstallResult:
        """
        Install an extension from a local zip file

        The package is unpacked and its metadata written. With activate set
        it is then installed like a catalog package, dependencies included;
        otherwise it is reported as downloaded.

        Raises:
            ExtensionError: If the archive cannot be read, carries no valid
                extension key, or the extension directory exists and
                overwrite is not set
            CorruptArchiveError: If the archive cannot be unpacked
            OperationInProgressError: If another operation holds the key
        """
        archive_path = Path(archive_path)
        try:
            archive = archive_path.read_bytes()
        except OSError as e:
            raise ExtensionError(f"Cannot read archive {archive_path}: {e}")

        files = self.extractor.extract(archive)
        fresh = self._archive_metadata(archive_path.name, files)
        entry = self._archive_entry(archive_path, fresh)
        key = entry.extension_key
        package_result = PackageResult(extension_key=key, version=entry.version)

        with self.locks.hold(key, self.lock_timeout):
            package_dir = self.directories.get_extension_dir(key)
            if (package_dir.is_symlink() or package_dir.exists()) and not overwrite:
                raise ExtensionError(f"Extension {key} is already present; overwrite it to replace the files")

            existing = self._read_existing_metadata(package_dir)
            self.directories.ensure_clean(package_dir)
            self.directories.write_files(package_dir, files)
            package_result.state = PackageState.FILES_ENSURED
            package_result.completed_steps.append(ARCHIVE_EXTRACTED)
            self._write_metadata(entry, package_dir, existing, fresh, package_result)

        logger.info(f"Unpacked {entry} from {archive_path.name}")

        if not activate:
            package_result.outcome = InstallOutcome.DOWNLOADED
            result = InstallResult(plan=ResolutionPlan(root_key=key))
            result.packages[key] = package_result
            return result

        result = self.install_version(entry)
        root_result = result.packages.get(key)
        if root_result is not None:
            root_result.completed_steps.insert(0, ARCHIVE_EXTRACTED)
        return result

    def export_extension(self, extension_key: str, target_dir: Path) -> Path:
        """
        Pack an extension directory into <key>_<version>_<YYYYmmddHHMM>.zip

        Raises:
            ExtensionNotFoundError: If the extension has no directory
            DirectoryOperationError: If the archive cannot be written
        """
        with self.locks.hold(extension_key, self.lock_timeout):
            package_dir = self.directories.get_extension_dir(extension_key)
            if not package_dir.is_dir():
                raise ExtensionNotFoundError(extension_key, f"No directory for extension {extension_key}")

            try:
                metadata = self.metadata_store.read_metadata(package_dir) or {}
            except MetadataError as e:
                logger.warning(f"Exporting {extension_key} without a version: {e}")
                metadata = {}

            version = metadata.get("version") or "0.0.0"
            target = Path(target_dir) / f"{extension_key}_{version}_{time.strftime('%Y%m%d%H%M')}.zip"
            return create_archive(package_dir, target)

    # ------------------------------------------------------------------
    # Uninstall / remove
    # ------------------------------------------------------------------

    def uninstall(self, extension_key: str) -> None:
        """
        Deactivate an installed extension

        Raises:
            DependencyBlockedError: If installed packages depend on it
            OperationInProgressError: If another operation holds the key
        """
        with self.locks.hold(extension_key, self.lock_timeout):
            self.installed.refresh()

            if not self.activation.is_active(extension_key):
                logger.info(f"Extension {extension_key} is not active, nothing to uninstall")
                return

            blockers = self.resolver.find_dependents(extension_key)
            if blockers:
                raise DependencyBlockedError(extension_key, blockers)

            logger.info(f"Uninstalling extension: {extension_key}")
            self.activation.deactivate(extension_key)
            self.installed.remove(extension_key)
            self.observers.notify_deactivated(extension_key)
            self.cache_manager.flush_caches_in_group(SYSTEM_CACHE_GROUP)

    def remove_extension(self, extension_key: str) -> None:
        """
        Delete the directory of an inactive extension

        Raises:
            ExtensionError: If the extension is still active
            ExtensionNotFoundError: If it has no directory
            DirectoryOperationError: If the path is outside the extensions
                directory or cannot be removed
        """
        with self.locks.hold(extension_key, self.lock_timeout):
            if self.activation.is_active(extension_key):
                raise ExtensionError(f"Extension {extension_key} is active; uninstall it first")

            path = self.directories.get_extension_dir(extension_key)
            if not self.directories.is_valid_extension_path(path):
                raise DirectoryOperationError(
                    f"{path} is not inside the extensions directory, refusing to remove it",
                    path=str(path),
                )
            if not path.is_symlink() and not path.exists():
                raise ExtensionNotFoundError(extension_key, f"No directory for extension {extension_key}")

            logger.info(f"Removing extension directory: {path}")
            self.directories.remove_directory(path)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def get_update_candidate(self, extension_key: str) -> Optional[ExtensionVersion]:
        """
        Highest catalog version newer than the installed one that resolves
        without errors, or None
        """
        self.installed.refresh()
        installed = self.installed.get(extension_key)
        if installed is None:
            return None

        candidates = self.catalog.find_versions_in_range(extension_key, installed.version, 0)
        for candidate in reversed(candidates):
            plan = self.resolver.resolve(candidate)
            if plan.ok:
                return candidate
            logger.debug(f"Update candidate {candidate} rejected: {plan.errors[0]}")
        return None

    def get_update_comments(self, extension_key: str) -> Dict[str, str]:
        """Update comments of every version newer than the installed one"""
        self.installed.refresh()
        installed = self.installed.get(extension_key)
        if installed is None:
            raise ExtensionNotFoundError(extension_key, f"Extension {extension_key} is not installed")
        return self.catalog.collect_update_comments(extension_key, installed.version, 0)
