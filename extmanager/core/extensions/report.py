"""Extension status report: mirror freshness and withdrawn versions on disk"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from extmanager.core.extensions.catalog import ExtensionCatalog
from extmanager.core.extensions.exceptions import ExtensionError
from extmanager.core.extensions.protocols import MetadataStore, PackageActivation

logger = logging.getLogger(__name__)

MAX_MIRROR_AGE_SECONDS = 7 * 24 * 60 * 60


class Severity(str, Enum):
    OK = "ok"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class StatusResult:
    """One line of the status report"""
    title: str
    severity: Severity
    message: str = ""
    extensions: List[str] = field(default_factory=list)


class ExtensionStatusReport:
    """
    Checks the local mirror and the extensions present on disk

    An extension counts as loaded when it is active and as present when its
    directory exists without being active. Insecure loaded extensions are
    errors; everything else that is withdrawn is a warning.
    """

    def __init__(
        self,
        catalog: ExtensionCatalog,
        activation: PackageActivation,
        metadata_store: MetadataStore,
        extensions_dir: Path,
        mirror_title: str,
        max_mirror_age: int = MAX_MIRROR_AGE_SECONDS
    ):
        self.catalog = catalog
        self.activation = activation
        self.metadata_store = metadata_store
        self.extensions_dir = Path(extensions_dir)
        self.mirror_title = mirror_title
        self.max_mirror_age = max_mirror_age

    def get_status(self, now: Optional[float] = None) -> Dict[str, StatusResult]:
        """Run all checks, keyed by check name"""
        status = {"main_repository": self.check_mirror(now)}

        insecure_loaded, insecure_present = [], []
        outdated_loaded, outdated_present = [], []
        active = set(self.activation.list_active())

        for extension_key, version in self._present_extensions():
            try:
                entry = self.catalog.find_version(extension_key, version)
            except ExtensionError as e:
                logger.warning(f"Skipping {extension_key} in status report: {e}")
                continue
            if entry is None:
                continue
            label = f"{extension_key} ({version})"
            loaded = extension_key in active
            if entry.is_insecure:
                (insecure_loaded if loaded else insecure_present).append(label)
            elif entry.is_outdated:
                (outdated_loaded if loaded else outdated_present).append(label)

        status["security_installed"] = self._withdrawn_result(
            "Insecure extensions (loaded)", insecure_loaded, Severity.ERROR,
            "Loaded extensions with known security issues",
        )
        status["security_not_installed"] = self._withdrawn_result(
            "Insecure extensions (present)", insecure_present, Severity.WARNING,
            "Extensions present on disk with known security issues",
        )
        status["outdated_installed"] = self._withdrawn_result(
            "Outdated extensions (loaded)", outdated_loaded, Severity.WARNING,
            "Loaded extensions whose version was withdrawn as outdated",
        )
        status["outdated_not_installed"] = self._withdrawn_result(
            "Outdated extensions (present)", outdated_present, Severity.WARNING,
            "Extensions present on disk whose version was withdrawn as outdated",
        )
        return status

    def check_mirror(self, now: Optional[float] = None) -> StatusResult:
        title = "Extension repository"
        mirror = self.catalog.get_mirror(self.mirror_title)
        if mirror is None:
            return StatusResult(title, Severity.ERROR, f"Repository '{self.mirror_title}' not found")

        if not mirror.last_update:
            return StatusResult(title, Severity.NOTICE, "Extension list has never been updated")

        age = (now if now is not None else time.time()) - mirror.last_update
        if age > self.max_mirror_age:
            days = int(age // 86400)
            return StatusResult(title, Severity.NOTICE, f"Extension list is {days} days old, update it")

        return StatusResult(title, Severity.OK, f"{mirror.extension_count} extensions available")

    def _present_extensions(self) -> List[tuple]:
        """(key, version) of every package directory with readable metadata"""
        if not self.extensions_dir.is_dir():
            return []

        present = []
        for path in sorted(self.extensions_dir.iterdir()):
            if not path.is_dir():
                continue
            try:
                metadata = self.metadata_store.read_metadata(path)
            except ExtensionError as e:
                logger.warning(f"Skipping {path.name} in status report: {e}")
                continue
            if metadata and metadata.get("version"):
                present.append((path.name, str(metadata["version"])))
        return present

    @staticmethod
    def _withdrawn_result(title: str, extensions: List[str], severity: Severity, message: str) -> StatusResult:
        if not extensions:
            return StatusResult(title, Severity.OK, "None")
        return StatusResult(title, severity, f"{message}: {', '.join(extensions)}", extensions)
