"""Protocols for the collaborators the install engine depends on

The engine only requires these interfaces; the host system provides the
implementations. Default implementations live in downloader.py, archive.py,
metadata.py, activation.py and setup_steps.py.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable


@runtime_checkable
class Downloader(Protocol):
    """Fetches the archive of one extension version"""

    def fetch(self, extension_key: str, version: str) -> bytes:
        """
        Raises:
            DownloadFailedError: If the archive cannot be fetched in time
        """
        ...


@runtime_checkable
class ArchiveExtractor(Protocol):
    """Unpacks a package archive into relative path -> content"""

    def extract(self, archive: Union[bytes, Path]) -> Dict[str, bytes]:
        """
        Raises:
            CorruptArchiveError: If the archive cannot be read
        """
        ...


@runtime_checkable
class PackageActivation(Protocol):
    """Activation state of packages in the running system"""

    def activate(self, extension_key: str) -> None:
        ...

    def deactivate(self, extension_key: str) -> None:
        ...

    def is_active(self, extension_key: str) -> bool:
        ...

    def list_active(self) -> List[str]:
        ...


@runtime_checkable
class MetadataStore(Protocol):
    """Reads and writes the metadata file of a package directory"""

    def read_metadata(self, path: Path) -> Optional[Dict[str, Any]]:
        ...

    def write_metadata(self, path: Path, metadata: Dict[str, Any]) -> None:
        ...


@runtime_checkable
class CacheManager(Protocol):
    """Cache control of the host system"""

    def flush_caches(self) -> None:
        ...

    def flush_caches_in_group(self, group: str) -> None:
        ...

    def reload_caches(self) -> None:
        ...


@runtime_checkable
class SchemaUpdater(Protocol):
    """Applies safe database schema updates of the host system"""

    def update_database(self) -> None:
        ...


@runtime_checkable
class DataImporter(Protocol):
    """Imports package-provided data into the host system"""

    def import_static_sql(self, sql: str) -> None:
        ...

    def import_data_file(self, path: Path) -> Dict[str, Dict[int, int]]:
        """
        Import a structured data file

        Returns:
            Id maps per record type, e.g. {"pages": {exported_id: new_id}}
        """
        ...
