"""Package metadata file handling (ext_manifest.json)"""

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from extmanager.core.extensions.exceptions import MetadataError
from extmanager.core.extensions.models import DependencyKind

logger = logging.getLogger(__name__)

METADATA_FILENAME = "ext_manifest.json"

# Legacy version fields folded into depends constraints
LEGACY_PLATFORM_FIELDS = {
    "python_version": "python",
    "cms_version": "cms",
}

# Keys from old metadata formats that are dropped on write
OBSOLETE_KEYS = (
    "dependencies",
    "conflicts",
    "suggests",
    "private",
    "download_password",
    "python_version",
    "cms_version",
    "internal",
    "module",
    "load_order",
    "lock_type",
    "create_dirs",
    "shy",
    "priority",
    "modify_tables",
)


def deep_merge(existing: Mapping[str, Any], new: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge new metadata over existing metadata

    Keys present in new win; keys only in existing survive. Nested mappings
    are merged recursively. Neither input is modified.
    """
    merged = copy.deepcopy(dict(existing))
    for key, value in new.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def string_to_dependency(value: Any) -> Dict[str, str]:
    """
    Convert a legacy comma-separated dependency list into a constraint map

    "cms,news" -> {"cms": "", "news": ""}
    """
    if isinstance(value, Mapping):
        return {str(k): str(v or "") for k, v in value.items()}
    if not value:
        return {}
    return {key.strip(): "" for key in str(value).split(',') if key.strip()}


def normalize_metadata(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Bring metadata into the current format

    Missing constraint maps are built from the legacy 'dependencies',
    'conflicts' and platform version fields, then obsolete keys are removed.
    """
    normalized = copy.deepcopy(dict(metadata))
    constraints = normalized.get("constraints")
    if not isinstance(constraints, dict):
        constraints = {}

    if DependencyKind.DEPENDS.value not in constraints:
        depends = string_to_dependency(normalized.get("dependencies"))
        for field_name, platform_key in LEGACY_PLATFORM_FIELDS.items():
            if str(normalized.get(field_name) or "") != "":
                depends[platform_key] = str(normalized[field_name])
        constraints[DependencyKind.DEPENDS.value] = depends

    if DependencyKind.CONFLICTS.value not in constraints:
        constraints[DependencyKind.CONFLICTS.value] = string_to_dependency(normalized.get("conflicts"))

    if DependencyKind.SUGGESTS.value not in constraints:
        constraints[DependencyKind.SUGGESTS.value] = {}

    for key in OBSOLETE_KEYS:
        normalized.pop(key, None)

    normalized["constraints"] = constraints
    return normalized


class JsonMetadataStore:
    """Reads and writes ext_manifest.json inside a package directory"""

    def __init__(self, filename: str = METADATA_FILENAME):
        self.filename = filename

    def metadata_path(self, path: Path) -> Path:
        return Path(path) / self.filename

    def read_metadata(self, path: Path) -> Optional[Dict[str, Any]]:
        """
        Load metadata of a package directory

        Returns:
            Metadata dict, or None if the directory has no metadata file

        Raises:
            MetadataError: If the file exists but is not a JSON object
        """
        metadata_path = self.metadata_path(path)
        if not metadata_path.is_file():
            return None

        try:
            with open(metadata_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise MetadataError(f"Failed to read metadata {metadata_path}: {e}")

        if not isinstance(data, dict):
            raise MetadataError(f"Metadata must be a JSON object: {metadata_path}")
        return data

    def write_metadata(self, path: Path, metadata: Dict[str, Any]) -> None:
        """
        Persist metadata atomically (temp file + os.replace)

        Raises:
            MetadataError: If the file cannot be written
        """
        metadata_path = self.metadata_path(path)
        try:
            fd, temp_path = tempfile.mkstemp(dir=str(metadata_path.parent), prefix=".ext_manifest.", suffix=".tmp")
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(metadata, f, indent=2, sort_keys=True)
                    f.write("\n")
                os.replace(temp_path, metadata_path)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise

        except (OSError, TypeError, ValueError) as e:
            raise MetadataError(f"Failed to write metadata {metadata_path}: {e}")

        logger.debug(f"Metadata written: {metadata_path}")
