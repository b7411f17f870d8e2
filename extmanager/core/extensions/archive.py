"""Zip packing and unpacking of extension packages"""

import io
import logging
import os
import re
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, List, Union

from extmanager.core.extensions.exceptions import CorruptArchiveError, DirectoryOperationError

logger = logging.getLogger(__name__)

# Unpack limits
MAX_ARCHIVE_SIZE = 100 * 1024 * 1024  # 100MB uncompressed
MAX_ENTRIES = 20000

# Path segments left out when packaging an installed extension
EXCLUDE_FOR_PACKAGING = re.compile(r"^(?:\.(?!htaccess$).*|.*~|.*\.swp|.*\.bak|node_modules|bower_components)$")


class ZipArchiveExtractor:
    """Unpacks zip packages into a relative path -> content mapping"""

    def __init__(self, max_size: int = MAX_ARCHIVE_SIZE, max_entries: int = MAX_ENTRIES):
        self.max_size = max_size
        self.max_entries = max_entries

    @staticmethod
    def _find_root_dir(names: List[str]) -> str:
        """
        Top-level directory to strip, or '' when files sit in the zip root

        A single top-level directory with no files beside it is stripped.
        """
        top_dirs = set()
        top_files = set()
        for name in names:
            parts = PurePosixPath(name).parts
            if not parts:
                continue
            if not name.endswith('/') and len(parts) == 1:
                top_files.add(parts[0])
            else:
                top_dirs.add(parts[0])

        if len(top_dirs) == 1 and not top_files:
            return next(iter(top_dirs))
        return ""

    def extract(self, archive: Union[bytes, Path]) -> Dict[str, bytes]:
        """
        Read every file of a zip archive into memory

        Args:
            archive: Zip content or path to a zip file

        Returns:
            Relative POSIX path -> file content; directories end with '/'

        Raises:
            CorruptArchiveError: If the archive is unreadable, too large or
                contains unsafe paths or symlinks
        """
        source = io.BytesIO(archive) if isinstance(archive, (bytes, bytearray)) else Path(archive)

        try:
            with zipfile.ZipFile(source, 'r') as zf:
                infos = zf.infolist()
                if not infos:
                    raise CorruptArchiveError("Archive is empty")
                if len(infos) > self.max_entries:
                    raise CorruptArchiveError(f"Archive has too many entries: {len(infos)}")

                total_size = sum(info.file_size for info in infos)
                if total_size > self.max_size:
                    raise CorruptArchiveError(
                        f"Archive too large when unpacked: {total_size / 1024 / 1024:.2f}MB "
                        f"(max: {self.max_size / 1024 / 1024}MB)"
                    )

                root_dir = self._find_root_dir([info.filename for info in infos])
                if root_dir:
                    logger.debug(f"Stripping top-level directory from archive: {root_dir}")

                files: Dict[str, bytes] = {}
                for info in infos:
                    member = info.filename

                    if member.startswith('/') or '..' in PurePosixPath(member).parts:
                        raise CorruptArchiveError(f"Invalid file path in archive: {member}")

                    # Unix symlinks carry file type 0xA in the high bits
                    if (info.external_attr >> 28) == 0xA:
                        raise CorruptArchiveError(f"Symlinks are not allowed in packages: {member}")

                    if root_dir:
                        if member in (root_dir, f"{root_dir}/"):
                            continue
                        relative_path = member[len(root_dir) + 1:]
                    else:
                        relative_path = member

                    if not relative_path:
                        continue

                    if member.endswith('/'):
                        files[relative_path] = b""
                    else:
                        files[relative_path] = zf.read(info)

        except zipfile.BadZipFile as e:
            raise CorruptArchiveError(f"Invalid zip file: {e}")

        except (OSError, RuntimeError, zipfile.LargeZipFile) as e:
            raise CorruptArchiveError(f"Failed to read archive: {e}")

        logger.debug(f"Unpacked {len(files)} entries")
        return files


def create_archive(source_dir: Path, target: Path, exclude: re.Pattern = EXCLUDE_FOR_PACKAGING) -> Path:
    """
    Pack a package directory into a zip file

    Entries are relative to source_dir. Symlinks and path segments matching
    exclude are left out.

    Raises:
        DirectoryOperationError: If the directory cannot be read or the
            archive cannot be written
    """
    source_dir = Path(source_dir)
    target = Path(target)

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(target, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            for dirpath, dirnames, filenames in os.walk(source_dir):
                current = Path(dirpath)
                dirnames[:] = sorted(
                    name for name in dirnames
                    if not exclude.match(name) and not (current / name).is_symlink()
                )
                for name in dirnames:
                    zf.write(current / name, (current / name).relative_to(source_dir).as_posix() + "/")
                for name in sorted(filenames):
                    path = current / name
                    if exclude.match(name) or path.is_symlink():
                        logger.debug(f"Not packaging {path}")
                        continue
                    zf.write(path, path.relative_to(source_dir).as_posix())

    except OSError as e:
        raise DirectoryOperationError(f"Could not pack {source_dir} into {target}: {e}", path=str(target))

    logger.info(f"Packed {source_dir} into {target}")
    return target
