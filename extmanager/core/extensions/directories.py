"""Package directory manager: on-disk directory trees of installed packages"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from extmanager.core.extensions.exceptions import DirectoryOperationError

logger = logging.getLogger(__name__)


class PackageDirectoryManager:
    """
    Creates, clears and removes package directories below an install root

    Symbolic links are never followed when removing: only the link itself
    is deleted, because its target may be shared with other installations.
    """

    def __init__(self, extensions_dir: Path, site_root: Optional[Path] = None):
        """
        Args:
            extensions_dir: Directory holding one sub-directory per package
            site_root: Root that relative configured directories resolve
                against (defaults to the parent of extensions_dir)
        """
        self.extensions_dir = Path(extensions_dir)
        self.site_root = Path(site_root) if site_root else self.extensions_dir.parent

    def get_extension_dir(self, extension_key: str) -> Path:
        """
        Installation directory for an extension

        Raises:
            DirectoryOperationError: If the key is empty or the install root
                is not a directory
        """
        if not extension_key or '/' in extension_key or extension_key in ('.', '..'):
            raise DirectoryOperationError(f"Invalid extension key for a directory: {extension_key!r}")

        if not self.extensions_dir.is_dir():
            raise DirectoryOperationError(
                f"Install path is not a directory: {self.extensions_dir}",
                path=str(self.extensions_dir),
            )

        return self.extensions_dir / extension_key

    def is_valid_extension_path(self, path: Path) -> bool:
        """True if path lies inside the install root"""
        try:
            Path(path).absolute().relative_to(self.extensions_dir.absolute())
        except ValueError:
            return False
        return Path(path).absolute() != self.extensions_dir.absolute()

    def remove_directory(self, path: Path) -> None:
        """
        Remove a package directory, or only the link if path is a symlink

        Raises:
            DirectoryOperationError: If path still exists afterwards
        """
        path = Path(path)
        try:
            if path.is_symlink():
                logger.info(f"Removing symlink (target left untouched): {path}")
                path.unlink()
            elif path.is_dir():
                logger.info(f"Removing directory: {path}")
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()

        except OSError as e:
            raise DirectoryOperationError(f"Could not remove directory {path}: {e}", path=str(path))

        if path.is_symlink() or path.exists():
            raise DirectoryOperationError(f"Could not remove directory {path}", path=str(path))

    def ensure_clean(self, path: Path) -> Path:
        """
        Make path an empty, real directory

        Removes an existing directory recursively (a symlink is unlinked,
        never followed) and creates it again.

        Raises:
            DirectoryOperationError: If path is not a directory afterwards
        """
        path = Path(path)
        if path.is_symlink() or path.exists():
            self.remove_directory(path)

        try:
            path.mkdir(parents=True)
        except OSError as e:
            raise DirectoryOperationError(f"Could not create directory {path}: {e}", path=str(path))

        if path.is_symlink() or not path.is_dir():
            raise DirectoryOperationError(f"Could not create directory {path}", path=str(path))

        return path

    def make_and_clear_extension_dir(self, extension_key: str) -> Path:
        """Fresh, empty directory for an extension"""
        return self.ensure_clean(self.get_extension_dir(extension_key))

    def write_files(self, root: Path, files: Mapping[str, bytes]) -> List[Path]:
        """
        Write files below root, creating nested directories

        Args:
            root: Target directory
            files: Relative POSIX path -> content; paths ending in '/' only
                create directories

        Returns:
            Paths of the written files

        Raises:
            DirectoryOperationError: If a path escapes root or cannot be written
        """
        root = Path(root)
        root_resolved = root.resolve()
        written = []

        for relative_path, content in files.items():
            if Path(relative_path).is_absolute() or '..' in Path(relative_path).parts:
                raise DirectoryOperationError(
                    f"Refusing to write outside the package directory: {relative_path}",
                    path=relative_path,
                )

            target_path = root / relative_path
            try:
                target_path.resolve().relative_to(root_resolved)
            except ValueError:
                raise DirectoryOperationError(
                    f"Refusing to write outside the package directory: {relative_path}",
                    path=relative_path,
                )

            try:
                if relative_path.endswith('/'):
                    target_path.mkdir(parents=True, exist_ok=True)
                    continue

                target_path.parent.mkdir(parents=True, exist_ok=True)
                with open(target_path, 'wb') as f:
                    f.write(content)
                written.append(target_path)

            except OSError as e:
                raise DirectoryOperationError(f"Could not write {target_path}: {e}", path=str(target_path))

        logger.debug(f"Wrote {len(written)} files to {root}")
        return written

    def configured_directories(self, extension_key: str, metadata: Dict[str, Any]) -> List[Path]:
        """
        Directories a package asks for in its metadata

        'upload_folder' requests uploads/tx_<key without underscores>/,
        'create_dirs' is a comma-separated list of site-relative paths.
        """
        requested = []
        if metadata.get("upload_folder"):
            requested.append(f"uploads/tx_{extension_key.replace('_', '')}/")

        create_dirs = metadata.get("create_dirs") or ""
        if isinstance(create_dirs, str):
            create_dirs = create_dirs.split(',')
        requested.extend(d.strip() for d in create_dirs if d and d.strip())

        site_root = self.site_root.resolve()
        paths = []
        for relative in requested:
            absolute = (self.site_root / relative).resolve()
            try:
                absolute.relative_to(site_root)
            except ValueError:
                raise DirectoryOperationError(f"Illegal relative path given: {relative}", path=relative)
            paths.append(absolute)
        return paths

    def ensure_configured_directories_exist(self, extension_key: str, metadata: Dict[str, Any]) -> List[Path]:
        """Create missing configured directories, returns the ones created"""
        created = []
        for directory in self.configured_directories(extension_key, metadata):
            if directory.is_dir():
                continue
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DirectoryOperationError(f"Could not create directory {directory}: {e}", path=str(directory))
            created.append(directory)
        return created
