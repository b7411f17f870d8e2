from __future__ import annotations

from pathlib import Path

import pytest

from extmanager.core.extensions.directories import PackageDirectoryManager
from extmanager.core.extensions.exceptions import DirectoryOperationError


def _manager(tmp_path: Path) -> PackageDirectoryManager:
    extensions_dir = tmp_path / "extensions"
    extensions_dir.mkdir()
    return PackageDirectoryManager(extensions_dir, site_root=tmp_path / "site")


def test_ensure_clean_empties_existing_directory(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    package_dir = manager.get_extension_dir("news")
    (package_dir / "Classes").mkdir(parents=True)
    (package_dir / "Classes" / "Old.py").write_text("old", encoding="utf-8")

    manager.ensure_clean(package_dir)

    assert package_dir.is_dir()
    assert list(package_dir.iterdir()) == []


def test_ensure_clean_unlinks_symlink_without_touching_target(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    shared = tmp_path / "shared" / "news"
    shared.mkdir(parents=True)
    (shared / "keep.txt").write_text("shared", encoding="utf-8")

    link = manager.get_extension_dir("news")
    link.symlink_to(shared, target_is_directory=True)

    manager.ensure_clean(link)

    assert (shared / "keep.txt").read_text(encoding="utf-8") == "shared"
    assert not link.is_symlink()
    assert link.is_dir()
    assert list(link.iterdir()) == []


def test_remove_directory_symlink_only_removes_link(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    shared = tmp_path / "shared"
    shared.mkdir()
    link = manager.get_extension_dir("news")
    link.symlink_to(shared, target_is_directory=True)

    manager.remove_directory(link)

    assert not link.exists()
    assert shared.is_dir()


def test_get_extension_dir_rejects_bad_keys(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    for key in ("", "..", "a/b"):
        with pytest.raises(DirectoryOperationError):
            manager.get_extension_dir(key)


def test_get_extension_dir_requires_install_root(tmp_path: Path) -> None:
    manager = PackageDirectoryManager(tmp_path / "missing")
    with pytest.raises(DirectoryOperationError):
        manager.get_extension_dir("news")


def test_is_valid_extension_path(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    assert manager.is_valid_extension_path(manager.extensions_dir / "news")
    assert not manager.is_valid_extension_path(manager.extensions_dir)
    assert not manager.is_valid_extension_path(tmp_path / "elsewhere")


def test_write_files_creates_nested_paths(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    package_dir = manager.make_and_clear_extension_dir("news")

    written = manager.write_files(package_dir, {
        "Resources/Public/icon.svg": b"<svg/>",
        "Resources/Private/Language/": b"",
        "README.md": b"# News",
    })

    assert len(written) == 2
    assert (package_dir / "Resources" / "Public" / "icon.svg").read_bytes() == b"<svg/>"
    assert (package_dir / "Resources" / "Private" / "Language").is_dir()


@pytest.mark.parametrize("bad_path", ["../escape.txt", "/etc/passwd", "a/../../escape.txt"])
def test_write_files_refuses_paths_outside_package(tmp_path: Path, bad_path: str) -> None:
    manager = _manager(tmp_path)
    package_dir = manager.make_and_clear_extension_dir("news")

    with pytest.raises(DirectoryOperationError):
        manager.write_files(package_dir, {bad_path: b"x"})

    assert not (tmp_path / "escape.txt").exists()


def test_configured_directories(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    created = manager.ensure_configured_directories_exist(
        "my_news",
        {"upload_folder": True, "create_dirs": "fileadmin/news, typo/cache"},
    )

    site = (tmp_path / "site").resolve()
    assert created == [
        site / "uploads" / "tx_mynews",
        site / "fileadmin" / "news",
        site / "typo" / "cache",
    ]
    assert manager.ensure_configured_directories_exist("my_news", {"upload_folder": True}) == []


def test_configured_directories_must_stay_in_site(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    with pytest.raises(DirectoryOperationError):
        manager.configured_directories("news", {"create_dirs": "../outside"})
