from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from extmanager.cli.main import cli
from extmanager.config import HOME_ENV_VAR
from extmanager.core.extensions.downloader import MirrorDownloader


def _package_zip(key: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(f"{key}/ext_manifest.json", json.dumps({"title": key.capitalize()}))
    return buf.getvalue()


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv(HOME_ENV_VAR, str(tmp_path))
    monkeypatch.setattr(MirrorDownloader, "fetch", lambda self, key, version: _package_zip(key))

    dump = tmp_path / "extensions.json"
    dump.write_text(json.dumps({"extensions": [
        {"extension_key": "lang", "version": "1.0.0", "state": "stable"},
        {"extension_key": "news", "version": "1.0.0", "state": "stable",
         "dependencies": {"depends": {"lang": "1.0.0"}}},
    ]}), encoding="utf-8")
    return tmp_path


def test_init_creates_settings_and_database(home: Path) -> None:
    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert (home / "settings.json").is_file()
    assert (home / "extmanager.db").is_file()
    assert (home / "extensions").is_dir()


def test_catalog_import_and_show(home: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["catalog", "import", str(home / "extensions.json")])
    assert result.exit_code == 0, result.output
    assert "Imported 2 extension versions" in result.output

    result = runner.invoke(cli, ["catalog", "show", "news"])
    assert result.exit_code == 0, result.output
    assert "1.0.0" in result.output
    assert "lang" in result.output


def test_resolve_install_list_uninstall(home: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["catalog", "import", str(home / "extensions.json")])

    result = runner.invoke(cli, ["resolve", "news"])
    assert result.exit_code == 0, result.output
    assert "lang" in result.output

    result = runner.invoke(cli, ["install", "news"])
    assert result.exit_code == 0, result.output
    assert "installed" in result.output

    result = runner.invoke(cli, ["list"])
    assert "news" in result.output
    assert "lang" in result.output

    result = runner.invoke(cli, ["uninstall", "lang"])
    assert result.exit_code == 1
    assert "required by news" in result.output

    result = runner.invoke(cli, ["uninstall", "news"])
    assert result.exit_code == 0, result.output


def test_resolve_unknown_extension_aborts(home: Path) -> None:
    result = CliRunner().invoke(cli, ["resolve", "missing"])

    assert result.exit_code == 1
    assert "not found in catalog" in result.output


def test_remove_without_directory_aborts(home: Path) -> None:
    result = CliRunner().invoke(cli, ["remove", "news"])

    assert result.exit_code == 1
    assert "No directory for extension news" in result.output


def test_status_reports_missing_mirror(home: Path) -> None:
    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 0, result.output
    assert "Extension status" in result.output
    assert "error" in result.output


def test_install_from_file_and_export(home: Path) -> None:
    runner = CliRunner()
    runner.invoke(cli, ["catalog", "import", str(home / "extensions.json")])
    upload = home / "news_1.1.0.zip"
    with zipfile.ZipFile(upload, "w") as zf:
        zf.writestr("ext_manifest.json", json.dumps({
            "title": "News",
            "version": "1.1.0",
            "constraints": {"depends": {"lang": "1.0.0"}},
        }))
        zf.writestr("README.md", "# News\n")

    result = runner.invoke(cli, ["install", "--file", str(upload)])
    assert result.exit_code == 0, result.output
    assert "installed" in result.output

    result = runner.invoke(cli, ["list"])
    assert "news" in result.output
    assert "lang" in result.output

    result = runner.invoke(cli, ["install", "--file", str(upload)])
    assert result.exit_code == 1
    assert "already present" in result.output

    result = runner.invoke(cli, ["export", "news", "--output", str(home / "exports")])
    assert result.exit_code == 0, result.output
    (exported,) = (home / "exports").glob("news_1.1.0_*.zip")
    with zipfile.ZipFile(exported) as zf:
        assert "README.md" in zf.namelist()


def test_install_needs_key_or_file(home: Path) -> None:
    result = CliRunner().invoke(cli, ["install"])

    assert result.exit_code == 2
    assert "extension key or --file" in result.output
