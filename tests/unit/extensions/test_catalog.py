from __future__ import annotations

import gzip
import json
from pathlib import Path

import pytest

from conftest import catalog_entry
from extmanager.core.extensions.catalog import ExtensionCatalog, read_catalog_dump
from extmanager.core.extensions.exceptions import CatalogError, InvalidVersionError
from extmanager.core.extensions.models import DependencyKind, ExtensionState


def _catalog(tmp_path: Path) -> ExtensionCatalog:
    return ExtensionCatalog(tmp_path / "catalog.db")


def test_current_flag_prefers_highest_stable_version(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([
        catalog_entry("news", "1.0.0", state="stable"),
        catalog_entry("news", "1.1.0", state="beta"),
    ])

    assert catalog.find_current("news").version == "1.0.0"
    assert catalog.find_highest_available("news").version == "1.1.0"

    catalog.upsert_versions([catalog_entry("news", "1.2.0", state="stable")])

    current = [v.version for v in catalog.list_versions("news") if v.current]
    assert current == ["1.2.0"]


def test_current_falls_back_to_highest_when_nothing_is_stable(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([
        catalog_entry("blog", "0.1.0", state="alpha"),
        catalog_entry("blog", "0.2.0", state="beta"),
    ])
    assert catalog.find_current("blog").version == "0.2.0"


def test_upsert_keeps_attributes_but_refreshes_counters(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([catalog_entry("news", "1.0.0", description="first", download_counter=3)])
    catalog.upsert_versions([catalog_entry("news", "1.0.0", description="second", download_counter=9)])

    entry = catalog.find_version("news", "1.0.0")
    assert entry.description == "first"
    assert entry.download_counter == 9
    assert catalog.count_versions() == 1


def test_invalid_entry_aborts_whole_batch(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    with pytest.raises(InvalidVersionError):
        catalog.upsert_versions([
            catalog_entry("news", "1.0.0"),
            catalog_entry("news", "1.2000.0"),
        ])
    assert catalog.count_versions() == 0

    with pytest.raises(InvalidVersionError):
        catalog.upsert_versions([catalog_entry("News", "1.0.0")])


def test_dependencies_survive_storage(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([
        catalog_entry(
            "news",
            "2.0.0",
            depends={"lang": "1.0.0-2.0.0", "cms": "12.0.0"},
            conflicts={"oldnews": ""},
            suggests={"seo": ""},
        )
    ])

    entry = catalog.find_version("news", "2.0.0")
    assert {e.target_key for e in entry.depends} == {"lang", "cms"}
    assert entry.conflicts[0].target_key == "oldnews"
    assert entry.suggests[0].kind == DependencyKind.SUGGESTS
    assert entry.constraints()["depends"]["lang"] == "1.0.0-2.0.0"


def test_unknown_state_is_stored_as_not_available(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([catalog_entry("news", "1.0.0", state="shiny")])
    assert catalog.find_version("news", "1.0.0").state == ExtensionState.NOT_AVAILABLE


def test_range_queries(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([
        catalog_entry("news", version, update_comment=f"changes in {version}")
        for version in ("1.0.0", "1.5.0", "2.0.0", "3.1.0")
    ])

    assert catalog.find_highest_satisfying("news", "1.0.0-2.0.0").version == "2.0.0"
    assert catalog.find_highest_satisfying("news", "").version == "3.1.0"
    assert catalog.find_highest_satisfying("news", "4.0.0") is None
    assert catalog.find_highest_satisfying("lang", "") is None

    newer = catalog.find_versions_in_range("news", "1.0.0", "2.0.0")
    assert [v.version for v in newer] == ["1.5.0", "2.0.0"]
    assert [v.version for v in catalog.find_versions_in_range("news", "1.5.0")] == ["2.0.0", "3.1.0"]

    comments = catalog.collect_update_comments("news", "1.5.0")
    assert list(comments) == ["3.1.0", "2.0.0"]
    assert comments["2.0.0"] == "changes in 2.0.0"


def test_find_version_accepts_unnormalized_strings(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([catalog_entry("news", "1.2")])
    assert catalog.find_version("news", "1.2.0").version == "1.2.0"
    assert catalog.find_version("news", "1.3.0") is None


def test_increment_download_counter(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    catalog.upsert_versions([catalog_entry("news", "1.0.0")])

    catalog.increment_download_counter("news", "1.0.0")
    catalog.increment_download_counter("news", "1.0.0")
    catalog.increment_download_counter("news", "9.9.9")

    entry = catalog.find_version("news", "1.0.0")
    assert entry.download_counter == 2
    assert entry.all_download_counter == 2


def test_mirror_bookkeeping(tmp_path: Path) -> None:
    catalog = _catalog(tmp_path)
    assert catalog.get_mirror("main") is None

    catalog.upsert_versions([catalog_entry("news", "1.0.0"), catalog_entry("lang", "1.0.0")])
    record = catalog.record_mirror_update("main", "https://mirror.example.org")

    stored = catalog.get_mirror("main")
    assert stored.extension_count == 2
    assert stored.last_update == record.last_update
    assert catalog.list_extension_keys() == ["lang", "news"]


def test_read_catalog_dump_plain_and_gzip(tmp_path: Path) -> None:
    entries = [catalog_entry("news", "1.0.0"), catalog_entry("lang", "2.0.0")]

    plain = tmp_path / "extensions.json"
    plain.write_text(json.dumps(entries), encoding="utf-8")
    assert read_catalog_dump(plain) == entries

    packed = tmp_path / "extensions.json.gz"
    with gzip.open(packed, "wt", encoding="utf-8") as f:
        json.dump({"extensions": entries}, f)
    assert read_catalog_dump(packed) == entries


def test_read_catalog_dump_rejects_bad_shape(tmp_path: Path) -> None:
    dump = tmp_path / "extensions.json"
    dump.write_text(json.dumps({"items": []}), encoding="utf-8")
    with pytest.raises(CatalogError):
        read_catalog_dump(dump)

    dump.write_text("{not json", encoding="utf-8")
    with pytest.raises(CatalogError):
        read_catalog_dump(dump)
