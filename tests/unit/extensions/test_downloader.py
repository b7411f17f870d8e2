from __future__ import annotations

from typing import Dict, List, Optional

import pytest
import requests

from extmanager.core.extensions.downloader import MirrorDownloader, archive_path, calculate_sha256
from extmanager.core.extensions.exceptions import DownloadFailedError


class _Response:
    def __init__(self, chunks: List[bytes], status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> None:
        self.chunks = chunks
        self.status_code = status_code
        self.headers = headers or {}
        self.closed = False

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc_info) -> None:
        self.closed = True

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error")

    def iter_content(self, chunk_size: int = 1):
        yield from self.chunks


def test_archive_path_shards_by_key() -> None:
    assert archive_path("news", "1.2.0") == "n/e/news_1.2.0.zip"
    assert archive_path("x", "1.0.0") == "x/_/x_1.0.0.zip"


def test_build_url_strips_trailing_slash() -> None:
    downloader = MirrorDownloader("https://mirror.example.org/ter/")
    assert downloader.build_url("news", "1.2.0") == "https://mirror.example.org/ter/n/e/news_1.2.0.zip"


def test_fetch_joins_chunks_and_reports_progress() -> None:
    progress = []
    downloader = MirrorDownloader(
        "https://mirror.example.org",
        progress_callback=lambda done, total: progress.append((done, total)),
    )
    requested = []

    def fake_get(url, **kwargs):
        requested.append(url)
        return _Response([b"PK", b"", b"\x03\x04"], headers={"Content-Length": "4"})

    downloader.session.get = fake_get

    assert downloader.fetch("news", "1.2.0") == b"PK\x03\x04"
    assert requested == ["https://mirror.example.org/n/e/news_1.2.0.zip"]
    assert progress == [(2, 4), (4, 4)]


def test_fetch_enforces_size_limit_without_content_length() -> None:
    downloader = MirrorDownloader("https://mirror.example.org", max_size=3)
    response = _Response([b"ab", b"cd"])
    downloader.session.get = lambda url, **kwargs: response

    with pytest.raises(DownloadFailedError) as exc_info:
        downloader.fetch("news", "1.2.0")
    assert exc_info.value.extension_key == "news"
    assert response.closed


def test_fetch_rejects_announced_oversized_archive() -> None:
    downloader = MirrorDownloader("https://mirror.example.org", max_size=3)
    downloader.session.get = lambda url, **kwargs: _Response([b"ab"], headers={"Content-Length": "10"})

    with pytest.raises(DownloadFailedError, match="too large"):
        downloader.fetch("news", "1.2.0")


def test_http_errors_and_timeouts_become_download_failures() -> None:
    downloader = MirrorDownloader("https://mirror.example.org", timeout=5)

    downloader.session.get = lambda url, **kwargs: _Response([], status_code=404)
    with pytest.raises(DownloadFailedError, match="404"):
        downloader.fetch("news", "1.2.0")

    def timeout(url, **kwargs):
        raise requests.Timeout("read timed out")

    downloader.session.get = timeout
    with pytest.raises(DownloadFailedError, match="timed out after 5s") as exc_info:
        downloader.fetch("news", "1.2.0")
    assert exc_info.value.extension_key == "news"


def test_invalid_mirror_url_is_rejected() -> None:
    downloader = MirrorDownloader("ftp://mirror.example.org")
    with pytest.raises(DownloadFailedError, match="scheme"):
        downloader.fetch("news", "1.2.0")


def test_calculate_sha256() -> None:
    assert calculate_sha256(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_downloader_closes_its_session(monkeypatch: pytest.MonkeyPatch) -> None:
    closed = []

    with MirrorDownloader("https://mirror.example.org") as downloader:
        monkeypatch.setattr(downloader.session, "close", lambda: closed.append(True))
        assert closed == []

    assert closed == [True]
