"""Mirror downloader for extension packages"""

import hashlib
import logging
import time
from typing import Callable, List, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from extmanager.core.extensions.exceptions import DownloadFailedError

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 50 * 1024 * 1024
DEFAULT_TIMEOUT = 300
CHUNK_SIZE = 64 * 1024
USER_AGENT = "extmanager/0.1"

ProgressCallback = Callable[[int, int], None]


def calculate_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def archive_path(extension_key: str, version: str) -> str:
    """
    Mirror-relative path of a package archive

    Mirrors shard archives by the first two letters of the key, e.g.
    news 1.2.0 -> n/e/news_1.2.0.zip
    """
    return f"{extension_key[0]}/{extension_key[1:2] or '_'}/{extension_key}_{version}.zip"


def _megabytes(size: int) -> str:
    return f"{size / (1024 * 1024):.2f}MB"


class MirrorDownloader:
    """Fetches package archives from a repository mirror over HTTP(S)

    Transient mirror failures (429 and 5xx) are retried by the session adapter;
    everything else surfaces as DownloadFailedError tagged with the extension key.
    """

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        timeout: int = DEFAULT_TIMEOUT,
        max_size: int = DEFAULT_MAX_SIZE,
        progress_callback: Optional[ProgressCallback] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_size = max_size
        self.progress_callback = progress_callback
        self.session = self._build_session(max_retries)

    @staticmethod
    def _build_session(max_retries: int) -> requests.Session:
        session = requests.Session()
        session.headers["User-Agent"] = USER_AGENT
        adapter = HTTPAdapter(max_retries=Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        ))
        for scheme in ("http://", "https://"):
            session.mount(scheme, adapter)
        return session

    def build_url(self, extension_key: str, version: str) -> str:
        return f"{self.base_url}/{archive_path(extension_key, version)}"

    def _check_mirror_url(self, url: str) -> None:
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            raise DownloadFailedError(f"Unsupported mirror URL scheme '{parsed.scheme}', expected http or https")
        if not parsed.netloc:
            raise DownloadFailedError(f"Mirror URL has no host: {url}")

    def _read_body(self, response) -> bytes:
        announced = int(response.headers.get('Content-Length') or 0)
        if announced > self.max_size:
            raise DownloadFailedError(
                f"Archive too large: {_megabytes(announced)} exceeds {_megabytes(self.max_size)}"
            )

        received: List[bytes] = []
        size = 0
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if not chunk:
                continue
            size += len(chunk)
            # Content-Length is optional, so the limit is checked while streaming too
            if size > self.max_size:
                raise DownloadFailedError(
                    f"Archive too large: more than {_megabytes(self.max_size)} received"
                )
            received.append(chunk)
            if self.progress_callback:
                self.progress_callback(size, announced)
        return b"".join(received)

    def fetch(self, extension_key: str, version: str) -> bytes:
        """
        Download the archive of one extension version

        Raises:
            DownloadFailedError: On HTTP errors, timeouts or oversized archives
        """
        url = self.build_url(extension_key, version)
        label = f"{extension_key} {version}"
        started = time.monotonic()

        try:
            self._check_mirror_url(url)
            logger.info(f"Fetching {label} from {url}")
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                data = self._read_body(response)
        except DownloadFailedError as e:
            e.extension_key = extension_key
            raise
        except requests.Timeout as e:
            raise DownloadFailedError(
                f"Download of {label} timed out after {self.timeout}s: {e}",
                extension_key=extension_key,
            ) from e
        except requests.RequestException as e:
            raise DownloadFailedError(
                f"Download of {label} failed: {e}",
                extension_key=extension_key,
            ) from e

        logger.info(f"Fetched {label}: {len(data)} bytes in {time.monotonic() - started:.2f}s")
        return data

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "MirrorDownloader":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
