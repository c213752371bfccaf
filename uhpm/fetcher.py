"""Fetcher: retrieves package archives and verifies their checksums.

HTTP(S) downloads go through a ``requests`` session and are retried on
transient failures. Local paths and ``file://`` URLs are read directly.
"""

import hashlib
import threading
import time
from collections.abc import Callable
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests
import structlog

from uhpm.errors import IntegrityError, MetadataError, TransportError
from uhpm.models import Source

logger = structlog.get_logger()

DEFAULT_ALGORITHM = "sha256"
CHUNK_SIZE = 64 * 1024
TRANSIENT_STATUS = {429, 500, 502, 503, 504}

# progress(name, bytes_done, bytes_total or None)
ProgressCallback = Callable[[str, int, int | None], None]


def split_checksum(checksum: str) -> tuple[str, str]:
    """Split an ``algo:hex`` checksum; an untagged digest is sha256.

    Raises:
        MetadataError: If the algorithm is not supported by hashlib
    """
    if ":" in checksum:
        algorithm, _, value = checksum.partition(":")
        algorithm = algorithm.strip().lower()
    else:
        algorithm, value = DEFAULT_ALGORITHM, checksum
    if algorithm not in hashlib.algorithms_guaranteed:
        raise MetadataError(f"Unsupported checksum algorithm: {algorithm}")
    return algorithm, value.strip().lower()


def digest(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Return the algorithm-tagged digest of ``data``."""
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def verify_checksum(name: str, data: bytes, expected: str) -> str:
    """Compare the digest of ``data`` with ``expected``.

    Returns:
        The actual tagged digest

    Raises:
        IntegrityError: On mismatch
    """
    algorithm, value = split_checksum(expected)
    actual = digest(data, algorithm)
    if actual != f"{algorithm}:{value}":
        logger.error("Checksum mismatch", package=name, expected=expected, actual=actual)
        raise IntegrityError(name, f"{algorithm}:{value}", actual)
    logger.debug("Checksum verified", package=name, checksum=actual)
    return actual


class _Progress:
    """Forwards progress events; a failing callback is dropped."""

    def __init__(self, name: str, callback: ProgressCallback | None) -> None:
        self.name = name
        self.callback = callback

    def __call__(self, done: int, total: int | None) -> None:
        if self.callback is None:
            return
        try:
            self.callback(self.name, done, total)
        except Exception as e:
            logger.warning("Progress callback failed, dropping it", package=self.name, error=str(e))
            self.callback = None


class Fetcher:
    """Retrieves package bytes from URLs and local files.

    Args:
        session: requests session used for HTTP(S) downloads
        retries: Extra attempts after a transient HTTP failure
        backoff: Base delay in seconds, doubled on every attempt
        timeout: Per-request timeout in seconds
        sleep: Delay function, replaceable in tests
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        retries: int = 3,
        backoff: float = 0.5,
        timeout: float = 60,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session if session is not None else requests.Session()
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self.sleep = sleep

    def fetch(
        self,
        source: Source | str,
        name: str = "",
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Fetch the bytes behind a source descriptor.

        Raises:
            TransportError: If the bytes cannot be retrieved
        """
        location = source.location if isinstance(source, Source) else str(source)
        if not location:
            raise TransportError(f"No source location for {name or 'package'}")
        name = name or location
        report = _Progress(name, progress)

        parsed = urlparse(location)
        if parsed.scheme in ("http", "https"):
            return self._fetch_http(location, name, report, cancel)
        if parsed.scheme == "file":
            return self._read_local(Path(unquote(parsed.path)), name, report)
        if parsed.scheme and len(parsed.scheme) > 1:
            raise TransportError(f"Unsupported URL scheme for {name}: {parsed.scheme}")
        return self._read_local(Path(location).expanduser(), name, report)

    def _read_local(self, path: Path, name: str, report: _Progress) -> bytes:
        logger.debug("Reading local archive", package=name, path=str(path))
        try:
            data = path.read_bytes()
        except OSError as e:
            raise TransportError(f"Cannot read {path}: {e}") from e
        report(len(data), len(data))
        return data

    def _fetch_http(self, url: str, name: str, report: _Progress, cancel: threading.Event | None) -> bytes:
        attempt = 0
        while True:
            try:
                return self._download(url, name, report, cancel)
            except TransportError as e:
                if not e.transient or attempt >= self.retries:
                    logger.error("Download failed", package=name, url=url, attempts=attempt + 1, error=str(e))
                    raise
                delay = self.backoff * (2**attempt)
                attempt += 1
                logger.warning("Transient download failure, retrying", package=name, attempt=attempt, delay=delay)
                self.sleep(delay)

    def _download(self, url: str, name: str, report: _Progress, cancel: threading.Event | None) -> bytes:
        logger.info("Downloading package", package=name, url=url)
        try:
            response = self.session.get(url, stream=True, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransportError(f"Cannot reach {url}: {e}", transient=True) from e
        except requests.RequestException as e:
            raise TransportError(f"Request for {url} failed: {e}") from e

        try:
            if response.status_code in TRANSIENT_STATUS:
                raise TransportError(f"{url} answered HTTP {response.status_code}", transient=True)
            if response.status_code >= 400:
                raise TransportError(f"{url} answered HTTP {response.status_code}")

            total = int(response.headers.get("content-length", 0) or 0) or None
            buffer = bytearray()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if cancel is not None and cancel.is_set():
                    raise TransportError(f"Download of {name} cancelled")
                if chunk:
                    buffer.extend(chunk)
                    report(len(buffer), total)
        except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as e:
            raise TransportError(f"Download of {url} interrupted: {e}", transient=True) from e
        except requests.RequestException as e:
            raise TransportError(f"Download of {url} failed: {e}") from e
        finally:
            response.close()

        if total is not None and len(buffer) != total:
            raise TransportError(f"Download of {url} truncated: {len(buffer)} of {total} bytes", transient=True)
        logger.debug("Download complete", package=name, size=len(buffer))
        return bytes(buffer)
