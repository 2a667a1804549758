from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterator, Optional, Protocol
from urllib.parse import unquote, urlsplit
from urllib.request import url2pathname

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from upkeep.core.exception import FetchError
from upkeep.core.runtime.settings import Settings

log = logging.getLogger("upkeep.core.sources")


class FileSource(Protocol):
    """A source of remote file bytes, addressed by absolute URI."""

    def stream(self, uri: str, *, chunk_size: int) -> Iterator[bytes]:
        ...

    def close(self) -> None:
        ...


def uri_to_path(uri: str) -> Path:
    parts = urlsplit(uri)
    if parts.scheme == "file":
        raw = parts.path
        if parts.netloc and parts.netloc != "localhost":
            raw = f"//{parts.netloc}{raw}"
        return Path(url2pathname(raw))
    return Path(unquote(uri))


class FilesystemSource:
    """`file://` URIs and plain local paths (mirrors, mounted shares, tests)."""

    def stream(self, uri: str, *, chunk_size: int) -> Iterator[bytes]:
        p = uri_to_path(uri)
        try:
            f = open(p, "rb")
        except OSError as e:
            raise FetchError(f"cannot read {uri}: {e}") from e
        with f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                yield chunk

    def close(self) -> None:
        return None


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class HttpSource:
    """HTTP(S) source backed by httpx; opening a response is retried with tenacity."""

    def __init__(self, *, timeout: float = 30.0, retries: int = 2, headers: dict | None = None, verify_ssl: bool = True):
        self._timeout = float(timeout)
        self._retries = int(retries)
        self._headers = dict(headers or {})
        self._verify = verify_ssl
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    def client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(
                    headers=self._headers,
                    timeout=self._timeout,
                    verify=self._verify,
                    follow_redirects=True,
                )
            return self._client

    def _open(self, uri: str) -> httpx.Response:
        client = self.client()
        request = client.build_request("GET", uri)
        response = client.send(request, stream=True)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError:
            response.close()
            raise
        return response

    def stream(self, uri: str, *, chunk_size: int) -> Iterator[bytes]:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, 1 + self._retries)),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        try:
            response = retrying(self._open, uri)
        except httpx.HTTPError as e:
            raise FetchError(f"GET {uri} failed: {e}") from e
        try:
            for chunk in response.iter_bytes(chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise FetchError(f"GET {uri} interrupted: {e}") from e
        finally:
            response.close()

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None


class DefaultSource:
    """Dispatches on the URI scheme: http/https to httpx, everything else to disk."""

    def __init__(self, settings: Settings | None = None, *, http: HttpSource | None = None):
        settings = settings or Settings()
        self._fs = FilesystemSource()
        self._http = http or HttpSource(timeout=settings.http_timeout, retries=settings.http_retries)

    def stream(self, uri: str, *, chunk_size: int) -> Iterator[bytes]:
        scheme = urlsplit(uri).scheme.lower()
        if scheme in {"http", "https"}:
            return self._http.stream(uri, chunk_size=chunk_size)
        if scheme in {"", "file"} or len(scheme) == 1:
            return self._fs.stream(uri, chunk_size=chunk_size)
        raise FetchError(f"unsupported URI scheme {scheme!r}: {uri}")

    def close(self) -> None:
        self._http.close()
