import logging
import socket
import threading
import time
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import urllib3
from urllib3 import exceptions as urllib3_exc
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.response import BaseHTTPResponse
from urllib3.util.retry import Retry

from . import mime
from .errors import FetchError, FetchErrorKind
from .types import FetchRequest, FetchResult


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "pme-exporter/1.0"
CHUNK_SIZE = 64 * 1024
MAX_REDIRECTS = 10

_local = threading.local()


# urllib3 times out each socket read, not the header phase as a whole
class _HeaderWatchdog:
    def __init__(self, remaining: float) -> None:
        self.fired = False
        self._conn: Optional[HTTPConnection] = None
        self._lock = threading.Lock()
        self._timer = threading.Timer(remaining, self._fire)
        self._timer.daemon = True

    def watch(self, conn: HTTPConnection) -> None:
        with self._lock:
            self._conn = conn
            if self.fired:
                self._shutdown(conn)

    def _fire(self) -> None:
        with self._lock:
            self.fired = True
            if self._conn is not None:
                self._shutdown(self._conn)

    @staticmethod
    def _shutdown(conn: HTTPConnection) -> None:
        sock = getattr(conn, "sock", None)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # already closed by the peer or by urllib3
            pass

    def __enter__(self) -> "_HeaderWatchdog":
        _local.watchdog = self
        self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._timer.cancel()
        _local.watchdog = None


def _watch(conn: HTTPConnection) -> None:
    watchdog = getattr(_local, "watchdog", None)
    if watchdog is not None:
        watchdog.watch(conn)


class _WatchedHTTPConnection(HTTPConnection):
    def connect(self) -> None:
        super().connect()
        _watch(self)

    def request(self, *args, **kwargs) -> None:
        _watch(self)
        super().request(*args, **kwargs)


class _WatchedHTTPSConnection(HTTPSConnection):
    def connect(self) -> None:
        super().connect()
        _watch(self)

    def request(self, *args, **kwargs) -> None:
        _watch(self)
        super().request(*args, **kwargs)


class _WatchedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _WatchedHTTPConnection


class _WatchedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _WatchedHTTPSConnection


class ContentFetcher:
    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, max_connections: int = 10):
        self.user_agent = user_agent
        self.http = urllib3.PoolManager(
            maxsize=max_connections,
            headers={"User-Agent": user_agent},
            # no retries; redirects are followed in _open against the call's deadline
            retries=Retry(total=None, connect=0, read=0, status=0, other=0, redirect=False),
        )
        self.http.pool_classes_by_scheme = {
            "http": _WatchedHTTPConnectionPool,
            "https": _WatchedHTTPSConnectionPool,
        }

    def fetch(self, url: str, accepted_mime_type: str, timeout_seconds: int) -> FetchResult:
        request = FetchRequest(url, accepted_mime_type, timeout_seconds)
        accepted = mime.normalize_token(request.accepted_mime_type)
        deadline = time.monotonic() + request.timeout_seconds
        try:
            response = self._open(request, deadline)
            try:
                self._check_status(request, response)
                token = self._check_content_type(request, response, accepted)
                body = self._read_body(request, response, deadline)
            except BaseException:
                # unread or broken responses must not go back to the pool
                response.close()
                raise
            response.release_conn()
        except FetchError as e:
            logger.debug("Fetch of %s failed: %s: %s", url, e.kind.name, e.message)
            raise
        logger.debug("Fetched %s: %d bytes of %s", url, len(body), token)
        return FetchResult(body=body, mime_type=token)

    def _timeout_error(self, request: FetchRequest) -> FetchError:
        return FetchError(
            FetchErrorKind.REQUEST_TIMEOUT,
            f"request to {request.url} did not complete within {request.timeout_seconds}s",
            url=request.url,
        )

    def _open(self, request: FetchRequest, deadline: float) -> BaseHTTPResponse:
        url = request.url
        with _HeaderWatchdog(max(0.0, deadline - time.monotonic())):
            for _ in range(MAX_REDIRECTS + 1):
                response = self._send(request, url, deadline)
                location = response.get_redirect_location()
                if not location:
                    return response
                response.close()
                url = urljoin(url, location)
                if urlparse(url).scheme not in ("http", "https"):
                    raise FetchError(
                        FetchErrorKind.REQUEST_FAILED,
                        f"{request.url} redirected to unsupported URL {url!r}",
                        url=request.url,
                    )
        raise FetchError(
            FetchErrorKind.REQUEST_FAILED,
            f"{request.url} redirected more than {MAX_REDIRECTS} times",
            url=request.url,
        )

    def _send(self, request: FetchRequest, url: str, deadline: float) -> BaseHTTPResponse:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise self._timeout_error(request)
        timeout = urllib3.Timeout(total=remaining, connect=remaining, read=remaining)
        try:
            return self.http.request("GET", url, timeout=timeout, preload_content=False, redirect=False)
        except urllib3_exc.MaxRetryError as e:
            raise self._classify_transport_error(request, e.reason or e, deadline) from e
        except urllib3_exc.HTTPError as e:
            raise self._classify_transport_error(request, e, deadline) from e

    def _classify_transport_error(self, request: FetchRequest, exc: Exception, deadline: float) -> FetchError:
        # the watchdog's shutdown surfaces as a dropped connection
        if time.monotonic() >= deadline:
            return self._timeout_error(request)
        # NewConnectionError subclasses ConnectTimeoutError; a refusal is not a timeout
        if isinstance(exc, urllib3_exc.NewConnectionError):
            return FetchError(
                FetchErrorKind.REQUEST_FAILED,
                f"could not connect to {request.url}: {exc}",
                url=request.url,
            )
        if isinstance(exc, urllib3_exc.TimeoutError):
            return self._timeout_error(request)
        return FetchError(
            FetchErrorKind.REQUEST_FAILED,
            f"request to {request.url} failed: {exc}",
            url=request.url,
        )

    def _check_status(self, request: FetchRequest, response: BaseHTTPResponse) -> None:
        status = response.status
        if status == 200:
            return
        if status == 404:
            kind = FetchErrorKind.RESPONSE_STATUS_404
        elif status == 500:
            kind = FetchErrorKind.RESPONSE_STATUS_500
        else:
            kind = FetchErrorKind.RESPONSE_STATUS_NOT_200
        raise FetchError(kind, f"{request.url} responded with status {status}", url=request.url, status=status)

    def _check_content_type(self, request: FetchRequest, response: BaseHTTPResponse, accepted: str) -> str:
        header = response.headers.get("Content-Type")
        try:
            _, sub, _ = mime.parse_content_type(header)
        except ValueError as e:
            raise FetchError(
                FetchErrorKind.CONTENT_TYPE_PARSE,
                f"could not parse Content-Type {header!r} from {request.url}: {e}",
                url=request.url,
                status=response.status,
            ) from e
        if accepted not in mime.media_type_tokens(sub):
            raise FetchError(
                FetchErrorKind.INVALID_CONTENT_TYPE_FOUND,
                f"{request.url} returned Content-Type {header!r}, expected {accepted!r}",
                url=request.url,
                status=response.status,
            )
        return accepted

    def _read_body(self, request: FetchRequest, response: BaseHTTPResponse, deadline: float) -> bytes:
        chunks: List[bytes] = []
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise self._timeout_error(request)
                self._narrow_socket_timeout(response, remaining)
                # read1 returns whatever arrived; read(amt) would block until amt bytes
                chunk = response.read1(CHUNK_SIZE)
                if not chunk:
                    break
                chunks.append(chunk)
        except urllib3_exc.TimeoutError as e:
            raise self._timeout_error(request) from e
        except (urllib3_exc.HTTPError, OSError) as e:
            if time.monotonic() >= deadline:
                raise self._timeout_error(request) from e
            raise FetchError(
                FetchErrorKind.UNABLE_TO_READ_BODY,
                f"could not read body from {request.url}: {e}",
                url=request.url,
                status=response.status,
            ) from e
        if response.length_remaining:
            raise FetchError(
                FetchErrorKind.UNABLE_TO_READ_BODY,
                f"body from {request.url} ended {response.length_remaining} bytes short of Content-Length",
                url=request.url,
                status=response.status,
            )
        return b"".join(chunks)

    @staticmethod
    def _narrow_socket_timeout(response: BaseHTTPResponse, remaining: float) -> None:
        conn = getattr(response, "connection", None)
        sock = getattr(conn, "sock", None)
        if sock is not None:
            sock.settimeout(remaining)

    def close(self) -> None:
        self.http.clear()

    def __enter__(self) -> "ContentFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def fetch_content(url: str, accepted_mime_type: str, timeout_seconds: int) -> FetchResult:
    with ContentFetcher(max_connections=1) as fetcher:
        return fetcher.fetch(url, accepted_mime_type, timeout_seconds)
