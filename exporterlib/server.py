import base64
import binascii
import hmac
import json
import logging
import time
from socketserver import ThreadingMixIn
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from bs4 import BeautifulSoup

from . import mime
from .config import BasicAuthCredentials, ExporterConfig
from .errors import FetchError, FetchErrorKind
from .metrics import Metrics
from .prometheus_exporter import PrometheusExporter
from .types import FetcherProtocol


logger = logging.getLogger(__name__)

WSGIApp = Callable[[dict, Callable], Iterable[bytes]]
Headers = Sequence[Tuple[str, str]]

ERROR_STATUS: Dict[FetchErrorKind, str] = {
    FetchErrorKind.REQUEST_TIMEOUT: "504 Gateway Timeout",
    FetchErrorKind.RESPONSE_STATUS_404: "502 Bad Gateway",
    FetchErrorKind.RESPONSE_STATUS_500: "502 Bad Gateway",
    FetchErrorKind.RESPONSE_STATUS_NOT_200: "502 Bad Gateway",
    FetchErrorKind.CONTENT_TYPE_PARSE: "502 Bad Gateway",
    FetchErrorKind.INVALID_CONTENT_TYPE_FOUND: "502 Bad Gateway",
    FetchErrorKind.UNABLE_TO_READ_BODY: "502 Bad Gateway",
    FetchErrorKind.REQUEST_FAILED: "502 Bad Gateway",
}


def _respond(start_response, status: str, body: bytes, content_type: str, extra_headers: Headers = ()) -> List[bytes]:
    headers = [("Content-Type", content_type), ("Content-Length", str(len(body)))]
    headers.extend(extra_headers)
    start_response(status, headers)
    return [body]


def _json_error(start_response, status: str, error: str, message: str, extra_headers: Headers = ()) -> List[bytes]:
    body = json.dumps({"error": error, "message": message}).encode("utf-8")
    return _respond(start_response, status, body, "application/json", extra_headers)


class Router:
    def __init__(self) -> None:
        self._routes: Dict[str, WSGIApp] = {}

    def add(self, path: str, app: WSGIApp) -> None:
        if path in self._routes:
            raise ValueError(f"route already registered: {path}")
        self._routes[path] = app

    @property
    def paths(self) -> List[str]:
        return sorted(self._routes)

    def __call__(self, environ, start_response):
        path = environ.get("PATH_INFO") or "/"
        app = self._routes.get(path)
        if app is None:
            return _json_error(start_response, "404 Not Found", "not_found", f"no route for {path}")
        return app(environ, start_response)


def method_validator(app: WSGIApp, allowed: Sequence[str] = ("GET",)) -> WSGIApp:
    allowed = tuple(m.upper() for m in allowed)

    def validate(environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET").upper()
        if method not in allowed:
            return _json_error(
                start_response,
                "405 Method Not Allowed",
                "method_not_allowed",
                f"method {method} is not allowed",
                [("Allow", ", ".join(allowed))],
            )
        return app(environ, start_response)

    return validate


def _authorized(header: str, credentials: BasicAuthCredentials) -> bool:
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return False
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    username, sep, password = decoded.partition(":")
    if not sep:
        return False
    # compare both halves so timing does not reveal which one was wrong
    user_ok = hmac.compare_digest(username.encode("utf-8"), credentials.username.encode("utf-8"))
    password_ok = hmac.compare_digest(password.encode("utf-8"), credentials.password.encode("utf-8"))
    return user_ok and password_ok


def basic_auth(app: WSGIApp, credentials: Optional[BasicAuthCredentials], realm: str = "exporter") -> WSGIApp:
    """Require HTTP basic auth. Without configured credentials nobody gets in."""
    challenge = [("WWW-Authenticate", f'Basic realm="{realm}", charset="UTF-8"')]

    def authenticate(environ, start_response):
        header = environ.get("HTTP_AUTHORIZATION", "")
        if credentials is None or not _authorized(header, credentials):
            return _json_error(
                start_response, "401 Unauthorized", "unauthorized", "valid basic auth credentials required", challenge
            )
        return app(environ, start_response)

    return authenticate


class ContentWriter:
    """Fetches the configured upstream per request and writes the body back."""

    mime_type: str = ""
    content_type = "application/octet-stream"

    def __init__(
        self,
        fetcher: FetcherProtocol,
        config: ExporterConfig,
        metrics: Optional[Metrics] = None,
        exporter: Optional[PrometheusExporter] = None,
        mime_type: Optional[str] = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config
        self.metrics = metrics
        self.exporter = exporter
        if mime_type is not None:
            self.mime_type = mime.normalize_token(mime_type)
        if not self.mime_type:
            raise ValueError(f"{type(self).__name__} needs a mime_type to fetch")

    def render(self, body: bytes) -> bytes:
        return body

    def _record(self, error_kind: Optional[FetchErrorKind], bytes_read: int, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_fetch(error_kind, bytes_read, (time.perf_counter() - started) * 1000.0)
        if self.exporter is not None:
            self.exporter.record_outcome(error_kind is None)

    def __call__(self, environ, start_response):
        started = time.perf_counter()
        try:
            result = self.fetcher.fetch(self.config.url, self.mime_type, self.config.timeout)
        except FetchError as e:
            self._record(e.kind, 0, started)
            logger.warning("Upstream fetch of %s failed: %s: %s", self.config.url, e.kind.name, e.message)
            return _json_error(start_response, ERROR_STATUS[e.kind], e.kind.value, e.message)
        self._record(None, len(result.body), started)
        try:
            body = self.render(result.body)
        except ValueError as e:
            logger.warning("Upstream %s payload from %s is unusable: %s", result.mime_type, self.config.url, e)
            return _json_error(start_response, "502 Bad Gateway", "invalid_payload", str(e))
        return _respond(start_response, "200 OK", body, self.content_type)


class JsonWriter(ContentWriter):
    mime_type = "json"
    content_type = "application/json"

    def render(self, body: bytes) -> bytes:
        # UnicodeDecodeError and JSONDecodeError are both ValueErrors
        json.loads(body.decode("utf-8"))
        return body


class HtmlWriter(ContentWriter):
    mime_type = "html"
    content_type = "text/html; charset=utf-8"

    def render(self, body: bytes) -> bytes:
        soup = BeautifulSoup(body, "html.parser")
        if soup.find() is None:
            raise ValueError("no HTML elements in payload")
        return body


def writer_for(mime_type: str) -> Type[ContentWriter]:
    token = mime.normalize_token(mime_type)
    return {"json": JsonWriter, "html": HtmlWriter}.get(token, ContentWriter)


def build_app(
    config: ExporterConfig,
    fetcher: FetcherProtocol,
    metrics: Metrics,
    exporter: PrometheusExporter,
) -> Router:
    router = Router()
    json_writer = JsonWriter(fetcher, config, metrics, exporter)
    html_writer = HtmlWriter(fetcher, config, metrics, exporter)
    router.add("/jsonNoBasicAuth", method_validator(json_writer))
    router.add("/jsonBasicAuth", method_validator(basic_auth(json_writer, config.basic_auth)))
    router.add("/htmlNoBasicAuth", method_validator(html_writer))
    router.add("/htmlBasicAuth", method_validator(basic_auth(html_writer, config.basic_auth)))

    content_writer = writer_for(config.mime_type)(fetcher, config, metrics, exporter, mime_type=config.mime_type)
    router.add("/content", method_validator(content_writer))
    router.add("/metrics", method_validator(exporter.wsgi_app()))
    return router


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _LoggingHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


def make_exporter_server(config: ExporterConfig, app: WSGIApp) -> WSGIServer:
    return make_server(
        config.address, config.port, app, server_class=ThreadingWSGIServer, handler_class=_LoggingHandler
    )
