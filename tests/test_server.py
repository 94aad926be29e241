import base64
import json
from wsgiref.util import setup_testing_defaults

import pytest

from exporterlib.config import BasicAuthCredentials, ExporterConfig
from exporterlib.errors import FetchError, FetchErrorKind
from exporterlib.metrics import Metrics
from exporterlib.prometheus_exporter import PrometheusExporter
from exporterlib.server import ERROR_STATUS, ContentWriter, Router, basic_auth, build_app, method_validator
from exporterlib.types import FetchResult, FetcherProtocol

CONFIG = ExporterConfig(
    url="http://upstream.test/data",
    mime_type="json",
    timeout=5,
    basic_auth=BasicAuthCredentials(username="admin", password="s3cret"),
)


class StubFetcher(FetcherProtocol):
    def __init__(self, bodies=None, error=None):
        self.bodies = bodies or {"json": b'{"response": "ok"}', "html": b"<html><body><p>ok</p></body></html>"}
        self.error = error
        self.calls = []

    def fetch(self, url, accepted_mime_type, timeout_seconds):
        self.calls.append((url, accepted_mime_type, timeout_seconds))
        if self.error is not None:
            raise FetchError(self.error, f"stubbed {self.error.name}", url=url)
        return FetchResult(body=self.bodies[accepted_mime_type], mime_type=accepted_mime_type)


def call(app, path, method="GET", headers=None):
    environ = {"PATH_INFO": path, "REQUEST_METHOD": method}
    environ.update(headers or {})
    setup_testing_defaults(environ)
    captured = {}

    def start_response(status, response_headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(response_headers)

    body = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], body


def auth_header(username, password):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"HTTP_AUTHORIZATION": f"Basic {token}"}


def make_app(fetcher, config=CONFIG):
    metrics = Metrics()
    exporter = PrometheusExporter(metrics)
    return build_app(config, fetcher, metrics, exporter), metrics


def test_routes_registered():
    app, _ = make_app(StubFetcher())
    assert app.paths == [
        "/content",
        "/htmlBasicAuth",
        "/htmlNoBasicAuth",
        "/jsonBasicAuth",
        "/jsonNoBasicAuth",
        "/metrics",
    ]


def test_unknown_route_is_404():
    app, _ = make_app(StubFetcher())
    status, _, body = call(app, "/nope")
    assert status.startswith("404")
    assert json.loads(body)["error"] == "not_found"


def test_duplicate_route_rejected():
    router = Router()
    router.add("/x", lambda environ, start_response: [])
    with pytest.raises(ValueError):
        router.add("/x", lambda environ, start_response: [])


def test_json_no_basic_auth():
    fetcher = StubFetcher()
    app, _ = make_app(fetcher)
    status, headers, body = call(app, "/jsonNoBasicAuth")
    assert status == "200 OK"
    assert headers["Content-Type"] == "application/json"
    assert body == b'{"response": "ok"}'
    assert fetcher.calls == [("http://upstream.test/data", "json", 5)]


def test_html_no_basic_auth():
    app, _ = make_app(StubFetcher())
    status, headers, body = call(app, "/htmlNoBasicAuth")
    assert status == "200 OK"
    assert headers["Content-Type"].startswith("text/html")
    assert b"<p>ok</p>" in body


def test_content_route_uses_configured_mime_type():
    fetcher = StubFetcher()
    app, _ = make_app(fetcher)
    status, headers, _ = call(app, "/content")
    assert status == "200 OK"
    assert headers["Content-Type"] == "application/json"
    assert fetcher.calls[-1][1] == "json"


def test_plain_content_writer_needs_mime_type():
    with pytest.raises(ValueError):
        ContentWriter(StubFetcher(), CONFIG)

    fetcher = StubFetcher(bodies={"xml": b"<ok/>"})
    writer = ContentWriter(fetcher, CONFIG, mime_type="application/xml")
    status, headers, body = call(writer, "/content")
    assert status == "200 OK"
    assert headers["Content-Type"] == "application/octet-stream"
    assert body == b"<ok/>"
    assert fetcher.calls == [(CONFIG.url, "xml", CONFIG.timeout)]


@pytest.mark.parametrize("path", ["/jsonNoBasicAuth", "/jsonBasicAuth", "/htmlBasicAuth", "/metrics"])
def test_method_not_allowed(path):
    fetcher = StubFetcher()
    app, _ = make_app(fetcher)
    status, headers, _ = call(app, path, method="POST", headers=auth_header("admin", "s3cret"))
    assert status.startswith("405")
    assert headers["Allow"] == "GET"
    assert fetcher.calls == []


@pytest.mark.parametrize(
    "headers",
    [
        {},
        auth_header("admin", "wrong"),
        auth_header("someone", "s3cret"),
        {"HTTP_AUTHORIZATION": "Bearer abc"},
        {"HTTP_AUTHORIZATION": "Basic !!!notbase64"},
        {"HTTP_AUTHORIZATION": "Basic " + base64.b64encode(b"no-colon").decode()},
    ],
)
def test_basic_auth_refused(headers):
    fetcher = StubFetcher()
    app, _ = make_app(fetcher)
    status, response_headers, _ = call(app, "/jsonBasicAuth", headers=headers)
    assert status.startswith("401")
    assert response_headers["WWW-Authenticate"].startswith("Basic realm=")
    assert fetcher.calls == []


def test_basic_auth_accepted():
    app, _ = make_app(StubFetcher())
    status, _, body = call(app, "/htmlBasicAuth", headers=auth_header("admin", "s3cret"))
    assert status == "200 OK"
    assert b"<p>ok</p>" in body


def test_basic_auth_without_credentials_refuses_everyone():
    def ok(environ, start_response):
        start_response("200 OK", [])
        return [b""]

    status, _, _ = call(basic_auth(ok, None), "/", headers=auth_header("admin", "s3cret"))
    assert status.startswith("401")


def test_method_validator_custom_methods():
    def ok(environ, start_response):
        start_response("200 OK", [])
        return [b""]

    app = method_validator(ok, allowed=("get", "head"))
    assert call(app, "/", method="HEAD")[0] == "200 OK"
    status, headers, _ = call(app, "/", method="DELETE")
    assert status.startswith("405")
    assert headers["Allow"] == "GET, HEAD"


def test_error_mapping_is_total():
    assert set(ERROR_STATUS) == set(FetchErrorKind)


@pytest.mark.parametrize("kind", list(FetchErrorKind))
def test_fetch_errors_become_gateway_responses(kind):
    app, metrics = make_app(StubFetcher(error=kind))
    status, headers, body = call(app, "/jsonNoBasicAuth")
    expected = "504" if kind is FetchErrorKind.REQUEST_TIMEOUT else "502"
    assert status.startswith(expected)
    assert headers["Content-Type"] == "application/json"
    payload = json.loads(body)
    assert payload["error"] == kind.value
    assert kind.name in payload["message"]
    totals, _ = metrics.snapshot()
    assert totals.errors_by_kind == {kind: 1}


def test_invalid_payload_is_bad_gateway():
    app, _ = make_app(StubFetcher(bodies={"json": b"{broken", "html": b"just text"}))
    for path in ("/jsonNoBasicAuth", "/htmlNoBasicAuth"):
        status, _, body = call(app, path)
        assert status.startswith("502")
        assert json.loads(body)["error"] == "invalid_payload"


def test_metrics_route_reports_fetches():
    app, _ = make_app(StubFetcher())
    call(app, "/jsonNoBasicAuth")
    call(app, "/htmlNoBasicAuth")
    status, headers, body = call(app, "/metrics")
    assert status.startswith("200")
    assert headers["Content-Type"].startswith("text/plain")
    text = body.decode()
    assert "exporter_fetches_total 2.0" in text
    assert "exporter_last_fetch_success 1.0" in text
