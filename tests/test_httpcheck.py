import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

import pytest

from seesaw.core import HealthcheckMode
from seesaw.httpcheck import HTTPChecker

TIMEOUT = 1.0


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, *args):
        pass

    def _route(self):
        path = urlsplit(self.path).path
        if path == "/healthz":
            return 200, "text/plain", b"ok\n", {}
        if path == "/notfound":
            return 404, "text/plain; charset=utf-8", b"404 page not found\n", {}
        if path == "/redirect":
            return 302, "text/plain", b"", {"Location": "/"}
        return 200, "text/http", b"<html><body>Test Server</body></html>\n", {}

    def _respond(self, with_body):
        code, ctype, body, extra = self._route()
        self.send_response(code)
        self.send_header("Content-Type", ctype)
        self.send_header("Content-Length", str(len(body)))
        for name, value in extra.items():
            self.send_header(name, value)
        self.end_headers()
        if with_body:
            self.wfile.write(body)

    def do_GET(self):
        self._respond(True)

    def do_HEAD(self):
        self._respond(False)


def _start_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


@pytest.fixture(scope="module")
def http_server():
    server = _start_server()
    yield server
    server.shutdown()
    server.server_close()


def _checker(server, method, request, response, code):
    checker = HTTPChecker("127.0.0.1", server.server_address[1])
    checker.tls_verify = False
    checker.method = method
    checker.request = request
    checker.response = response
    checker.response_code = code
    return checker


HTTP_TESTS = [
    ("GET", "/", "", 0, True),
    ("GET", "/", "", 200, True),
    ("GET", "/", "", 404, False),
    ("GET", "/healthz", "", 0, True),
    ("GET", "/healthz", "", 200, True),
    ("GET", "/healthz", "ok\n", 200, True),
    ("GET", "/healthz", "notok", 200, False),
    ("GET", "/healthz", "ok\n", 503, False),
    ("GET", "/notfound", "", 0, True),
    ("GET", "/notfound", "", 200, False),
    ("GET", "/notfound", "", 404, True),
    ("HEAD", "/healthz", "", 0, True),
    ("HEAD", "/healthz", "", 200, True),
    ("HEAD", "/notfound", "", 0, True),
    ("HEAD", "/notfound", "", 200, False),
    ("HEAD", "/notfound", "", 404, True),
]


@pytest.mark.parametrize("method,request_path,response,code,expected", HTTP_TESTS)
def test_http_checker(http_server, method, request_path, response, code, expected):
    checker = _checker(http_server, method, request_path, response, code)
    assert checker.check(TIMEOUT).success is expected


@pytest.mark.parametrize("code,expected", [(0, True), (302, True), (200, False)])
def test_redirect_is_not_followed(http_server, code, expected):
    checker = _checker(http_server, "GET", "/redirect", "", code)
    assert checker.check(TIMEOUT).success is expected


def test_status_in_message(http_server):
    result = _checker(http_server, "GET", "/healthz", "", 200).check(TIMEOUT)
    assert result.message.endswith("; got 200 OK")


def test_unexpected_body_message(http_server):
    result = _checker(http_server, "GET", "/healthz", "notok", 200).check(TIMEOUT)
    assert result.success is False
    assert 'unexpected response - "ok\\n"' in result.message


def test_inverted_tls_fails(http_server):
    checker = _checker(http_server, "GET", "/", "", 200)
    checker.secure = True
    assert checker.check(TIMEOUT).success is False


def test_proxy_request(http_server):
    checker = _checker(http_server, "GET", "/healthz", "ok\n", 200)
    checker.proxy = True
    assert checker.check(TIMEOUT).success is True


def test_predialled_connection(http_server):
    checker = _checker(http_server, "GET", "/healthz", "ok\n", 200)
    checker.mode = HealthcheckMode.DSR
    assert checker.check(TIMEOUT).success is True


def test_closed_server_fails():
    server = _start_server()
    checker = _checker(server, "GET", "/", "", 0)
    server.shutdown()
    server.server_close()
    checker.check(TIMEOUT)
    result = checker.check(TIMEOUT)
    assert result.success is False
    assert result.err is not None and isinstance(result.err, OSError)


def test_string():
    checker = HTTPChecker("127.0.0.1", 8080)
    assert str(checker) == "HTTP GET / [code 200] 127.0.0.1:8080 PLAIN"
    checker.proxy = True
    checker.secure = True
    assert str(checker) == "HTTP GET / [code 200; proxy; secure; verify] 127.0.0.1:8080 PLAIN"


def test_defaults():
    checker = HTTPChecker("127.0.0.1", 80)
    assert (checker.method, checker.request, checker.response_code, checker.tls_verify) == (
        "GET",
        "/",
        200,
        True,
    )