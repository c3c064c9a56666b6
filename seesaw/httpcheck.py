"""HTTP and HTTPS healthcheck."""

from __future__ import annotations

import http.client
import json
import ssl
import time
from typing import Union
from urllib.parse import urlsplit

from .core import Checker, HealthcheckMode, IPProto, Result, Target, complete
from .dial import dial_tcp

_DEFAULT_TIMEOUT = 5.0


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def _quote(data: bytes) -> str:
    return json.dumps(data.decode("utf-8", "replace"), ensure_ascii=False)


def _read_up_to(response: http.client.HTTPResponse, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        data = response.read(remaining)
        if not data:
            break
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


class HTTPChecker(Target, Checker):
    """A healthcheck that issues an HTTP request and inspects the response."""

    def __init__(self, ip, port: int) -> None:
        Target.__init__(self, ip=ip, port=port, proto=IPProto.TCP)
        self.secure = False
        self.tls_verify = True
        self.method = "GET"
        self.proxy = False
        self.request = "/"
        self.response: Union[str, bytes] = ""
        self.response_code = 200

    def __str__(self) -> str:
        attrs = [f"code {self.response_code}"]
        if self.proxy:
            attrs.append("proxy")
        if self.secure:
            attrs.append("secure")
            if self.tls_verify:
                attrs.append("verify")
        return f"HTTP {self.method} {self.request} [{'; '.join(attrs)}] {Target.__str__(self)}"

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def check(self, timeout: float) -> Result:
        """Send the configured request and check code and body."""
        msg = f"HTTP {self.method} to {self.addr()}"
        start = time.monotonic()
        if timeout == 0:
            timeout = _DEFAULT_TIMEOUT

        scheme = "https" if self.secure else "http"
        try:
            parts = urlsplit(self.request)
            netloc = parts.netloc or self.addr()
            endpoint = urlsplit(f"//{netloc}")
            hostname = endpoint.hostname or ""
            port = endpoint.port or (443 if self.secure else 80)
        except ValueError as err:
            return complete(start, "", False, err)

        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        target = path

        context = self._tls_context() if self.secure else None
        if context is not None:
            conn: http.client.HTTPConnection = http.client.HTTPSConnection(
                hostname, port, timeout=timeout, context=context
            )
        else:
            conn = http.client.HTTPConnection(hostname, port, timeout=timeout)

        if self.mode != HealthcheckMode.PLAIN:
            # Marked connections are dialled up front and reused by the client.
            try:
                sock = dial_tcp(self.network(), self.addr(), timeout, self.mark)
            except OSError as err:
                return complete(start, "", False, err)
            if context is not None:
                try:
                    sock = context.wrap_socket(sock, server_hostname=hostname)
                except OSError as err:
                    sock.close()
                    return complete(start, "", False, err)
            conn.sock = sock
        elif self.proxy:
            if self.secure:
                conn.set_tunnel(hostname, port)
            else:
                target = f"{scheme}://{netloc}{path}"

        try:
            try:
                conn.request(self.method, target)
                response = conn.getresponse()
            except (OSError, http.client.HTTPException) as err:
                return complete(start, "", False, err)
            return self._evaluate(response, msg, start)
        finally:
            conn.close()

    def _evaluate(self, response: http.client.HTTPResponse, msg: str, start: float) -> Result:
        code_ok = self.response_code == 0 or response.status == self.response_code

        msg = f"{msg}; got {response.status} {response.reason}"
        expected = _as_bytes(self.response)
        body_ok = False
        if not expected:
            body_ok = True
        else:
            try:
                got = _read_up_to(response, len(expected))
            except (OSError, http.client.HTTPException):
                msg = f"{msg}; failed to read HTTP response"
            else:
                if got != expected:
                    msg = f"{msg}; unexpected response - {_quote(got)}"
                else:
                    body_ok = True
        return complete(start, msg, code_ok and body_ok, None)