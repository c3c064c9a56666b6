"""TCP connect, send and expect healthcheck."""

from __future__ import annotations

import json
import socket
import ssl
import time
from typing import Union

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_tcp

_DEFAULT_TIMEOUT = 10.0


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def _quote(data: bytes) -> str:
    return json.dumps(data.decode("utf-8", "replace"), ensure_ascii=False)


def _arm(sock: socket.socket, deadline: float) -> None:
    sock.settimeout(max(deadline - time.monotonic(), 1e-6))


def _read_full(sock: socket.socket, size: int, deadline: float) -> bytes:
    """Read exactly ``size`` bytes, raising EOFError if the peer closes first."""
    chunks = []
    remaining = size
    while remaining > 0:
        _arm(sock, deadline)
        data = sock.recv(remaining)
        if not data:
            raise EOFError("unexpected EOF")
        chunks.append(data)
        remaining -= len(data)
    return b"".join(chunks)


class TCPChecker(Target, Checker):
    """A healthcheck that connects over TCP, optionally exchanging data."""

    def __init__(self, ip, port: int) -> None:
        Target.__init__(self, ip=ip, port=port, proto=IPProto.TCP)
        self.receive: Union[str, bytes] = ""
        self.send: Union[str, bytes] = ""
        self.secure = False
        self.tls_verify = False

    def __str__(self) -> str:
        attrs = []
        if self.secure:
            attrs.append("secure")
            if self.tls_verify:
                attrs.append("verify")
        extra = f" [{'; '.join(attrs)}]" if attrs else ""
        return f"TCP{extra} {Target.__str__(self)}"

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def check(self, timeout: float) -> Result:
        """Connect, optionally negotiate TLS, send and compare the reply."""
        msg = f"TCP connect to {self.addr()}"
        start = time.monotonic()
        if timeout == 0:
            timeout = _DEFAULT_TIMEOUT
        deadline = start + timeout

        try:
            sock = dial_tcp(self.network(), self.addr(), timeout, self.mark)
        except OSError as err:
            return complete(start, f"{msg}; failed to connect", False, err)

        conn = sock
        try:
            if self.secure:
                host = self.addr().rpartition(":")[0].strip("[]")
                try:
                    _arm(sock, deadline)
                    conn = self._tls_context().wrap_socket(sock, server_hostname=host)
                except OSError as err:
                    return complete(start, msg, False, err)
            return self._exchange(conn, msg, start, deadline)
        finally:
            conn.close()
            sock.close()

    def _exchange(self, conn: socket.socket, msg: str, start: float, deadline: float) -> Result:
        payload = _as_bytes(self.send)
        expected = _as_bytes(self.receive)
        if not payload and not expected:
            return complete(start, msg, True, None)

        if payload:
            try:
                _arm(conn, deadline)
                conn.sendall(payload)
            except OSError as err:
                return complete(start, f"{msg}; failed to send request", False, err)

        if expected:
            try:
                got = _read_full(conn, len(expected), deadline)
            except (OSError, EOFError) as err:
                return complete(start, f"{msg}; failed to read response", False, err)
            if got != expected:
                return complete(start, f"{msg}; unexpected response - {_quote(got)}", False, None)
        return complete(start, msg, True, None)