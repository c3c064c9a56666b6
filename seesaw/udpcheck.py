"""UDP send-and-expect healthcheck."""

from __future__ import annotations

import json
import socket
import time
from typing import Union

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_udp

_DEFAULT_TIMEOUT = 5.0


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


def _quote(data: bytes) -> str:
    return json.dumps(data.decode("utf-8", "replace"), ensure_ascii=False)


def _arm(sock: socket.socket, deadline: float) -> None:
    sock.settimeout(max(deadline - time.monotonic(), 1e-6))


class UDPChecker(Target, Checker):
    """A healthcheck that sends a datagram and compares the reply."""

    def __init__(self, ip, port: int) -> None:
        Target.__init__(self, ip=ip, port=port, proto=IPProto.UDP)
        self.receive: Union[str, bytes] = ""
        self.send: Union[str, bytes] = ""

    def __str__(self) -> str:
        return f"UDP {Target.__str__(self)}"

    def check(self, timeout: float) -> Result:
        """Send the configured datagram and expect the configured reply."""
        msg = f"UDP check to {self.addr()}"
        start = time.monotonic()
        if timeout == 0:
            timeout = _DEFAULT_TIMEOUT
        deadline = start + timeout

        try:
            sock = dial_udp(self.network(), self.addr(), timeout, self.mark)
        except OSError as err:
            return complete(start, f"{msg}; failed to create socket", False, err)

        expected = _as_bytes(self.receive)
        with sock:
            try:
                _arm(sock, deadline)
                sock.send(_as_bytes(self.send))
            except OSError as err:
                return complete(start, f"{msg}; failed to send request", False, err)

            try:
                _arm(sock, deadline)
                # A datagram longer than the buffer is truncated, as intended.
                data = sock.recv(max(len(expected), 1))
            except OSError as err:
                return complete(start, f"{msg}; failed to read response", False, err)

        got = data[: len(expected)]
        if got != expected:
            return complete(start, f"{msg}; unexpected response - {_quote(got)}", False, None)
        return complete(start, msg, True, None)