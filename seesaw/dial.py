"""Helpers for dialling, optionally marked, TCP and UDP sockets."""

from __future__ import annotations

import socket
import struct
from typing import Optional, Tuple

_SO_MARK = getattr(socket, "SO_MARK", 36)


def _split_host_port(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise OSError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return host, int(port)
    except ValueError:
        raise OSError(f"invalid port in address {address!r}") from None


def _family(network: str, kind: str, host: str) -> int:
    if not network.startswith(kind):
        raise OSError(f"unsupported network {network!r} for {kind}")
    suffix = network[len(kind):]
    if suffix == "4":
        return socket.AF_INET
    if suffix == "6":
        return socket.AF_INET6
    if suffix == "":
        return socket.AF_INET6 if ":" in host else socket.AF_INET
    raise OSError(f"unknown network {network!r}")


def _dial(
    kind: str, socktype: int, network: str, address: str, timeout: float, mark: int
) -> socket.socket:
    host, port = _split_host_port(address)
    sock = socket.socket(_family(network, kind, host), socktype)
    try:
        if mark:
            set_socket_mark(sock, mark)
        sock.settimeout(timeout if timeout > 0 else None)
        sock.connect((host, port))
    except BaseException:
        sock.close()
        raise
    return sock


def dial_tcp(network: str, address: str, timeout: float, mark: int) -> socket.socket:
    """Connect a TCP socket, marking it first unless ``mark`` is zero."""
    return _dial("tcp", socket.SOCK_STREAM, network, address, timeout, mark)


def dial_udp(network: str, address: str, timeout: float, mark: int) -> socket.socket:
    """Connect a UDP socket, marking it unless ``mark`` is zero."""
    return _dial("udp", socket.SOCK_DGRAM, network, address, timeout, mark)


def set_socket_mark(sock: socket.socket, mark: int) -> None:
    """Set the packet mark on a socket."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, _SO_MARK, mark)
    except OSError as err:
        raise OSError(err.errno, f"failed to set mark: {err.strerror}") from err


def _timeval(timeout: float) -> bytes:
    nanoseconds = round(timeout * 1_000_000_000) + 999
    seconds, remainder = divmod(nanoseconds, 1_000_000_000)
    return struct.pack("ll", seconds, remainder // 1000)


def set_socket_timeout(sock: socket.socket, timeout: float) -> None:
    """Set the kernel receive and send timeouts on a socket."""
    value: Optional[bytes] = _timeval(timeout)
    for option in (socket.SO_RCVTIMEO, socket.SO_SNDTIMEO):
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, value)
        except OSError as err:
            raise OSError(err.errno, f"setsockopt: {err.strerror}") from err