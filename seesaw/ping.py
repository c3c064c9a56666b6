"""ICMP echo (ping) healthcheck."""

from __future__ import annotations

import ipaddress
import itertools
import os
import random
import socket
import struct
import time
from typing import Optional, Tuple, Union

from .core import Checker, IPProto, Result, Target, complete

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ICMP4_ECHO_REQUEST = 8
ICMP4_ECHO_REPLY = 0
ICMP6_ECHO_REQUEST = 128
ICMP6_ECHO_REPLY = 129

_DEFAULT_TIMEOUT = 1.0
_MESSAGE_LENGTH = 64
_HEADER_LENGTH = 8
_FILLER = b"Healthcheck"
_REPLY_SIZE = 256

_NETWORKS = {
    "ip4:icmp": (socket.AF_INET, socket.IPPROTO_ICMP),
    "ip6:ipv6-icmp": (socket.AF_INET6, socket.IPPROTO_ICMPV6),
}

_checker_ids = itertools.count(random.Random(os.getpid()).getrandbits(16))


def _parse_ip(value) -> Optional[IPAddress]:
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    try:
        return ipaddress.ip_address(str(value).split("%", 1)[0])
    except ValueError:
        return None


def _ipv4(ip: IPAddress) -> Optional[ipaddress.IPv4Address]:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    return ip.ipv4_mapped


def _same_ip(a: IPAddress, b: IPAddress) -> bool:
    a4, b4 = _ipv4(a), _ipv4(b)
    if a4 is not None or b4 is not None:
        return a4 == b4
    return a == b


def _ip_text(ip: Optional[IPAddress]) -> str:
    if ip is None:
        return "<nil>"
    v4 = _ipv4(ip)
    return str(v4 if v4 is not None else ip)


def icmp_checksum(msg: bytes) -> int:
    """Return the ICMP checksum of a message, as placed in bytes 2 and 3."""
    data = bytes(msg)
    if len(data) % 2:
        data += b"\0"
    total = sum(word for (word,) in struct.iter_unpack("<H", data))
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def _info_message(ident: int, seqnum: int, msglen: int, filler: bytes) -> bytearray:
    if msglen < _HEADER_LENGTH:
        raise ValueError(f"ICMP message length {msglen} is too short")
    msg = bytearray(msglen)
    fill = bytes(filler) * ((msglen - _HEADER_LENGTH) // (len(filler) + 1))
    fill = fill[: msglen - _HEADER_LENGTH]
    msg[_HEADER_LENGTH : _HEADER_LENGTH + len(fill)] = fill
    struct.pack_into(">HH", msg, 4, ident & 0xFFFF, seqnum & 0xFFFF)
    return msg


def new_icmp_echo_request(proto: int, ident: int, seqnum: int, msglen: int, filler: bytes) -> bytes:
    """Build an ICMP or ICMPv6 echo request message."""
    msg = _info_message(ident, seqnum, msglen, filler)
    if proto == IPProto.ICMP:
        msg[0] = ICMP4_ECHO_REQUEST
        cs = icmp_checksum(msg)
        msg[2] ^= cs & 0xFF
        msg[3] ^= cs >> 8
    elif proto == IPProto.ICMPV6:
        # The kernel fills in the ICMPv6 checksum.
        msg[0] = ICMP6_ECHO_REQUEST
    else:
        raise ValueError(f"unsupported protocol for ICMP echo: {proto}")
    return bytes(msg)


def parse_icmp_echo_reply(msg: bytes) -> Tuple[int, int, int]:
    """Return the identifier, sequence number and checksum of an echo message."""
    if len(msg) < _HEADER_LENGTH:
        raise ValueError(f"ICMP message too short: {len(msg)} bytes")
    chksum, ident, seqnum = struct.unpack_from(">HHH", msg, 2)
    return ident, seqnum, chksum


def _strip_ipv4_header(data: bytes) -> bytes:
    if data and data[0] >> 4 == 4:
        return data[(data[0] & 0x0F) * 4 :]
    return data


def exchange_icmp_echo(network: str, ip, timeout: float, echo: bytes) -> None:
    """Send an echo request and wait for the matching reply.

    Raises OSError (including TimeoutError) on network failure and
    ValueError when the reply carries a bad checksum.
    """
    try:
        family, proto = _NETWORKS[network]
    except KeyError:
        raise OSError(f"unknown network {network!r}") from None
    target = _parse_ip(ip)
    if target is None:
        raise OSError(f"invalid address {ip!r}")
    if family == socket.AF_INET and _ipv4(target) is not None:
        target = _ipv4(target)
    expected = parse_icmp_echo_reply(echo)[:2]

    with socket.socket(family, socket.SOCK_RAW, proto) as sock:
        sock.sendto(bytes(echo), (str(target), 0))
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("timed out")
            sock.settimeout(remaining)
            data, addr = sock.recvfrom(_REPLY_SIZE)
            if family == socket.AF_INET:
                data = _strip_ipv4_header(data)
            if len(data) < _HEADER_LENGTH:
                continue
            source = _parse_ip(addr[0])
            if source is None or not _same_ip(source, target):
                continue
            if data[0] not in (ICMP4_ECHO_REPLY, ICMP6_ECHO_REPLY):
                continue
            rid, rseqnum, rchksum = parse_icmp_echo_reply(data)
            if (rid, rseqnum) != expected:
                continue
            if data[0] == ICMP4_ECHO_REPLY and icmp_checksum(data) != 0:
                raise ValueError(f"Bad ICMP checksum: {rchksum:x}")
            return


class PingChecker(Target, Checker):
    """A healthcheck that sends an ICMP echo request."""

    def __init__(self, ip) -> None:
        Target.__init__(self, ip=ip)
        self.proto = IPProto.ICMP if _ipv4(self.ip) is not None else IPProto.ICMPV6
        self.ident = next(_checker_ids) & 0xFFFF
        self.seqnum = 0

    def __str__(self) -> str:
        return f"PING {_ip_text(self.ip)}"

    def check(self, timeout: float) -> Result:
        """Ping the target once."""
        msg = f"ICMP ping to host {_ip_text(self.ip)}"
        seq = self.seqnum
        self.seqnum = (self.seqnum + 1) & 0xFFFF
        echo = new_icmp_echo_request(self.proto, self.ident, seq, _MESSAGE_LENGTH, _FILLER)
        start = time.monotonic()
        if timeout == 0:
            timeout = _DEFAULT_TIMEOUT
        try:
            exchange_icmp_echo(self.network(), self.ip, timeout, echo)
        except (OSError, ValueError) as err:
            return complete(start, msg, False, err)
        return complete(start, msg, True, None)