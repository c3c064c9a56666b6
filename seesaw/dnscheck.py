"""DNS query healthcheck."""

from __future__ import annotations

import ipaddress
import json
import socket
import time
from typing import Optional, Union

import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_udp

_DEFAULT_TIMEOUT = 3.0
_MAX_MESSAGE_SIZE = 65535

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def dns_type(name: str) -> int:
    """Return the numeric DNS record type for a type name."""
    upper = name.upper()
    try:
        if upper.startswith("TYPE"):
            raise dns.rdatatype.UnknownRdatatype
        return int(dns.rdatatype.from_text(upper))
    except dns.exception.DNSException:
        raise ValueError(f"unknown DNS type {_quote(name)}") from None


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
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


def _ip_text(ip: IPAddress) -> str:
    v4 = _ipv4(ip)
    return str(v4 if v4 is not None else ip)


def _arm(sock: socket.socket, deadline: float) -> None:
    sock.settimeout(max(deadline - time.monotonic(), 1e-6))


class DNSChecker(Target, Checker):
    """A healthcheck that queries a DNS server and matches the answer."""

    def __init__(self, ip, port: int) -> None:
        Target.__init__(self, ip=ip, port=port, proto=IPProto.UDP)
        self.question_name = ""
        self.question_class = int(dns.rdataclass.IN)
        self.question_type = int(dns.rdatatype.A)
        self.answer = ""

    def _question(self) -> str:
        qclass = dns.rdataclass.to_text(self.question_class)
        qtype = dns.rdatatype.to_text(self.question_type)
        return f"{self.question_name} {qclass} {qtype}"

    def __str__(self) -> str:
        return f"DNS {self._question()} {Target.__str__(self)}"

    def check(self, timeout: float) -> Result:
        """Send the configured query and look for the expected answer."""
        if not self.question_name.endswith("."):
            self.question_name += "."

        msg = f"DNS {self._question()} query to port {self.port}"
        start = time.monotonic()
        if timeout == 0:
            timeout = _DEFAULT_TIMEOUT
        deadline = start + timeout

        expected: Optional[IPAddress] = None
        if self.question_type == dns.rdatatype.A:
            expected = _parse_ip(self.answer)
            if expected is None or _ipv4(expected) is None:
                msg = f"{msg}; {_quote(self.answer)} is not a valid IPv4 address"
                return complete(start, msg, False, None)
        elif self.question_type == dns.rdatatype.AAAA:
            expected = _parse_ip(self.answer)
            if expected is None:
                msg = f"{msg}; {_quote(self.answer)} is not a valid IPv6 address"
                return complete(start, msg, False, None)

        try:
            query = dns.message.make_query(
                self.question_name, self.question_type, self.question_class
            )
        except dns.exception.DNSException as err:
            return complete(start, msg, False, err)

        try:
            sock = dial_udp(self.network(), self.addr(), timeout, self.mark)
        except OSError as err:
            return complete(start, msg, False, err)

        with sock:
            try:
                _arm(sock, deadline)
                sock.send(query.to_wire())
            except OSError as err:
                return complete(start, f"{msg}; failed to send request", False, err)

            try:
                _arm(sock, deadline)
                reply = dns.message.from_wire(sock.recv(_MAX_MESSAGE_SIZE))
            except (OSError, dns.exception.DNSException) as err:
                return complete(start, f"{msg}; failed to read response", False, err)

        return self._match(reply, expected, msg, start)

    def _match(
        self, reply: dns.message.Message, expected: Optional[IPAddress], msg: str, start: float
    ) -> Result:
        if not reply.flags & dns.flags.QR:
            return complete(start, f"{msg}; not a query response", False, None)
        rcode = reply.rcode()
        if rcode != dns.rcode.NOERROR:
            return complete(start, f"{msg}; non-zero response code - {int(rcode)}", False, None)
        if sum(len(rrset) for rrset in reply.answer) < 1:
            msg = f"{msg}; no answers received for query {self._question()}"
            return complete(start, msg, False, None)

        address_types = (dns.rdatatype.A, dns.rdatatype.AAAA)
        for rrset in reply.answer:
            if rrset.name.to_text() != self.question_name:
                continue
            if rrset.rdclass != self.question_class:
                continue
            if rrset.rdtype != self.question_type:
                continue
            if rrset.rdtype not in address_types or expected is None:
                continue
            for rdata in rrset:
                got = _parse_ip(rdata.address)
                if got is not None and _same_ip(expected, got):
                    msg = f"{msg}; received answer {_ip_text(got)}"
                    return complete(start, msg, True, None)

        return complete(start, f"{msg}; failed to match answer", False, None)