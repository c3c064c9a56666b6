"""RADIUS Access-Request healthcheck and the packet format it speaks."""

from __future__ import annotations

import enum
import hashlib
import io
import ipaddress
import os
import random
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import BinaryIO, List, Union

from .core import Checker, IPProto, Result, Target, complete
from .dial import dial_udp

_DEFAULT_TIMEOUT = 3.0
_HEADER_SIZE = 20
_MAXIMUM_SIZE = 4096
_AUTHENTICATOR_SIZE = 16
_BLOCK_SIZE = 16
_MAX_PASSWORD_SIZE = 128
_HEADER = struct.Struct(">BBH16s")

_identifier_source = random.Random(os.getpid() + time.time_ns())


def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode() if isinstance(value, str) else bytes(value)


class RadiusCode(enum.IntEnum):
    """RADIUS packet codes."""

    ACCESS_REQUEST = 1
    ACCESS_ACCEPT = 2
    ACCESS_REJECT = 3
    ACCOUNTING_REQUEST = 4
    ACCOUNTING_RESPONSE = 5
    ACCESS_CHALLENGE = 11
    STATUS_SERVER = 12
    STATUS_CLIENT = 13
    RESERVED = 255

    def __str__(self) -> str:
        return _CODE_NAMES[self]


_CODE_NAMES = {
    RadiusCode.ACCESS_REQUEST: "Access-Request",
    RadiusCode.ACCESS_ACCEPT: "Access-Accept",
    RadiusCode.ACCESS_REJECT: "Access-Reject",
    RadiusCode.ACCOUNTING_REQUEST: "Accounting-Request",
    RadiusCode.ACCOUNTING_RESPONSE: "Accounting-Response",
    RadiusCode.ACCESS_CHALLENGE: "Access-Challenge",
    RadiusCode.STATUS_SERVER: "Status-Server",
    RadiusCode.STATUS_CLIENT: "Status-Client",
    RadiusCode.RESERVED: "Reserved",
}


def _code_str(code: int) -> str:
    try:
        return str(RadiusCode(code))
    except ValueError:
        return f"(unknown {code})"


class RadiusAttributeType(enum.IntEnum):
    """RADIUS attribute types used by the healthcheck."""

    USER_NAME = 1
    USER_PASSWORD = 2
    NAS_IP_ADDRESS = 4
    NAS_PORT = 5
    SERVICE_TYPE = 6
    NAS_IDENTIFIER = 32
    NAS_PORT_TYPE = 61

    def __str__(self) -> str:
        return _ATTRIBUTE_NAMES[self]


_ATTRIBUTE_NAMES = {
    RadiusAttributeType.USER_NAME: "User-Name",
    RadiusAttributeType.USER_PASSWORD: "User-Password",
    RadiusAttributeType.NAS_IP_ADDRESS: "NAS-IP-Address",
    RadiusAttributeType.NAS_PORT: "NAS-Port",
    RadiusAttributeType.SERVICE_TYPE: "Service-Type",
    RadiusAttributeType.NAS_IDENTIFIER: "NAS-Identifier",
    RadiusAttributeType.NAS_PORT_TYPE: "NAS-Port-Type",
}


@dataclass
class RadiusAttribute:
    """A single type-length-value RADIUS attribute."""

    ra_type: int
    value: bytes = b""
    length: int = 0

    @classmethod
    def decode(cls, reader: BinaryIO) -> "RadiusAttribute":
        """Read one attribute from a binary stream."""
        head = reader.read(2)
        if len(head) < 2:
            raise ValueError("attribute header short read")
        ra_type, length = head
        if length < 2:
            raise ValueError(f"invalid attribute length: {length}")
        value = reader.read(length - 2)
        if len(value) != length - 2:
            raise ValueError(f"attribute value short read: {len(value)}")
        return cls(ra_type, value, length)

    def encode(self) -> bytes:
        """Return the wire form, updating the stored length."""
        self.length = (2 + len(self.value)) & 0xFF
        return bytes((self.ra_type, self.length)) + self.value


@dataclass
class RadiusPacket:
    """A RADIUS packet: header and attributes."""

    code: int = 0
    identifier: int = 0
    length: int = 0
    authenticator: bytes = bytes(_AUTHENTICATOR_SIZE)
    attributes: List[RadiusAttribute] = field(default_factory=list)

    def add_attribute(self, attribute: RadiusAttribute) -> None:
        """Append an attribute to the packet."""
        self.attributes.append(attribute)

    @classmethod
    def decode(cls, data: bytes) -> "RadiusPacket":
        """Parse a packet from its wire form."""
        reader = io.BytesIO(data)
        header = reader.read(_HEADER.size)
        if len(header) < _HEADER.size:
            raise ValueError("packet header short read")
        code, identifier, length, authenticator = _HEADER.unpack(header)
        if length < _HEADER_SIZE or length > _MAXIMUM_SIZE:
            raise ValueError(f"invalid length {length}")
        packet = cls(code, identifier, length, authenticator)
        remaining = length - _HEADER_SIZE
        while remaining >= 2:
            attribute = RadiusAttribute.decode(reader)
            packet.attributes.append(attribute)
            remaining = (remaining - attribute.length) & 0xFFFF
        return packet

    def encode(self) -> bytes:
        """Return the wire form, updating the stored length."""
        body = b"".join(attribute.encode() for attribute in self.attributes)
        self.length = (_HEADER_SIZE + len(body)) & 0xFFFF
        header = _HEADER.pack(
            self.code & 0xFF, self.identifier & 0xFF, self.length, bytes(self.authenticator)
        )
        return header + body


def new_authenticator() -> bytes:
    """Return a fresh random request authenticator."""
    return os.urandom(_AUTHENTICATOR_SIZE)


def new_identifier() -> int:
    """Return a random packet identifier."""
    return _identifier_source.randrange(256)


def radius_password(
    passwd: Union[str, bytes], secret: Union[str, bytes], authenticator: bytes
) -> bytes:
    """Hide a password as described in RFC 2865 section 5.2."""
    plain = _as_bytes(passwd)
    key = _as_bytes(secret)
    length = min((len(plain) + 0xF) & ~0xF, _MAX_PASSWORD_SIZE)
    padded = plain[:length].ljust(length, b"\0")
    previous = bytes(authenticator)
    hidden = []
    for offset in range(0, length, _BLOCK_SIZE):
        digest = hashlib.md5(key + previous).digest()
        block = bytes(p ^ h for p, h in zip(padded[offset : offset + _BLOCK_SIZE], digest))
        hidden.append(block)
        previous = block
    return b"".join(hidden)


def response_authenticator(
    packet: RadiusPacket, request_authenticator: bytes, secret: Union[str, bytes]
) -> bytes:
    """Compute the response authenticator of RFC 2865 section 3."""
    digest = hashlib.md5()
    digest.update(struct.pack(">BBH", packet.code & 0xFF, packet.identifier & 0xFF, packet.length))
    digest.update(bytes(request_authenticator))
    for attribute in packet.attributes:
        digest.update(attribute.encode())
    digest.update(_as_bytes(secret))
    return digest.digest()


def _local_ipv4(sock: socket.socket):
    local = sock.getsockname()[0].split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(local)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    return ip.ipv4_mapped


def _arm(sock: socket.socket, deadline: float) -> None:
    sock.settimeout(max(deadline - time.monotonic(), 1e-6))


_WANTED_CODES = {
    "accept": RadiusCode.ACCESS_ACCEPT,
    "challenge": RadiusCode.ACCESS_CHALLENGE,
    "reject": RadiusCode.ACCESS_REJECT,
}


class RADIUSChecker(Target, Checker):
    """A healthcheck that sends a RADIUS Access-Request."""

    def __init__(self, ip, port: int) -> None:
        Target.__init__(self, ip=ip, port=port, proto=IPProto.UDP)
        self.username = ""
        self.password = ""
        self.secret = ""
        self.response = "accept"

    def __str__(self) -> str:
        return f"RADIUS {Target.__str__(self)}"

    def check(self, timeout: float) -> Result:
        """Send an Access-Request and validate the reply."""
        msg = f"RADIUS {RadiusCode.ACCESS_REQUEST} to port {self.port}"
        start = time.monotonic()
        if timeout == 0:
            timeout = _DEFAULT_TIMEOUT
        deadline = start + timeout

        try:
            sock = dial_udp(self.network(), self.addr(), timeout, self.mark)
        except OSError as err:
            return complete(start, msg, False, err)
        with sock:
            return self._exchange(sock, msg, start, deadline)

    def _build_request(self, sock: socket.socket, identifier: int, authenticator: bytes) -> RadiusPacket:
        request = RadiusPacket(
            code=RadiusCode.ACCESS_REQUEST, identifier=identifier, authenticator=authenticator
        )
        request.add_attribute(
            RadiusAttribute(RadiusAttributeType.NAS_IDENTIFIER, socket.gethostname().encode())
        )
        request.add_attribute(
            RadiusAttribute(RadiusAttributeType.USER_NAME, _as_bytes(self.username))
        )
        request.add_attribute(
            RadiusAttribute(
                RadiusAttributeType.USER_PASSWORD,
                radius_password(self.password, self.secret, authenticator),
            )
        )
        nas_ip = _local_ipv4(sock)
        if nas_ip is not None:
            request.add_attribute(RadiusAttribute(RadiusAttributeType.NAS_IP_ADDRESS, nas_ip.packed))
        request.add_attribute(RadiusAttribute(RadiusAttributeType.NAS_PORT_TYPE, b"\x00\x00\x00\x05"))
        request.add_attribute(RadiusAttribute(RadiusAttributeType.SERVICE_TYPE, b"\x00\x00\x00\x01"))
        return request

    def _exchange(self, sock: socket.socket, msg: str, start: float, deadline: float) -> Result:
        authenticator = new_authenticator()
        identifier = new_identifier()
        try:
            request = self._build_request(sock, identifier, authenticator)
        except OSError as err:
            return complete(start, msg, False, err)

        try:
            _arm(sock, deadline)
            sock.send(request.encode())
        except OSError as err:
            return complete(start, f"{msg}; failed to send request", False, err)

        try:
            _arm(sock, deadline)
            reply = sock.recv(_MAXIMUM_SIZE)
        except OSError as err:
            return complete(start, f"{msg}; failed to read response", False, err)

        try:
            response = RadiusPacket.decode(reply)
        except ValueError as err:
            return complete(start, f"{msg}; failed to decode response", False, err)

        if response.identifier != identifier:
            return complete(start, f"{msg}; identifier mismatch", False, None)

        expected = response_authenticator(response, authenticator, self.secret)
        if bytes(response.authenticator) != expected:
            return complete(
                start, f"{msg}; response authenticator mismatch (incorrect secret?)", False, None
            )

        msg = f"{msg}; got RADIUS {_code_str(response.code)} response"
        if self.response == "any" or _WANTED_CODES.get(self.response) == response.code:
            return complete(start, msg, True, None)

        if response.code in _WANTED_CODES.values():
            msg = f"{msg}; want {self.response} response"
        else:
            msg = f"{msg}; unknown RADIUS response {response.code}"
        return complete(start, msg, False, None)