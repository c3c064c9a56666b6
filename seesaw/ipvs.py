"""IPVS services and destinations and their kernel representation."""

from __future__ import annotations

import copy
import ipaddress
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# Linux address family numbers, as carried by the IPVS netlink family.
_AF_INET = 2
_AF_INET6 = 10

_IPPROTO_TCP = 6
_IPPROTO_UDP = 17


def _to_ip(value) -> Optional[IPAddress]:
    if value is None or isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    return ipaddress.ip_address(value)


def _ipv4(ip: Optional[IPAddress]) -> Optional[ipaddress.IPv4Address]:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    if isinstance(ip, ipaddress.IPv6Address):
        return ip.ipv4_mapped
    return None


def _ip_equal(a: Optional[IPAddress], b: Optional[IPAddress]) -> bool:
    if a is None or b is None:
        return a is None and b is None
    a4, b4 = _ipv4(a), _ipv4(b)
    if a4 is not None or b4 is not None:
        return a4 == b4
    return a == b


def _ip_str(ip: Optional[IPAddress]) -> str:
    if ip is None:
        return "<nil>"
    v4 = _ipv4(ip)
    return str(v4 if v4 is not None else ip)


def _u32(value: int) -> int:
    return value & 0xFFFFFFFF


def _i32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= 1 << 31 else value


class IPProto(int):
    """The protocol carried within an IP datagram."""

    def __str__(self) -> str:
        if self == _IPPROTO_TCP:
            return "TCP"
        if self == _IPPROTO_UDP:
            return "UDP"
        return f"IP({int(self)})"


@dataclass(frozen=True)
class IPVSVersion:
    """An IPVS version number."""

    major: int
    minor: int
    patch: int

    @classmethod
    def from_raw(cls, value: int) -> "IPVSVersion":
        """Split the kernel's packed version number."""
        return cls((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class ServiceFlags(int):
    """Flags for an IPVS service."""

    def to_netlink(self) -> bytes:
        """Return the netlink form: the flags followed by an all-ones mask."""
        return struct.pack("=II", _u32(self), 0xFFFFFFFF)

    @classmethod
    def from_netlink(cls, data: bytes) -> "ServiceFlags":
        """Read flags from their netlink form."""
        return cls(struct.unpack("=I", bytes(data[:4]).ljust(4, b"\0"))[0])


SF_PERSISTENT = ServiceFlags(0x1)
SF_HASHED = ServiceFlags(0x2)
SF_ONE_PACKET = ServiceFlags(0x4)
SF_SCHED_SH_FALLBACK = ServiceFlags(0x8)
SF_SCHED_SH_PORT = ServiceFlags(0x10)
SF_SCHED_MH_FALLBACK = ServiceFlags(0x8)
SF_SCHED_MH_PORT = ServiceFlags(0x10)


class DestinationFlags(int):
    """Flags for a connection to an IPVS destination."""


DF_FORWARD_MASK = DestinationFlags(0x7)
DF_FORWARD_MASQ = DestinationFlags(0x0)
DF_FORWARD_LOCAL = DestinationFlags(0x1)
DF_FORWARD_TUNNEL = DestinationFlags(0x2)
DF_FORWARD_ROUTE = DestinationFlags(0x3)
DF_FORWARD_BYPASS = DestinationFlags(0x4)


@dataclass
class Stats:
    """Traffic statistics kept by IPVS."""

    connections: int = 0
    packets_in: int = 0
    packets_out: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    cps: int = 0
    pps_in: int = 0
    pps_out: int = 0
    bps_in: int = 0
    bps_out: int = 0


@dataclass
class ServiceStats(Stats):
    """Statistics for an IPVS service."""


@dataclass
class DestinationStats(Stats):
    """Statistics for an IPVS destination."""

    active_conns: int = 0
    inactive_conns: int = 0
    persist_conns: int = 0


@dataclass
class Destination:
    """An IPVS destination."""

    address: Optional[IPAddress] = None
    port: int = 0
    weight: int = 0
    flags: DestinationFlags = DestinationFlags(0)
    lower_threshold: int = 0
    upper_threshold: int = 0
    statistics: Optional[DestinationStats] = None

    def __post_init__(self) -> None:
        self.address = _to_ip(self.address)
        self.flags = DestinationFlags(self.flags)

    def equal(self, other: "Destination") -> bool:
        """Return True if both describe the same destination."""
        return (
            _ip_equal(self.address, other.address)
            and self.port == other.port
            and self.weight == other.weight
            and self.flags == other.flags
            and self.lower_threshold == other.lower_threshold
            and self.upper_threshold == other.upper_threshold
        )

    def __str__(self) -> str:
        addr = _ip_str(self.address)
        if _ipv4(self.address) is None:
            addr = f"[{addr}]"
        return f"{addr}:{self.port}"


@dataclass
class Service:
    """An IPVS service."""

    address: Optional[IPAddress] = None
    protocol: IPProto = IPProto(0)
    port: int = 0
    firewall_mark: int = 0
    scheduler: str = ""
    flags: ServiceFlags = ServiceFlags(0)
    timeout: int = 0
    persistence_engine: str = ""
    statistics: Optional[ServiceStats] = None
    destinations: List[Destination] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.address = _to_ip(self.address)
        self.protocol = IPProto(self.protocol)
        self.flags = ServiceFlags(self.flags)

    def equal(self, other: "Service") -> bool:
        """Return True if both describe the same service."""
        return (
            _ip_equal(self.address, other.address)
            and self.protocol == other.protocol
            and self.port == other.port
            and self.firewall_mark == other.firewall_mark
            and self.scheduler == other.scheduler
            and self.flags == other.flags
            and self.timeout == other.timeout
            and self.persistence_engine == other.persistence_engine
        )

    def __str__(self) -> str:
        if self.firewall_mark > 0:
            return f"FWM {self.firewall_mark} ({self.scheduler})"
        if _ipv4(self.address) is None:
            return f"{self.protocol} [{_ip_str(self.address)}]:{self.port} ({self.scheduler})"
        return f"{self.protocol} {_ip_str(self.address)}:{self.port} ({self.scheduler})"


@dataclass
class IPVSService:
    """A service as the kernel IPVS table represents it."""

    addr_family: int = 0
    protocol: IPProto = IPProto(0)
    address: Optional[IPAddress] = None
    port: int = 0
    firewall_mark: int = 0
    scheduler: str = ""
    flags: ServiceFlags = ServiceFlags(0)
    timeout: int = 0
    netmask: int = 0
    stats: Optional[ServiceStats] = None
    persistence_engine: str = ""

    def __post_init__(self) -> None:
        self.address = _to_ip(self.address)
        self.protocol = IPProto(self.protocol)
        self.flags = ServiceFlags(self.flags)

    def to_service(self) -> Service:
        """Convert to a Service, which always has an address."""
        address = self.address
        if address is None:
            if self.addr_family == _AF_INET:
                address = ipaddress.IPv4Address("0.0.0.0")
            else:
                address = ipaddress.IPv6Address("::")
        return Service(
            address=address,
            protocol=self.protocol,
            port=self.port,
            firewall_mark=self.firewall_mark,
            scheduler=self.scheduler,
            flags=self.flags,
            timeout=self.timeout,
            persistence_engine=self.persistence_engine,
            statistics=copy.copy(self.stats) if self.stats is not None else ServiceStats(),
        )


@dataclass
class IPVSDestination:
    """A destination as the kernel IPVS table represents it."""

    address: Optional[IPAddress] = None
    port: int = 0
    flags: DestinationFlags = DestinationFlags(0)
    weight: int = 0
    upper_threshold: int = 0
    lower_threshold: int = 0
    active_conns: int = 0
    inactive_conns: int = 0
    persist_conns: int = 0
    stats: Optional[DestinationStats] = None

    def __post_init__(self) -> None:
        self.address = _to_ip(self.address)
        self.flags = DestinationFlags(self.flags)

    def to_destination(self) -> Destination:
        """Convert to a Destination, folding connection counts into its statistics."""
        stats = copy.copy(self.stats) if self.stats is not None else DestinationStats()
        stats.active_conns = self.active_conns
        stats.inactive_conns = self.inactive_conns
        stats.persist_conns = self.persist_conns
        return Destination(
            address=self.address,
            port=self.port,
            weight=_i32(self.weight),
            flags=self.flags,
            lower_threshold=self.lower_threshold,
            upper_threshold=self.upper_threshold,
            statistics=stats,
        )


def new_ipvs_service(svc: Service) -> IPVSService:
    """Convert a Service to its IPVS representation."""
    ipvs_svc = IPVSService(
        address=svc.address,
        protocol=svc.protocol,
        port=svc.port,
        firewall_mark=svc.firewall_mark,
        scheduler=svc.scheduler,
        flags=svc.flags,
        timeout=svc.timeout,
        persistence_engine=svc.persistence_engine,
    )
    if _ipv4(svc.address) is not None:
        ipvs_svc.addr_family = _AF_INET
        ipvs_svc.netmask = 0xFFFFFFFF
    else:
        ipvs_svc.addr_family = _AF_INET6
        ipvs_svc.netmask = 128
    return ipvs_svc


def new_ipvs_destination(dst: Destination) -> IPVSDestination:
    """Convert a Destination to its IPVS representation."""
    return IPVSDestination(
        address=dst.address,
        port=dst.port,
        flags=dst.flags,
        weight=_u32(dst.weight),
        upper_threshold=dst.upper_threshold,
        lower_threshold=dst.lower_threshold,
    )