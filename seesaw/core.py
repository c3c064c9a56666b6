"""Healthcheck core: states, targets, results and the per-check runner."""

from __future__ import annotations

import enum
import ipaddress
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Union

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class State(enum.IntEnum):
    """The current state of a healthcheck."""

    UNKNOWN = 0
    UNHEALTHY = 1
    HEALTHY = 2

    def __str__(self) -> str:
        return _STATE_NAMES.get(self, "<unknown>")


_STATE_NAMES = {
    State.UNKNOWN: "Unknown",
    State.UNHEALTHY: "Unhealthy",
    State.HEALTHY: "Healthy",
}


class HealthcheckMode(enum.Enum):
    """How a healthcheck reaches its target."""

    PLAIN = "PLAIN"
    DSR = "DSR"
    TUN = "TUN"

    def __str__(self) -> str:
        return self.value


class IPProto(enum.IntEnum):
    """IP protocol numbers used by healthchecks."""

    ICMP = 1
    TCP = 6
    UDP = 17
    ICMPV6 = 58


def _to_ip(value) -> Optional[IPAddress]:
    if value is None or isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    return ipaddress.ip_address(value)


def _ipv4(ip: Optional[IPAddress]) -> Optional[ipaddress.IPv4Address]:
    """Return the IPv4 form of an address, if it has one."""
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    if isinstance(ip, ipaddress.IPv6Address):
        return ip.ipv4_mapped
    return None


def _ip_str(ip: Optional[IPAddress]) -> str:
    if ip is None:
        return "<nil>"
    v4 = _ipv4(ip)
    return str(v4 if v4 is not None else ip)


@dataclass
class Target:
    """The target of a healthcheck."""

    ip: Optional[IPAddress] = None
    host: Optional[IPAddress] = None
    mark: int = 0
    mode: HealthcheckMode = HealthcheckMode.PLAIN
    port: int = 0
    proto: int = 0

    def __post_init__(self) -> None:
        self.ip = _to_ip(self.ip)
        self.host = _to_ip(self.host)

    def __str__(self) -> str:
        via = ""
        if self.mode != HealthcheckMode.PLAIN:
            via = f" (via {_ip_str(self.host)} mark {self.mark})"
        return f"{self.addr()} {self.mode}{via}"

    def addr(self) -> str:
        """Return the host:port address string of the target."""
        v4 = _ipv4(self.ip)
        if v4 is not None:
            return f"{v4}:{self.port}"
        return f"[{_ip_str(self.ip)}]:{self.port}"

    def network(self) -> str:
        """Return the network name used to reach the target."""
        version = 4 if _ipv4(self.ip) is not None else 6
        if self.proto == IPProto.ICMP:
            return "ip4:icmp"
        if self.proto == IPProto.ICMPV6:
            return "ip6:ipv6-icmp"
        if self.proto == IPProto.TCP:
            return f"tcp{version}"
        if self.proto == IPProto.UDP:
            return f"udp{version}"
        return "(unknown)"


@dataclass
class Result:
    """The outcome of a single healthcheck."""

    message: str = ""
    success: bool = False
    duration: float = 0.0
    err: Optional[BaseException] = None

    def __str__(self) -> str:
        if self.err is not None:
            return str(self.err)
        return self.message


def complete(start: float, msg: str, success: bool, err: Optional[BaseException]) -> Result:
    """Build a Result for a check begun at the monotonic time ``start``."""
    return Result(msg, success, time.monotonic() - start, err)


class Checker(ABC):
    """Interface implemented by every healthcheck type."""

    @abstractmethod
    def check(self, timeout: float) -> Result:
        """Run the check once, giving up after ``timeout`` seconds."""


@dataclass
class Status:
    """The current status of a healthcheck instance."""

    last_check: Optional[datetime] = None
    duration: float = 0.0
    failures: int = 0
    successes: int = 0
    state: State = State.UNKNOWN
    message: str = ""


@dataclass
class Notification:
    """A status notification for a healthcheck."""

    id: int
    status: Status

    @property
    def state(self) -> State:
        return self.status.state

    def __str__(self) -> str:
        return f"ID 0x{self.id:x} {self.status.state}"


@dataclass
class Config:
    """The configuration of a healthcheck; times are in seconds."""

    id: int
    checker: Optional[Checker]
    interval: float = 5.0
    timeout: float = 30.0
    retries: int = 0


class Check:
    """A running healthcheck instance."""

    def __init__(self, notify: "queue.Queue[Notification]") -> None:
        self.config: Optional[Config] = None
        self._notify = notify
        self._lock = threading.Lock()
        self._blocking = False
        self._dryrun = False
        self._last_check: Optional[datetime] = None
        self._failed = 0
        self._failures = 0
        self._successes = 0
        self._state = State.UNKNOWN
        self._result: Optional[Result] = None
        self._update: "queue.Queue[Config]" = queue.Queue(maxsize=1)
        self._quit: "queue.Queue[bool]" = queue.Queue(maxsize=1)
        self._wake = threading.Event()

    def __str__(self) -> str:
        if self.config is None or self.config.checker is None:
            return ""
        return str(self.config.checker)

    @property
    def _id(self) -> int:
        return self.config.id if self.config is not None else 0

    def status(self) -> Status:
        """Return a snapshot of the current status."""
        with self._lock:
            status = Status(
                last_check=self._last_check,
                failures=self._failures,
                successes=self._successes,
                state=self._state,
            )
            if self._result is not None:
                status.duration = self._result.duration
                status.message = str(self._result)
        return status

    def _quit_requested(self) -> bool:
        try:
            self._quit.get_nowait()
        except queue.Empty:
            return False
        return True

    def _apply_pending_update(self) -> Optional[Config]:
        updates = self._update
        try:
            config = updates.get_nowait()
        except queue.Empty:
            return None
        previous = self.config
        self.config = config
        updates.task_done()
        return previous if previous is not None else config

    @staticmethod
    def _wait_tick(start) -> None:
        if start is not None:
            start.get()

    def run(self, start=None) -> None:
        """Run checks at the configured interval until stopped.

        Waits for the first configuration, then for a tick from ``start``
        (a queue, or None to begin at once).
        """
        while True:
            self._wake.clear()
            if self._quit_requested():
                return
            if self._apply_pending_update() is not None:
                break
            self._wake.wait()

        self._wait_tick(start)
        log.info("Starting healthchecker for %d (%s)", self._id, self)

        if self.config.interval <= 0:
            raise ValueError("non-positive interval for healthcheck")
        base = time.monotonic()
        ticks = 0
        self.healthcheck()
        while True:
            self._wake.clear()
            if self._quit_requested():
                log.info("Stopping healthchecker for %d (%s)", self._id, self)
                return

            previous = self._apply_pending_update()
            if previous is not None:
                if previous.interval != self.config.interval:
                    if self.config.interval <= 0:
                        raise ValueError("non-positive interval for healthcheck")
                    self._wait_tick(start)
                    base = time.monotonic()
                    ticks = 0
                continue

            interval = self.config.interval
            now = time.monotonic()
            next_tick = base + (ticks + 1) * interval
            if now >= next_tick:
                ticks = int((now - base) // interval)
                self.healthcheck()
                continue
            self._wake.wait(next_tick - now)

    def healthcheck(self) -> None:
        """Execute the checker once and record the outcome."""
        config = self.config
        if config is None or config.checker is None:
            return
        start = time.monotonic()
        started_at = datetime.now(timezone.utc)

        if self._dryrun:
            result = complete(start, "dryrun mode; always succeed", True, None)
        else:
            result = self._execute(config)

        outcome = "SUCCESS" if result.success else "FAILURE"
        log.info("%d: (%s) %s: %s", config.id, self, outcome, result)

        with self._lock:
            self._last_check = started_at
            self._result = result
            if result.success:
                state = State.HEALTHY
                self._failed = 0
                self._successes += 1
            else:
                self._failed += 1
                self._failures += 1
                state = State.UNHEALTHY

            if self._state == State.HEALTHY and 0 < self._failed <= config.retries:
                log.info("%d: Failure %d - retrying...", config.id, self._failed)
                state = State.HEALTHY
            transition = self._state != state
            self._state = state

        if transition:
            self.send_notification()

    def _execute(self, config: Config) -> Result:
        results: "queue.Queue[Result]" = queue.Queue(maxsize=1)
        checker = config.checker
        timeout = config.timeout

        def worker() -> None:
            start = time.monotonic()
            try:
                results.put(checker.check(timeout))
            except Exception as err:  # a failing checker is an unhealthy target
                results.put(complete(start, "", False, err))

        threading.Thread(target=worker, daemon=True).start()
        try:
            return results.get(timeout=timeout)
        except queue.Empty:
            return Result("Timed out", False, timeout, None)

    def send_notification(self) -> None:
        """Send a notification carrying the current status."""
        self._notify.put(Notification(self._id, self.status()))

    def stop(self) -> None:
        """Ask a running healthcheck to quit."""
        try:
            self._quit.put_nowait(True)
        except queue.Full:
            pass
        self._wake.set()

    def set_blocking(self, block: bool) -> None:
        """Make configuration updates wait until they have been applied."""
        self._blocking = block
        self._update = queue.Queue(maxsize=1)

    def set_dryrun(self, dryrun: bool) -> None:
        """Enable or disable dry-run mode, in which checks always succeed."""
        self._dryrun = dryrun

    def update(self, config: Config) -> None:
        """Queue a configuration update for the running healthcheck."""
        config = replace(config)
        updates = self._update
        if self._blocking:
            updates.put(config)
            self._wake.set()
            updates.join()
            return
        try:
            updates.put_nowait(config)
        except queue.Full:
            log.warning(
                "Unable to update %d (%s), last update still queued", self._id, self
            )
            return
        self._wake.set()