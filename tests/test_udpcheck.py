import socket
import threading

import pytest

from seesaw.udpcheck import UDPChecker

TIMEOUT = 1.0


@pytest.fixture
def echo_server():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(0.1)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                data, addr = sock.recvfrom(64)
            except socket.timeout:
                continue
            except OSError:
                return
            try:
                sock.sendto(data, addr)
            except OSError:
                return

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield sock.getsockname()[1]
    stop.set()
    thread.join(2)
    sock.close()


@pytest.mark.parametrize(
    "send, receive, expected",
    [
        ("", "", True),
        ("foo", "foo", True),
        ("foo\n", "foo", True),
        ("foo", "foo\n", False),
        ("foo", "foooo", False),
        ("", "foo", False),
        ("\x00\x01\x02\x03", "\x00\x01\x02\x03", True),
        ("\x00\x01", "\x00\x01\x02\x03", False),
        ("\x00\x01", "\x02", False),
        ("\x00\x01", "", True),
    ],
)
def test_udp_checker_echo(echo_server, send, receive, expected):
    checker = UDPChecker("127.0.0.1", echo_server)
    checker.send = send
    checker.receive = receive
    result = checker.check(TIMEOUT)
    assert result.success is expected


def test_unexpected_response_message(echo_server):
    checker = UDPChecker("127.0.0.1", echo_server)
    checker.send = "foo"
    checker.receive = "foooo"
    result = checker.check(TIMEOUT)
    assert result.message == f'UDP check to 127.0.0.1:{echo_server}; unexpected response - "foo"'


def test_success_message(echo_server):
    checker = UDPChecker("127.0.0.1", echo_server)
    checker.send = "ping"
    checker.receive = "ping"
    result = checker.check(TIMEOUT)
    assert result.success is True
    assert result.message == f"UDP check to 127.0.0.1:{echo_server}"
    assert result.err is None


def test_closed_server_fails():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    result = UDPChecker("127.0.0.1", port).check(TIMEOUT)
    assert result.success is False
    assert "failed to read response" in result.message


def test_silent_server_times_out():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    try:
        checker = UDPChecker("127.0.0.1", sock.getsockname()[1])
        checker.send = "hello"
        checker.receive = "hello"
        result = checker.check(0.2)
    finally:
        sock.close()
    assert result.success is False
    assert result.message.endswith("; failed to read response")
    assert isinstance(result.err, TimeoutError)


def test_string_form():
    assert str(UDPChecker("127.0.0.1", 53)) == "UDP 127.0.0.1:53 PLAIN"
    assert UDPChecker("::1", 53).network() == "udp6"