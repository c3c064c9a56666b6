import socket
import struct

import pytest

from seesaw.dial import dial_tcp, dial_udp, set_socket_mark, set_socket_timeout


@pytest.fixture
def tcp_listener():
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(1)
    yield srv
    srv.close()


@pytest.fixture
def udp_server():
    srv = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    srv.bind(("127.0.0.1", 0))
    srv.settimeout(2)
    yield srv
    srv.close()


def test_dial_tcp_connects(tcp_listener):
    port = tcp_listener.getsockname()[1]
    sock = dial_tcp("tcp4", f"127.0.0.1:{port}", 1.0, 0)
    try:
        conn, _ = tcp_listener.accept()
        with conn:
            sock.sendall(b"ping")
            assert conn.recv(4) == b"ping"
        assert sock.getpeername() == ("127.0.0.1", port)
    finally:
        sock.close()


def test_dial_tcp_refused():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(OSError):
        dial_tcp("tcp4", f"127.0.0.1:{port}", 1.0, 0)


def test_dial_udp_round_trip(udp_server):
    port = udp_server.getsockname()[1]
    sock = dial_udp("udp4", f"127.0.0.1:{port}", 1.0, 0)
    try:
        sock.send(b"hello")
        data, peer = udp_server.recvfrom(16)
        assert data == b"hello"
        udp_server.sendto(b"world", peer)
        assert sock.recv(16) == b"world"
    finally:
        sock.close()


def test_dial_rejects_unknown_network():
    with pytest.raises(OSError):
        dial_tcp("bogus", "127.0.0.1:80", 1.0, 0)


def test_dial_udp_rejects_tcp_network():
    with pytest.raises(OSError):
        dial_udp("tcp4", "127.0.0.1:80", 1.0, 0)


def test_dial_requires_port():
    with pytest.raises(OSError):
        dial_tcp("tcp4", "127.0.0.1", 1.0, 0)


def test_set_socket_mark_reports_failure():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.close()
    with pytest.raises(OSError, match="failed to set mark"):
        set_socket_mark(sock, 1)


def test_set_socket_timeout_round_trip():
    size = struct.calcsize("ll")
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        set_socket_timeout(sock, 2.25)
        for option in (socket.SO_RCVTIMEO, socket.SO_SNDTIMEO):
            raw = sock.getsockopt(socket.SOL_SOCKET, option, size)
            assert struct.unpack("ll", raw) == (2, 250000)


def test_set_socket_timeout_closed_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.close()
    with pytest.raises(OSError, match="setsockopt"):
        set_socket_timeout(sock, 1.0)