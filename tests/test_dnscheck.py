import socket
import threading

import dns.message
import dns.rcode
import dns.rdatatype
import dns.rrset
import pytest

from seesaw.dnscheck import DNSChecker, dns_type

TIMEOUT = 1.0


class _FakeDNSServer:
    def __init__(self, reply):
        self.reply = reply
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while not self._stop.is_set():
            try:
                data, peer = self.sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                return
            query = dns.message.from_wire(data)
            wire = self.reply(query)
            if wire is not None:
                self.sock.sendto(wire, peer)

    def close(self):
        self._stop.set()
        self._thread.join()
        self.sock.close()


def _answer(rdtype, address):
    def reply(query):
        response = dns.message.make_response(query)
        name = query.question[0].name
        response.answer.append(dns.rrset.from_text(name, 60, "IN", rdtype, address))
        return response.to_wire()

    return reply


def _rcode(code):
    def reply(query):
        response = dns.message.make_response(query)
        response.set_rcode(code)
        return response.to_wire()

    return reply


def _empty(query):
    return dns.message.make_response(query).to_wire()


def _echo_query(query):
    return query.to_wire()


@pytest.fixture
def serve():
    servers = []

    def start(reply):
        server = _FakeDNSServer(reply)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()


def _checker(port, answer, qtype=dns.rdatatype.A):
    checker = DNSChecker("127.0.0.1", port)
    checker.question_name = "host.example.com"
    checker.question_type = int(qtype)
    checker.answer = answer
    return checker


def test_dns_type_lookup():
    assert dns_type("a") == dns.rdatatype.A
    assert dns_type("AAAA") == dns.rdatatype.AAAA


def test_dns_type_unknown():
    with pytest.raises(ValueError, match="unknown DNS type"):
        dns_type("bogus")


def test_string():
    checker = DNSChecker("127.0.0.1", 53)
    checker.question_name = "example.com"
    assert str(checker) == "DNS example.com IN A 127.0.0.1:53 PLAIN"


def test_a_record_matches(serve):
    server = serve(_answer("A", "192.0.2.1"))
    result = _checker(server.port, "192.0.2.1").check(TIMEOUT)
    assert result.success is True
    assert result.message.endswith("received answer 192.0.2.1")


def test_name_gets_trailing_dot(serve):
    server = serve(_answer("A", "192.0.2.1"))
    checker = _checker(server.port, "192.0.2.1")
    checker.check(TIMEOUT)
    assert checker.question_name == "host.example.com."


def test_aaaa_record_matches(serve):
    server = serve(_answer("AAAA", "2001:db8::1"))
    result = _checker(server.port, "2001:db8::1", dns.rdatatype.AAAA).check(TIMEOUT)
    assert result.success is True


def test_answer_mismatch(serve):
    server = serve(_answer("A", "192.0.2.1"))
    result = _checker(server.port, "192.0.2.2").check(TIMEOUT)
    assert result.success is False
    assert result.message.endswith("failed to match answer")


def test_invalid_ipv4_answer():
    result = _checker(1, "not-an-ip").check(TIMEOUT)
    assert result.success is False
    assert result.message.endswith('"not-an-ip" is not a valid IPv4 address')


def test_invalid_ipv6_answer():
    result = _checker(1, "not-an-ip", dns.rdatatype.AAAA).check(TIMEOUT)
    assert result.success is False
    assert result.message.endswith('"not-an-ip" is not a valid IPv6 address')


def test_ipv6_address_for_a_query_rejected():
    result = _checker(1, "2001:db8::1").check(TIMEOUT)
    assert "is not a valid IPv4 address" in result.message


def test_non_zero_rcode(serve):
    server = serve(_rcode(dns.rcode.NXDOMAIN))
    result = _checker(server.port, "192.0.2.1").check(TIMEOUT)
    assert result.success is False
    assert result.message.endswith(f"non-zero response code - {int(dns.rcode.NXDOMAIN)}")


def test_not_a_response(serve):
    server = serve(_echo_query)
    result = _checker(server.port, "192.0.2.1").check(TIMEOUT)
    assert result.success is False
    assert result.message.endswith("not a query response")


def test_no_answers(serve):
    server = serve(_empty)
    result = _checker(server.port, "192.0.2.1").check(TIMEOUT)
    assert result.success is False
    assert "no answers received for query host.example.com. IN A" in result.message


def test_no_server_fails():
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    result = _checker(port, "192.0.2.1").check(0.5)
    assert result.success is False
    assert result.err is not None
    assert "failed to" in result.message