# seesaw

Healthchecking building blocks for a load balancer, together with the data
model used to describe IPVS virtual services and their destinations.

## Checkers

Each checker probes one target and returns a `seesaw.core.Result` with a
`message`, a `success` flag, the `duration` of the check in seconds and any
error (`err`) met along the way. `str(result)` gives the error if there is
one, otherwise the message.

| Module             | Class           | What it checks                                         |
|--------------------|-----------------|--------------------------------------------------------|
| `seesaw.tcpcheck`  | `TCPChecker`    | TCP connect, optional TLS, optional send and receive   |
| `seesaw.udpcheck`  | `UDPChecker`    | UDP datagram sent and expected reply                   |
| `seesaw.httpcheck` | `HTTPChecker`   | HTTP(S) status code and leading bytes of the body      |
| `seesaw.dnscheck`  | `DNSChecker`    | DNS query answered with an expected A or AAAA record   |
| `seesaw.radius`    | `RADIUSChecker` | RADIUS Access-Request and the kind of response         |
| `seesaw.ping`      | `PingChecker`   | ICMP echo (needs raw-socket privileges)                |

Every checker is also a `seesaw.core.Target`, with `ip`, `port`, `mark`,
`mode` (`HealthcheckMode.PLAIN`, `DSR` or `TUN`), `host` and `proto`.
A timeout of `0` selects the checker's own default timeout.

```python
from ipaddress import ip_address
from seesaw.tcpcheck import TCPChecker

checker = TCPChecker(ip_address("127.0.0.1"), 8080)
checker.send = "PING\n"
checker.receive = "PONG"
result = checker.check(1.0)
print(result.success, result)
```

Options per checker:

- `TCPChecker`: `send`, `receive`, `secure`, `tls_verify` (default off).
- `UDPChecker`: `send`, `receive`.
- `HTTPChecker`: `method` (`"GET"`), `request` (`"/"`), `response` (expected
  start of the body, empty for any), `response_code` (`200`, `0` for any),
  `secure`, `tls_verify` (default on), `proxy`. Redirects are not followed.
- `DNSChecker`: `question_name`, `question_type`, `question_class` and
  `answer`. `seesaw.dnscheck.dns_type("aaaa")` turns a type name into its
  number and raises `ValueError` for unknown names.
- `RADIUSChecker`: `username`, `password`, `secret`, and `response`, one of
  `"accept"` (the default), `"challenge"`, `"reject"` or `"any"`.
- `PingChecker`: takes only an address; IPv4 and IPv6 are both supported.

## Running checks on an interval

`seesaw.core.Check` runs a checker repeatedly in its `run` method, counts
successes and failures, allows `retries` consecutive failures before a
healthy target is declared unhealthy, and puts a `Notification` on a queue
whenever the state changes. A check that outlasts its timeout counts as a
failure with the message `Timed out`.

```python
import queue
import threading
from seesaw.core import Check, Config, State

notifications = queue.Queue()
check = Check(notifications)
check.set_blocking(True)
threading.Thread(target=check.run, args=(None,), daemon=True).start()

check.update(Config(id=1, checker=checker, interval=5.0, timeout=2.0, retries=2))
note = notifications.get()
print(note, note.state is State.HEALTHY)
check.stop()
```

`run` takes an optional queue of start ticks; when given, it waits for one
item before the first check and after every change of interval.
`check.status()` returns a `Status` snapshot (`last_check`, `duration`,
`failures`, `successes`, `state`, `message`), and `send_notification()`
pushes the current status at any time. Without `set_blocking(True)`,
`update` drops a configuration if the previous one is still queued.
`set_dryrun(True)` makes every check succeed without touching the network.

## Socket marks

`seesaw.dial.dial_tcp` and `seesaw.dial.dial_udp` open connected sockets
for networks such as `"tcp4"` or `"udp6"` and an address such as
`"[::1]:53"`, setting `SO_MARK` first unless the mark is `0`; this is how
checks in DSR and tunnel mode are routed. Setting a mark is Linux-only and
usually needs privileges. `set_socket_mark` and `set_socket_timeout` work
on an existing socket.

## RADIUS helpers

`seesaw.radius` also exposes packet encoding and decoding (`RadiusPacket`,
`RadiusAttribute`), User-Password hiding (`radius_password`), response
authenticator computation (`response_authenticator`), and
`new_authenticator` / `new_identifier`, as described in RFC 2865.

## ICMP helpers

`seesaw.ping` offers `new_icmp_echo_request`, `parse_icmp_echo_reply`,
`icmp_checksum` and `exchange_icmp_echo` for building and exchanging echo
messages.

## IPVS model

`seesaw.ipvs` defines `Service`, `Destination`, their statistics
(`Stats`, `ServiceStats`, `DestinationStats`), `ServiceFlags`,
`DestinationFlags`, `IPProto` and `IPVSVersion`, plus conversion to and from
the kernel-side representation (`new_ipvs_service`, `new_ipvs_destination`,
`IPVSService.to_service`, `IPVSDestination.to_destination`).
`ServiceFlags.to_netlink` and `ServiceFlags.from_netlink` handle the flags'
wire form.

## What this package does not do

- It does not talk to the kernel: there is no netlink layer, so services
  and destinations can be modelled and converted but not added to, read
  from or removed from a live IPVS table.
- There is no long-running healthcheck server that fetches check
  configurations from a controlling engine or batches notifications back to
  it; `Check` delivers notifications to a queue you provide.
- There are no command-line programs.

## Tests

```
pip install -e ".[test]"
pytest
```