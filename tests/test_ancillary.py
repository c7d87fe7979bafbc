"""
Destination address recovery on wildcard-bound sockets.
"""
import socket
import struct

import pytest

from udpstress.ancillary import (
    CONTROL_BUFSIZE, IP_ORIGDSTADDR, IPV6_ORIGDSTADDR,
    parse_destination, recv_with_destination, request_destination,
)
from udpstress.util import FatalError
from .conftest import ipv6_available


def sockaddr_in(host, port):
    return struct.pack("=H", socket.AF_INET) + struct.pack("!H", port) + socket.inet_aton(host) + bytes(8)


def sockaddr_in6(host, port, scope=0):
    return (struct.pack("=H", socket.AF_INET6) + struct.pack("!HI", port, 0)
            + socket.inet_pton(socket.AF_INET6, host) + struct.pack("=I", scope))


def test_wildcard_ipv4_recovers_destination():
    """A request to 127.0.0.1:P on a 0.0.0.0:P socket reports 127.0.0.1:P."""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as server, \
            socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
        server.bind(("0.0.0.0", 0))
        request_destination(server, socket.AF_INET)
        server.settimeout(5)
        port = server.getsockname()[1]

        client.bind(("127.0.0.1", 0))
        client.sendto(b"foo\n", ("127.0.0.1", port))

        data, foreign, local = recv_with_destination(server, socket.AF_INET, 64)

    assert data == b"foo\n"
    assert local == ("127.0.0.1", port)
    assert foreign[0] == "127.0.0.1"


@pytest.mark.skipif(not ipv6_available(), reason="IPv6 loopback not available")
def test_wildcard_ipv6_recovers_destination():
    with socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as server, \
            socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as client:
        server.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        server.bind(("::", 0))
        request_destination(server, socket.AF_INET6)
        server.settimeout(5)
        port = server.getsockname()[1]

        client.sendto(b"foo\n", ("::1", port))
        _data, _foreign, local = recv_with_destination(server, socket.AF_INET6, 64)

    assert local[:2] == ("::1", port)


def test_parse_ipv4_control_data():
    anc = [(socket.IPPROTO_IP, IP_ORIGDSTADDR, sockaddr_in("10.1.2.3", 5353))]
    assert parse_destination(anc, 0, socket.AF_INET) == ("10.1.2.3", 5353)


def test_parse_ipv6_pktinfo_and_port():
    pktinfo = socket.inet_pton(socket.AF_INET6, "2001:db8::7") + struct.pack("=I", 3)
    anc = [
        (socket.IPPROTO_IPV6, socket.IPV6_PKTINFO, pktinfo),
        (socket.IPPROTO_IPV6, IPV6_ORIGDSTADDR, sockaddr_in6("2001:db8::7", 8053)),
    ]
    assert parse_destination(anc, 0, socket.AF_INET6) == ("2001:db8::7", 8053, 0, 0)


def test_parse_ipv6_link_local_keeps_scope():
    pktinfo = socket.inet_pton(socket.AF_INET6, "fe80::1") + struct.pack("=I", 2)
    anc = [
        (socket.IPPROTO_IPV6, socket.IPV6_PKTINFO, pktinfo),
        (socket.IPPROTO_IPV6, IPV6_ORIGDSTADDR, sockaddr_in6("fe80::1", 53, 2)),
    ]
    assert parse_destination(anc, 0, socket.AF_INET6) == ("fe80::1", 53, 0, 2)


def test_truncated_control_data_is_fatal():
    anc = [(socket.IPPROTO_IP, IP_ORIGDSTADDR, sockaddr_in("10.1.2.3", 5353))]
    with pytest.raises(FatalError, match="truncated"):
        parse_destination(anc, socket.MSG_CTRUNC, socket.AF_INET)


def test_missing_option_is_fatal():
    with pytest.raises(FatalError):
        parse_destination([], 0, socket.AF_INET)
    with pytest.raises(FatalError):
        parse_destination([], 0, socket.AF_INET6)


def test_short_control_data_is_fatal():
    anc = [(socket.IPPROTO_IP, IP_ORIGDSTADDR, b"\x02\x00")]
    with pytest.raises(FatalError):
        parse_destination(anc, 0, socket.AF_INET)


def test_control_buffer_fits_both_ipv6_messages():
    assert CONTROL_BUFSIZE >= socket.CMSG_SPACE(28) + socket.CMSG_SPACE(20)
