import logging
import socket

import pytest

from udpstress.stats import Statistics
from .servers import FakeDispatcher, FakeIcmp, UdpEchoServer, UdpSink


def ipv6_available():
    """Check if IPv6 loopback (::1) is available on this system."""
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as s:
            s.bind(('::1', 0))
            return True
    except OSError:
        return False


@pytest.fixture
def log():
    logger = logging.getLogger("udpstress.test")
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


@pytest.fixture
def stats():
    return Statistics()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def fake_icmp():
    icmp = FakeIcmp()
    yield icmp
    icmp.close()


@pytest.fixture
def udp_sink():
    sink = UdpSink()
    yield sink
    sink.close()


@pytest.fixture
def udp_echo_server():
    server = UdpEchoServer()
    server.start()
    server.wait_ready()
    yield server
    server.stop()
