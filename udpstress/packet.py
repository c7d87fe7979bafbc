"""
Payload selection and ICMP error fabrication.

The fabricated message is what a filtering middlebox would send back:
ICMP destination unreachable, code "communication administratively
filtered", quoting the IP and UDP headers of the datagram it rejected.
"""

from __future__ import annotations

import logging
import random
import socket
import struct
from typing import Optional, Tuple

from .stats import Statistics
from .util import FatalError

# --- Scapy ---------------------------------------------------------------------
try:
    from scapy.layers.inet import ICMP, IPerror, UDPerror  # type: ignore
    from scapy.utils import checksum  # type: ignore
except Exception as e:  # pragma: no cover
    raise SystemExit(
        "Missing scapy. Install with:\n"
        "  pip install scapy\n"
        f"Original error: {e!r}"
    ) from e


ICMP_UNREACH = 3
ICMP_UNREACH_FILTER_PROHIB = 13

CLIENT_TOKEN = b"foo\n"
REPLY_TOKEN = b"bar\n"
CONNECTED_REPLY_TOKEN = b"baz\n"

MAX_PAYLOAD = 65507
RECV_BUFSIZE = 65535


def make_payload(bound: Optional[int], token: bytes, rng: Optional[random.Random] = None) -> bytes:
    """Zero filler of length uniform in [0, bound], or the literal token."""
    if bound is None:
        return token
    r = rng or random
    return bytes(r.randint(0, bound))


def icmp_checksum(data: bytes) -> int:
    """One's complement of the one's complement sum of all 16-bit words."""
    return checksum(data) & 0xFFFF


def build_unreach(local: Tuple[str, int], foreign: Tuple[str, int]) -> bytes:
    """
    ICMP unreachable for a datagram foreign -> local.

    The quoted headers carry source = foreign and destination = local, so the
    message reads as a rejection of the peer's packet. Checksum field is
    zero while summing, then patched in.
    """
    pkt = (
        ICMP(type=ICMP_UNREACH, code=ICMP_UNREACH_FILTER_PROHIB, chksum=0)
        / IPerror(src=foreign[0], dst=local[0], proto=socket.IPPROTO_UDP)
        / UDPerror(sport=int(foreign[1]), dport=int(local[1]), len=8, chksum=0)
    )
    raw = bytearray(bytes(pkt))
    struct.pack_into("!H", raw, 2, icmp_checksum(bytes(raw)))
    return bytes(raw)


class IcmpSocket:
    """Raw IPv4 ICMP socket used to inject errors and count the ones we see."""

    def __init__(self, log: logging.Logger) -> None:
        self.log = log
        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        except OSError as e:
            raise FatalError(f"socket icmp: {e.strerror}") from e
        self.sock.setblocking(False)

    def fileno(self) -> int:
        return self.sock.fileno()

    def inject(self, local: Tuple[str, int], foreign: Tuple[str, int]) -> None:
        self.sock.sendto(build_unreach(local, foreign), (foreign[0], 0))

    def receive(self) -> bytes:
        return self.sock.recv(1500)

    def readable(self, stats: Statistics) -> None:
        try:
            self.receive()
        except OSError as e:
            stats.error += 1
            self.log.debug("recv icmp failed: %s", e)
            return
        stats.rcvicmp += 1

    def close(self) -> None:
        self.sock.close()
