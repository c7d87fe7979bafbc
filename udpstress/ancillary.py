"""
Recover the local (destination) address of a datagram that arrived on a
wildcard-bound socket.

The kernel hands it back as control data when the socket asked for it:
IPv4 via IP_ORIGDSTADDR (address and port), IPv6 via IPV6_PKTINFO (address,
interface) together with IPV6_ORIGDSTADDR (port).
"""

from __future__ import annotations

import socket
import struct
from typing import Any, List, Optional, Tuple

from .util import FatalError

# Linux values; older Python builds do not export them.
IP_RECVORIGDSTADDR = getattr(socket, "IP_RECVORIGDSTADDR", 20)
IP_ORIGDSTADDR = getattr(socket, "IP_ORIGDSTADDR", IP_RECVORIGDSTADDR)
IPV6_RECVORIGDSTADDR = getattr(socket, "IPV6_RECVORIGDSTADDR", 74)
IPV6_ORIGDSTADDR = getattr(socket, "IPV6_ORIGDSTADDR", IPV6_RECVORIGDSTADDR)

_SIN = struct.Struct("=H2s4s8x")         # sockaddr_in, port kept raw
_SIN6 = struct.Struct("=H2s4s16sI")      # sockaddr_in6
_PKTINFO6 = struct.Struct("=16sI")       # in6_pktinfo

CONTROL_BUFSIZE = socket.CMSG_SPACE(_SIN6.size) + socket.CMSG_SPACE(_PKTINFO6.size)

Ancillary = List[Tuple[int, int, bytes]]


def request_destination(sock: socket.socket, family: int) -> None:
    """Ask the kernel to deliver the destination address with every datagram."""
    try:
        if family == socket.AF_INET:
            sock.setsockopt(socket.IPPROTO_IP, IP_RECVORIGDSTADDR, 1)
        elif family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_RECVPKTINFO, 1)
            sock.setsockopt(socket.IPPROTO_IPV6, IPV6_RECVORIGDSTADDR, 1)
        else:
            raise FatalError(f"no destination recovery for address family {family}")
    except OSError as e:
        raise FatalError(f"setsockopt destination address, family {family}: {e.strerror}") from e


def _parse_sin(data: bytes) -> Tuple[str, int]:
    if len(data) < _SIN.size:
        raise FatalError(f"short IPv4 destination control data: {len(data)} bytes")
    fam, port, addr = _SIN.unpack_from(data)
    if fam != socket.AF_INET:
        raise FatalError(f"IPv4 destination control data has family {fam}")
    return socket.inet_ntop(socket.AF_INET, addr), struct.unpack("!H", port)[0]


def _parse_sin6(data: bytes) -> Tuple[str, int, int, int]:
    if len(data) < _SIN6.size:
        raise FatalError(f"short IPv6 destination control data: {len(data)} bytes")
    fam, port, flowinfo, addr, scope = _SIN6.unpack_from(data)
    if fam != socket.AF_INET6:
        raise FatalError(f"IPv6 destination control data has family {fam}")
    return (
        socket.inet_ntop(socket.AF_INET6, addr),
        struct.unpack("!H", port)[0],
        struct.unpack("!I", flowinfo)[0],
        scope,
    )


def parse_destination(ancdata: Ancillary, msg_flags: int, family: int) -> Tuple[Any, ...]:
    """Socket address the datagram was sent to, as a `bind()`-ready tuple."""
    if msg_flags & socket.MSG_CTRUNC:
        raise FatalError("control data truncated, control buffer too small")

    if family == socket.AF_INET:
        for level, ctype, data in ancdata:
            if level == socket.IPPROTO_IP and ctype == IP_ORIGDSTADDR:
                return _parse_sin(data)
        raise FatalError("no IPv4 destination address in control data")

    if family == socket.AF_INET6:
        host: Optional[str] = None
        scope = 0
        orig: Optional[Tuple[str, int, int, int]] = None
        for level, ctype, data in ancdata:
            if level != socket.IPPROTO_IPV6:
                continue
            if ctype == socket.IPV6_PKTINFO:
                if len(data) < _PKTINFO6.size:
                    raise FatalError(f"short IPv6 packet info control data: {len(data)} bytes")
                addr, ifindex = _PKTINFO6.unpack_from(data)
                host = socket.inet_ntop(socket.AF_INET6, addr)
                scope = ifindex
            elif ctype == IPV6_ORIGDSTADDR:
                orig = _parse_sin6(data)
        if orig is None:
            raise FatalError("no IPv6 destination port in control data")
        if host is None:
            return orig
        # only link-local destinations keep an interface scope
        if not host.lower().startswith("fe80"):
            scope = 0
        return host, orig[1], 0, scope

    raise FatalError(f"no destination recovery for address family {family}")


def recv_with_destination(sock: socket.socket, family: int, bufsize: int) -> Tuple[bytes, Tuple[Any, ...], Tuple[Any, ...]]:
    """recvmsg() returning (payload, foreign address, local address)."""
    data, ancdata, flags, foreign = sock.recvmsg(bufsize, CONTROL_BUFSIZE)
    return data, foreign, parse_destination(ancdata, flags, family)
