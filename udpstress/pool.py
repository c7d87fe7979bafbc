"""
Socket pool and process resources.

Addresses returned by the resolver are published once as immutable
AddressRecord values and shared read-only by every flow spawned from them.
"""

from __future__ import annotations

import logging
import resource
import socket
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set, Tuple

from .dispatch import Dispatcher
from .stats import Statistics
from .util import FatalError, format_sockaddr

SAFETY_MARGIN = 10


def raise_descriptor_limit(wanted: int, log: logging.Logger, margin: int = SAFETY_MARGIN) -> int:
    """Make sure RLIMIT_NOFILE allows `wanted` sockets plus a margin."""
    try:
        soft, hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (OSError, ValueError) as e:
        raise FatalError(f"getrlimit number of open files: {e}") from e
    need = wanted + margin
    if soft == resource.RLIM_INFINITY or soft >= need:
        return soft
    new_hard = hard
    if hard != resource.RLIM_INFINITY and hard < need:
        new_hard = need
    try:
        resource.setrlimit(resource.RLIMIT_NOFILE, (need, new_hard))
    except (OSError, ValueError) as e:
        raise FatalError(f"setrlimit number of open files to {need}: {e}") from e
    log.info("open files limit raised from %d to %d", soft, need)
    return need


@dataclass(frozen=True)
class AddressRecord:
    family: int
    socktype: int
    proto: int
    sockaddr: Tuple[Any, ...]

    @property
    def host(self) -> str:
        return str(self.sockaddr[0])

    @property
    def port(self) -> int:
        return int(self.sockaddr[1])

    def describe(self) -> str:
        host, service = format_sockaddr(self.sockaddr)
        return f"address {host}, service {service}"


def resolve(host: Optional[str], port: str, family: int = socket.AF_UNSPEC, *, passive: bool = False) -> List[AddressRecord]:
    flags = socket.AI_PASSIVE if passive else 0
    try:
        infos = socket.getaddrinfo(host, port, family, socket.SOCK_DGRAM, socket.IPPROTO_UDP, flags)
    except socket.gaierror as e:
        raise FatalError(f"getaddrinfo host {host}, port {port}: {e.strerror}") from e
    return [AddressRecord(fam, st, proto, sa) for fam, st, proto, _cn, sa in infos]


def find_connect_address(records: List[AddressRecord]) -> AddressRecord:
    """First resolved address a UDP socket can connect() to."""
    cause = "getaddrinfo"
    for rec in records:
        try:
            s = socket.socket(rec.family, rec.socktype, rec.proto)
        except OSError as e:
            cause = f"socket: {e.strerror}"
            continue
        try:
            s.connect(rec.sockaddr)
        except OSError as e:
            cause = f"connect: {rec.describe()}: {e.strerror}"
            continue
        finally:
            s.close()
        return rec
    raise FatalError(cause)


class SocketPool:
    """
    Bounded set of live flows.

    Keeps the `open` gauge equal to the number of registered flows and
    reports when a oneshot pool has drained.
    """

    def __init__(
        self,
        *,
        dispatcher: Dispatcher,
        stats: Statistics,
        maximum: int,
        oneshot: bool,
        log: logging.Logger,
    ) -> None:
        self.dispatcher = dispatcher
        self.stats = stats
        self.maximum = maximum
        self.oneshot = oneshot
        self.log = log
        self.flows: Set[Any] = set()
        self.on_drained: Optional[Callable[[], None]] = None

    def full(self) -> bool:
        return len(self.flows) >= self.maximum

    def register(self, flow: Any) -> None:
        self.flows.add(flow)
        self.stats.open += 1

    def release(self, flow: Any) -> None:
        if flow not in self.flows:
            return
        self.flows.discard(flow)
        self.stats.open -= 1
        self.after_release()
        if self.oneshot and self.stats.open == 0:
            self.drained()

    def after_release(self) -> None:
        pass

    def drained(self) -> None:
        self.log.info("all flows closed")
        if self.on_drained is not None:
            self.on_drained()
