"""
Answering side: receive requests on the bound sockets, reply after a
random delay.

Listening sockets stay registered for reading for the whole run. Every
request becomes a reply-pending flow that only waits for its timer. In
connected mode a request that came in on a wildcard socket gets a private
socket bound to the address it was sent to and connected to the sender.
"""

from __future__ import annotations

import asyncio
import errno
import functools
import logging
import random
import socket
from typing import Any, List, Optional, Tuple

from .ancillary import recv_with_destination, request_destination
from .config import ServerConfig
from .dispatch import TIMEOUT, Dispatcher
from .packet import CONNECTED_REPLY_TOKEN, RECV_BUFSIZE, REPLY_TOKEN, IcmpSocket, make_payload
from .pool import AddressRecord, SocketPool, find_connect_address, raise_descriptor_limit, resolve
from .stats import Reporter, Statistics, StatisticsPrinter
from .util import FatalError, draw_usec, format_sockaddr, roll_percent

REPLY_PENDING = "reply_pending"
CLOSED = "closed"

WILDCARDS = ("0.0.0.0", "::")

# per request, dropping it is enough
_EXHAUSTED = (errno.EMFILE, errno.ENFILE)


def set_reuse(sock: socket.socket) -> None:
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)


class Listener:
    def __init__(self, sock: socket.socket, record: AddressRecord, peer: Optional[AddressRecord] = None) -> None:
        self.sock = sock
        self.fd = sock.fileno()
        self.record = record
        self.family = record.family
        self.peer = peer
        self.connected = peer is not None
        self.wildcard = record.host in WILDCARDS
        self.local: Tuple[Any, ...] = sock.getsockname()

    def needs_destination(self) -> bool:
        return self.wildcard and not self.connected

    def close(self) -> None:
        self.sock.close()


def open_listeners(cfg: ServerConfig, log: logging.Logger) -> List[Listener]:
    peer = None
    if cfg.peer is not None:
        peer = find_connect_address(resolve(cfg.peer[0], cfg.peer[1], cfg.family))

    records = resolve(cfg.bind, cfg.port, peer.family if peer else cfg.family, passive=True)
    listeners: List[Listener] = []
    cause = f"bind: host {cfg.bind}, port {cfg.port}"
    for rec in records:
        if len(listeners) >= cfg.sockets:
            break
        try:
            s = socket.socket(rec.family, rec.socktype, rec.proto)
        except OSError as e:
            cause = f"socket: {rec.describe()}: {e.strerror}"
            continue
        try:
            if rec.family == socket.AF_INET6:
                s.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            if cfg.connected:
                set_reuse(s)
            s.bind(rec.sockaddr)
            if peer is not None:
                s.connect(peer.sockaddr)
        except OSError as e:
            cause = f"bind: {rec.describe()}: {e.strerror}"
            s.close()
            continue
        s.setblocking(False)
        listener = Listener(s, rec, peer)
        if listener.needs_destination():
            request_destination(s, rec.family)
        host, service = format_sockaddr(listener.local)
        log.info("bind address %s, service %s", host, service)
        listeners.append(listener)
    if not listeners:
        raise FatalError(cause)
    return listeners


class ServerFlow:
    def __init__(
        self,
        pool: "ServerPool",
        listener: Listener,
        sock: socket.socket,
        owns_socket: bool,
        local: Tuple[Any, ...],
        foreign: Tuple[Any, ...],
    ) -> None:
        self.pool = pool
        self.listener = listener
        self.sock = sock
        self.owns_socket = owns_socket
        self.local = local
        self.foreign = foreign
        self.state = REPLY_PENDING

    def __repr__(self) -> str:
        return f"ServerFlow(local={self.local}, foreign={self.foreign}, state={self.state})"

    @property
    def connected(self) -> bool:
        return self.owns_socket or self.listener.connected

    def handle(self, events: int) -> None:
        if events & TIMEOUT:
            self.reply()
        self.close()

    def reply(self) -> None:
        pool = self.pool
        stats = pool.stats
        if self._inject_icmp():
            assert pool.icmp is not None
            try:
                pool.icmp.inject(self.local[:2], self.foreign[:2])
            except OSError as e:
                stats.snderr += 1
                pool.log.debug("icmp send failed to %s: %s", self.foreign, e)
            else:
                stats.sndicmp += 1
            return

        try:
            if self.connected:
                self.sock.send(make_payload(pool.cfg.payload, CONNECTED_REPLY_TOKEN, pool.rng))
            else:
                self.sock.sendto(make_payload(pool.cfg.payload, REPLY_TOKEN, pool.rng), self.foreign)
        except OSError as e:
            stats.snderr += 1
            pool.log.debug("send failed to %s: %s", self.foreign, e)
        else:
            stats.send += 1

    def _inject_icmp(self) -> bool:
        pool = self.pool
        if pool.icmp is None or self.listener.family != socket.AF_INET:
            return False
        return roll_percent(pool.cfg.icmp, pool.rng)

    def close(self) -> None:
        if self.state == CLOSED:
            return
        self.state = CLOSED
        self.pool.dispatcher.remove(self)
        if self.owns_socket:
            self.sock.close()
        self.pool.release(self)


class ServerPool(SocketPool):
    def __init__(
        self,
        cfg: ServerConfig,
        listeners: List[Listener],
        *,
        dispatcher: Dispatcher,
        stats: Statistics,
        log: logging.Logger,
        icmp: Optional[IcmpSocket] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(dispatcher=dispatcher, stats=stats, maximum=cfg.sockets, oneshot=cfg.oneshot, log=log)
        self.cfg = cfg
        self.listeners = listeners
        self.icmp = icmp
        self.rng = rng or random.Random()
        self.reply_usec = cfg.reply_usec
        self.paused = False

    def watch_all(self) -> None:
        for listener in self.listeners:
            self.dispatcher.watch(listener.fd, functools.partial(self.readable, listener))
        self.paused = False

    def unwatch_all(self) -> None:
        for listener in self.listeners:
            self.dispatcher.unwatch(listener.fd)

    def _pause(self) -> None:
        if not self.paused:
            self.unwatch_all()
            self.paused = True
            self.log.debug("%d replies pending, not reading requests", len(self.flows))

    def after_release(self) -> None:
        if self.paused and not self.full() and not self.dispatcher.stopping():
            self.watch_all()

    def make_socket(self, family: int) -> socket.socket:
        return socket.socket(family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)

    def readable(self, listener: Listener) -> None:
        if self.full():
            self._pause()
            return
        try:
            if listener.needs_destination():
                _data, foreign, local = recv_with_destination(listener.sock, listener.family, RECV_BUFSIZE)
            else:
                _data, foreign = listener.sock.recvfrom(RECV_BUFSIZE)
                local = listener.local
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            self.stats.rcverr += 1
            self.log.debug("recv failed fd=%d: %s", listener.fd, e)
            return
        self.stats.recv += 1
        self.accept(listener, local, foreign)

    def accept(self, listener: Listener, local: Tuple[Any, ...], foreign: Tuple[Any, ...]) -> Optional[ServerFlow]:
        sock, owns = listener.sock, False
        if self.cfg.connected and not listener.connected:
            reply_sock = self.open_reply_socket(listener.family, local, foreign)
            if reply_sock is None:
                return None
            sock, owns = reply_sock, True

        flow = ServerFlow(self, listener, sock, owns, local, foreign)
        self.register(flow)
        self.dispatcher.add(flow, timeout_usec=draw_usec(self.reply_usec, self.rng))
        if self.full():
            self._pause()
        return flow

    def open_reply_socket(self, family: int, local: Tuple[Any, ...], foreign: Tuple[Any, ...]) -> Optional[socket.socket]:
        """
        Private socket bound to the address the request was sent to and
        connected to its sender. None when the request has to be dropped.
        """
        try:
            s = self.make_socket(family)
        except OSError as e:
            if e.errno in _EXHAUSTED:
                self.stats.error += 1
                self.log.debug("no descriptor for reply to %s: %s", foreign, e)
                return None
            raise FatalError(f"socket: family {family}: {e.strerror}") from e
        try:
            s.setblocking(False)
            set_reuse(s)
            s.bind(local)
            s.connect(foreign)
        except OSError as e:
            s.close()
            if e.errno == errno.EADDRINUSE:
                self.stats.error += 1
                self.log.debug("reply socket %s -> %s in use", local, foreign)
                return None
            raise FatalError(f"reply socket: bind {local}, connect {foreign}: {e.strerror}") from e
        return s


class ServerService:
    def __init__(
        self,
        cfg: ServerConfig,
        log: logging.Logger,
        *,
        icmp: Optional[IcmpSocket] = None,
        rng: Optional[random.Random] = None,
        out: Any = None,
    ) -> None:
        self.cfg = cfg
        self.log = log
        raise_descriptor_limit(cfg.sockets, log)
        self.listeners = open_listeners(cfg, log)

        if cfg.icmp and icmp is None:
            icmp = IcmpSocket(log)
        self.icmp = icmp

        self.stats = Statistics()
        self.dispatcher = Dispatcher(log)
        self.pool = ServerPool(cfg, self.listeners, dispatcher=self.dispatcher, stats=self.stats, log=log, icmp=icmp, rng=rng)
        self.pool.on_drained = self._drained
        self.reporter = Reporter(StatisticsPrinter(self.stats, icmp=bool(cfg.icmp), out=out), periodic=cfg.statistics)

    def _drained(self) -> None:
        self.reporter.stop()
        self.dispatcher.stop()

    async def start(self) -> None:
        self.dispatcher.attach(asyncio.get_running_loop())
        if self.icmp is not None:
            self.dispatcher.watch(self.icmp.fileno(), functools.partial(self.icmp.readable, self.stats))
        self.pool.watch_all()
        self.reporter.start()
        self.log.info("server started listeners=%d max=%d oneshot=%s connected=%s",
                      len(self.listeners), self.cfg.sockets, self.cfg.oneshot, self.cfg.connected)

    async def stop(self) -> None:
        self.reporter.stop()
        self.dispatcher.stop()
        for flow in list(self.pool.flows):
            flow.close()
        self.dispatcher.clear()
        for listener in self.listeners:
            listener.close()
        if self.icmp is not None:
            self.icmp.close()
        self.log.info("server stopped")

    async def run(self) -> None:
        await self.start()
        try:
            await self.dispatcher.serve()
        finally:
            await self.stop()
