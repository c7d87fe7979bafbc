"""
Originating side: many short lived UDP queries against one target.

Each flow sends a query, resends it at random intervals while its wait
budget lasts, and closes on the first response or when the budget is
used up. A closed flow is immediately replaced unless running oneshot.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
import socket
from typing import Any, Optional, Tuple

from .config import ClientConfig
from .dispatch import READ, TIMEOUT, Dispatcher
from .packet import CLIENT_TOKEN, RECV_BUFSIZE, IcmpSocket, make_payload
from .pool import AddressRecord, SocketPool, find_connect_address, raise_descriptor_limit, resolve
from .stats import Reporter, Statistics, StatisticsPrinter
from .util import FatalError, draw_usec, roll_percent

CREATED = "created"
AWAITING_EVENT = "awaiting_event"
CLOSED = "closed"


class ClientFlow:
    def __init__(self, pool: "ClientPool", sock: socket.socket, local: Optional[Tuple[Any, ...]], wait_usec: int) -> None:
        self.pool = pool
        self.sock = sock
        self.fd = sock.fileno()
        self.target = pool.target
        self.local = local
        self.connected = pool.cfg.connected
        self.wait_usec = wait_usec
        self.initial_wait_usec = wait_usec
        self.state = CREATED

    def __repr__(self) -> str:
        return f"ClientFlow(fd={self.fd}, state={self.state}, wait_usec={self.wait_usec})"

    def start(self) -> None:
        self.write()

    def write(self) -> None:
        """
        Send the query and arm the next wakeup.

        A random resend delay smaller than the remaining budget is taken out
        of it; otherwise the rest of the budget becomes the final wakeup.
        """
        self._send()
        timeout = draw_usec(self.pool.resend_usec, self.pool.rng)
        if timeout < self.wait_usec:
            self.wait_usec -= timeout
        else:
            timeout = self.wait_usec
            self.wait_usec = 0
        self.state = AWAITING_EVENT
        self.pool.dispatcher.add(self, fd=self.fd, timeout_usec=timeout)

    def handle(self, events: int) -> None:
        if events & READ:
            if self._receive() and roll_percent(self.pool.cfg.again, self.pool.rng):
                # budget keeps shrinking across repeated requests
                self.write()
                return
        elif events & TIMEOUT:
            if self.wait_usec > 0:
                self.write()
                return
            self._receive_late()
        self.close()

    def close(self) -> None:
        if self.state == CLOSED:
            return
        self.state = CLOSED
        self.pool.dispatcher.remove(self)
        self.sock.close()
        self.pool.release(self)

    # --- I/O ---------------------------------------------------------------------

    def _send(self) -> None:
        pool = self.pool
        stats = pool.stats
        if self._inject_icmp():
            try:
                pool.icmp.inject(self.local, self.target.sockaddr)
            except OSError as e:
                stats.snderr += 1
                pool.log.debug("icmp send failed fd=%d: %s", self.fd, e)
            else:
                stats.sndicmp += 1
            return

        data = make_payload(pool.cfg.payload, CLIENT_TOKEN, pool.rng)
        try:
            if self.connected:
                self.sock.send(data)
            else:
                self.sock.sendto(data, self.target.sockaddr)
        except OSError as e:
            stats.snderr += 1
            pool.log.debug("send failed fd=%d: %s", self.fd, e)
        else:
            stats.send += 1

    def _inject_icmp(self) -> bool:
        pool = self.pool
        if pool.icmp is None or not self.connected or self.target.family != socket.AF_INET:
            return False
        return roll_percent(pool.cfg.icmp, pool.rng)

    def _receive(self) -> bool:
        try:
            self.sock.recv(RECV_BUFSIZE)
        except OSError as e:
            self.pool.stats.rcverr += 1
            self.pool.log.debug("recv failed fd=%d: %s", self.fd, e)
            return False
        self.pool.stats.recv += 1
        return True

    def _receive_late(self) -> None:
        """A response that raced the final timeout still counts."""
        try:
            self.sock.recv(RECV_BUFSIZE)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            self.pool.stats.rcverr += 1
            self.pool.log.debug("recv failed fd=%d: %s", self.fd, e)
            return
        self.pool.stats.recv += 1


class ClientPool(SocketPool):
    def __init__(
        self,
        cfg: ClientConfig,
        target: AddressRecord,
        *,
        dispatcher: Dispatcher,
        stats: Statistics,
        log: logging.Logger,
        icmp: Optional[IcmpSocket] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(dispatcher=dispatcher, stats=stats, maximum=cfg.sockets, oneshot=cfg.oneshot, log=log)
        self.cfg = cfg
        self.target = target
        self.icmp = icmp
        self.rng = rng or random.Random()
        self.resend_usec = cfg.resend_usec
        self.wait_usec = cfg.wait_usec

    def spawn(self) -> ClientFlow:
        t = self.target
        try:
            sock = socket.socket(t.family, t.socktype, t.proto)
        except OSError as e:
            raise FatalError(f"socket: family {t.family}, socktype {t.socktype}, protocol {t.proto}: {e.strerror}") from e
        sock.setblocking(False)
        local = None
        if self.cfg.connected:
            try:
                sock.connect(t.sockaddr)
                local = sock.getsockname()
            except OSError as e:
                sock.close()
                raise FatalError(f"connect: {t.describe()}: {e.strerror}") from e
        flow = ClientFlow(self, sock, local, draw_usec(self.wait_usec, self.rng))
        self.register(flow)
        flow.start()
        return flow

    def fill(self) -> None:
        while not self.full():
            self.spawn()

    def after_release(self) -> None:
        if not self.oneshot and not self.dispatcher.stopping():
            self.spawn()


class ClientService:
    def __init__(
        self,
        cfg: ClientConfig,
        log: logging.Logger,
        *,
        icmp: Optional[IcmpSocket] = None,
        rng: Optional[random.Random] = None,
        out: Any = None,
    ) -> None:
        self.cfg = cfg
        self.log = log
        self.target = find_connect_address(resolve(cfg.host, cfg.port, cfg.family))
        self.log.info("connect %s", self.target.describe())
        raise_descriptor_limit(cfg.sockets, log)

        if cfg.icmp and icmp is None:
            icmp = IcmpSocket(log)
        self.icmp = icmp

        self.stats = Statistics()
        self.dispatcher = Dispatcher(log)
        self.pool = ClientPool(cfg, self.target, dispatcher=self.dispatcher, stats=self.stats, log=log, icmp=icmp, rng=rng)
        self.pool.on_drained = self._drained
        self.reporter = Reporter(StatisticsPrinter(self.stats, icmp=bool(cfg.icmp), out=out), periodic=cfg.statistics)

    def _drained(self) -> None:
        self.reporter.stop()
        self.dispatcher.stop()

    async def start(self) -> None:
        self.dispatcher.attach(asyncio.get_running_loop())
        if self.icmp is not None:
            self.dispatcher.watch(self.icmp.fileno(), functools.partial(self.icmp.readable, self.stats))
        self.reporter.start()
        self.pool.fill()
        self.log.info("client started sockets=%d oneshot=%s connected=%s", self.cfg.sockets, self.cfg.oneshot, self.cfg.connected)

    async def stop(self) -> None:
        self.reporter.stop()
        self.dispatcher.stop()
        for flow in list(self.pool.flows):
            flow.close()
        self.dispatcher.clear()
        if self.icmp is not None:
            self.icmp.close()
        self.log.info("client stopped")

    async def run(self) -> None:
        await self.start()
        try:
            await self.dispatcher.serve()
        finally:
            await self.stop()
