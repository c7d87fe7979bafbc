"""
Single-threaded event dispatch on top of the asyncio loop.

Readiness comes from loop.add_reader() (epoll/kqueue), timers from
loop.call_later() (a heap ordered by deadline). A flow registration is
one-shot: whichever of read or timeout fires first removes both before the
flow is called, so a flow never sees an event after it closed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .util import USEC

TIMEOUT = 0x01
READ = 0x02


@dataclass
class Registration:
    fd: Optional[int] = None
    timer: Optional[asyncio.TimerHandle] = None


class Dispatcher:
    def __init__(self, log: logging.Logger) -> None:
        self.log = log
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._regs: Dict[Any, Registration] = {}
        self._persistent: Dict[int, Callable[[], None]] = {}
        self._stop_ev: Optional[asyncio.Event] = None
        self._failure: Optional[BaseException] = None

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self._stop_ev = asyncio.Event()

    # --- one-shot flow registrations -------------------------------------------

    def add(self, flow: Any, *, fd: Optional[int] = None, timeout_usec: Optional[int] = None) -> None:
        assert self.loop is not None
        self.remove(flow)
        reg = Registration(fd=fd)
        if fd is not None:
            self.loop.add_reader(fd, self._fire, flow, READ)
        if timeout_usec is not None:
            reg.timer = self.loop.call_later(timeout_usec / USEC, self._fire, flow, TIMEOUT)
        self._regs[flow] = reg

    def remove(self, flow: Any) -> None:
        reg = self._regs.pop(flow, None)
        if reg is None:
            return
        if reg.timer is not None:
            reg.timer.cancel()
        if reg.fd is not None and self.loop is not None:
            self.loop.remove_reader(reg.fd)

    def pending(self) -> int:
        return len(self._regs)

    def _fire(self, flow: Any, events: int) -> None:
        if flow not in self._regs:
            return
        self.remove(flow)
        try:
            flow.handle(events)
        except Exception as e:
            self.abort(e)

    # --- persistent read registrations ------------------------------------------

    def watch(self, fd: int, callback: Callable[[], None]) -> None:
        assert self.loop is not None
        self._persistent[fd] = callback
        self.loop.add_reader(fd, self._fire_persistent, fd)

    def unwatch(self, fd: int) -> None:
        if self._persistent.pop(fd, None) is not None and self.loop is not None:
            self.loop.remove_reader(fd)

    def watching(self, fd: int) -> bool:
        return fd in self._persistent

    def _fire_persistent(self, fd: int) -> None:
        cb = self._persistent.get(fd)
        if cb is None:
            return
        try:
            cb()
        except Exception as e:
            self.abort(e)

    # --- loop control ------------------------------------------------------------

    def abort(self, exc: BaseException) -> None:
        if self._failure is None:
            self._failure = exc
        self.stop()

    def stop(self) -> None:
        if self._stop_ev is not None and not self._stop_ev.is_set():
            self._stop_ev.set()

    def stopping(self) -> bool:
        return self._stop_ev is not None and self._stop_ev.is_set()

    def clear(self) -> None:
        for flow in list(self._regs):
            self.remove(flow)
        for fd in list(self._persistent):
            self.unwatch(fd)

    async def serve(self) -> None:
        assert self._stop_ev is not None
        await self._stop_ev.wait()
        if self._failure is not None:
            raise self._failure
