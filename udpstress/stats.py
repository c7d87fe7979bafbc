"""
Counters shared by every flow and their table output on stdout.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, fields
from typing import Dict, List, Optional, TextIO

HEADER_EVERY = 20
REPORT_INTERVAL_SEC = 1.0

RATE_COUNTERS = ("send", "snderr", "recv", "rcverr", "error", "sndicmp", "rcvicmp")
GAUGES = ("open",)


@dataclass
class Statistics:
    """
    Process-wide counters. Mutated only from the dispatch thread.

    `open` is a gauge and survives reporting; the rest are per-interval
    rates and are reset after each periodic report.
    """
    open: int = 0
    send: int = 0
    snderr: int = 0
    recv: int = 0
    rcverr: int = 0
    error: int = 0
    sndicmp: int = 0
    rcvicmp: int = 0

    def snapshot(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def reset_rates(self) -> None:
        for name in RATE_COUNTERS:
            setattr(self, name, 0)

    def drain(self) -> Dict[str, int]:
        snap = self.snapshot()
        self.reset_rates()
        return snap


class StatisticsPrinter:
    def __init__(self, stats: Statistics, *, icmp: bool, out: Optional[TextIO] = None) -> None:
        self.stats = stats
        self.columns: List[str] = list(GAUGES) + list(RATE_COUNTERS[:5])
        if icmp:
            self.columns += ["sndicmp", "rcvicmp"]
        self.out = out
        self._rows_left = 0

    def _write(self, line: str) -> None:
        out = self.out or sys.stdout
        out.write(line + "\n")
        out.flush()

    def header(self) -> str:
        return "".join(f" {c:>7}" for c in self.columns)

    def dump(self, *, reset: bool, force_header: bool = False) -> Dict[str, int]:
        """Print one row; the header repeats every HEADER_EVERY rows."""
        if self._rows_left == 0 or force_header:
            self._write(self.header())
            self._rows_left = HEADER_EVERY
        self._rows_left -= 1
        snap = self.stats.drain() if reset else self.stats.snapshot()
        self._write("".join(f" {snap[c]:>7d}" for c in self.columns))
        return snap


class Reporter:
    """Periodic (every second) and on-demand statistics output."""

    def __init__(self, printer: StatisticsPrinter, *, periodic: bool, interval: float = REPORT_INTERVAL_SEC) -> None:
        self.printer = printer
        self.periodic = periodic
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self.periodic and self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            self.printer.dump(reset=True)
            await asyncio.sleep(self.interval)

    def dump_now(self) -> None:
        self.printer.dump(reset=False, force_header=True)

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        self.printer.dump(reset=False)
