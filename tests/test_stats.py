"""
Statistics registry and its periodic/on-demand table.
"""
import asyncio
import io

from udpstress.stats import HEADER_EVERY, RATE_COUNTERS, Reporter, Statistics, StatisticsPrinter


def _busy_stats():
    st = Statistics(open=7, send=10, snderr=1, recv=9, rcverr=2, error=3, sndicmp=4, rcvicmp=5)
    return st


def test_periodic_dump_resets_rates_keeps_gauge():
    st = _busy_stats()
    printer = StatisticsPrinter(st, icmp=True, out=io.StringIO())

    snap = printer.dump(reset=True)

    assert snap["send"] == 10 and snap["open"] == 7
    for name in RATE_COUNTERS:
        assert getattr(st, name) == 0, name
    assert st.open == 7


def test_on_demand_dump_keeps_counters_and_prints_header():
    st = _busy_stats()
    out = io.StringIO()
    printer = StatisticsPrinter(st, icmp=False, out=out)

    printer.dump(reset=True)
    st.send = 42
    printer.dump(reset=False, force_header=True)

    lines = out.getvalue().splitlines()
    assert lines.count(printer.header()) == 2
    assert st.send == 42
    assert lines[-1].split()[1] == "42"


def test_header_repeats_every_twenty_rows():
    out = io.StringIO()
    printer = StatisticsPrinter(Statistics(), icmp=False, out=out)

    for _ in range(2 * HEADER_EVERY + 1):
        printer.dump(reset=True)

    lines = out.getvalue().splitlines()
    header_rows = [i for i, line in enumerate(lines) if line == printer.header()]
    assert header_rows == [0, HEADER_EVERY + 1, 2 * (HEADER_EVERY + 1)]


def test_icmp_columns_only_when_enabled():
    plain = StatisticsPrinter(Statistics(), icmp=False, out=io.StringIO())
    icmp = StatisticsPrinter(Statistics(), icmp=True, out=io.StringIO())

    assert plain.header().split() == ["open", "send", "snderr", "recv", "rcverr", "error"]
    assert icmp.header().split()[-2:] == ["sndicmp", "rcvicmp"]


def test_columns_are_seven_wide():
    out = io.StringIO()
    printer = StatisticsPrinter(Statistics(open=1), icmp=False, out=out)
    printer.dump(reset=True)
    row = out.getvalue().splitlines()[1]
    assert row == " " + " ".join(f"{v:>7}" for v in (1, 0, 0, 0, 0, 0))


def test_drain_returns_previous_values():
    st = _busy_stats()
    snap = st.drain()
    assert snap["recv"] == 9
    assert st.snapshot() == {"open": 7, "send": 0, "snderr": 0, "recv": 0,
                             "rcverr": 0, "error": 0, "sndicmp": 0, "rcvicmp": 0}


def test_reporter_dump_now_does_not_reset():
    st = _busy_stats()
    out = io.StringIO()
    printer = StatisticsPrinter(st, icmp=False, out=out)
    reporter = Reporter(printer, periodic=False)

    printer.dump(reset=False)
    reporter.dump_now()

    lines = out.getvalue().splitlines()
    assert lines == [printer.header(), lines[1], printer.header(), lines[1]]
    assert st.send == 10


def test_reporter_periodic_lines_and_final_line():
    st = Statistics()
    out = io.StringIO()
    reporter = Reporter(StatisticsPrinter(st, icmp=False, out=out), periodic=True, interval=0.05)

    async def main():
        reporter.start()
        st.send = 3
        await asyncio.sleep(0.12)
        st.open = 1
        reporter.stop()

    asyncio.run(main())
    rows = [line.split() for line in out.getvalue().splitlines()[1:]]
    assert len(rows) >= 2
    assert rows[0][1] == "3"
    # the last line is the shutdown summary with the live gauge
    assert rows[-1][0] == "1"
