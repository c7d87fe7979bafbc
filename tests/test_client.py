"""
Client flow lifecycle: resend budget, pool replacement, request again,
and complete oneshot runs against loopback servers.
"""
import asyncio
import io
import random
import select
import socket
import time

from udpstress.client import AWAITING_EVENT, CLOSED, ClientPool, ClientService
from udpstress.config import ClientConfig
from udpstress.dispatch import READ, TIMEOUT
from udpstress.pool import resolve
from .servers import UdpEchoServer


def make_cfg(port, **kw):
    base = dict(host="127.0.0.1", port=str(port), family=socket.AF_INET, sockets=1,
                resend=0.01, wait=0.05, oneshot=True)
    base.update(kw)
    return ClientConfig(**base)


def make_pool(cfg, dispatcher, stats, log, **kw):
    target = resolve(cfg.host, cfg.port, cfg.family)[0]
    return ClientPool(cfg, target, dispatcher=dispatcher, stats=stats, log=log, **kw)


def run_to_exhaustion(flow):
    for _ in range(100000):
        if flow.state == CLOSED:
            return
        flow.handle(TIMEOUT)
    raise AssertionError("flow never closed")


def test_budget_is_conserved(udp_sink, dispatcher, stats, log):
    """Scheduled delays add up to the initial wait budget."""
    for seed in range(20):
        pool = make_pool(make_cfg(udp_sink.port), dispatcher, stats, log, rng=random.Random(seed))
        flow = pool.spawn()
        initial = flow.initial_wait_usec
        assert 0 < initial <= 50_000

        run_to_exhaustion(flow)

        arms = dispatcher.arms_for(flow)
        assert sum(arms) == initial
        assert all(a > 0 for a in arms)
        assert flow.wait_usec == 0


def test_every_arm_sends(udp_sink, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_sink.port), dispatcher, stats, log, rng=random.Random(7))
    flow = pool.spawn()
    run_to_exhaustion(flow)

    arms = dispatcher.arms_for(flow)
    assert stats.send == len(arms)
    assert stats.snderr == 0
    time.sleep(0.05)
    assert udp_sink.drain() == len(arms)


def test_pool_replaces_closed_flows(udp_sink, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_sink.port, sockets=3, oneshot=False), dispatcher, stats, log)
    pool.fill()
    assert stats.open == 3

    first = next(iter(pool.flows))
    first.close()
    first.close()
    assert stats.open == 3
    assert len(pool.flows) == 3
    assert first not in pool.flows

    dispatcher.stop()
    for flow in list(pool.flows):
        flow.close()
    assert stats.open == 0


def test_oneshot_pool_drains_once(udp_sink, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_sink.port, sockets=3), dispatcher, stats, log)
    drained = []
    pool.on_drained = lambda: drained.append(stats.open)
    pool.fill()

    for expected, flow in zip((2, 1, 0), list(pool.flows)):
        flow.close()
        assert stats.open == expected
    assert drained == [0]
    assert dispatcher.pending() == 0


def wait_readable(sock, timeout=2.0):
    r, _, _ = select.select([sock], [], [], timeout)
    return bool(r)


def test_response_closes_flow(udp_echo_server, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_echo_server.actual_port, wait=5, resend=5), dispatcher, stats, log)
    flow = pool.spawn()
    assert wait_readable(flow.sock)

    flow.handle(READ)
    assert flow.state == CLOSED
    assert stats.recv == 1
    assert stats.open == 0


def test_request_again_sends_another_query(udp_echo_server, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_echo_server.actual_port, wait=5, resend=5, again=100), dispatcher, stats, log)
    flow = pool.spawn()
    budget = flow.wait_usec
    assert wait_readable(flow.sock)

    flow.handle(READ)
    assert flow.state == AWAITING_EVENT
    assert stats.recv == 1
    assert stats.send == 2
    assert flow.wait_usec <= budget
    assert len(dispatcher.arms_for(flow)) == 2

    flow.close()
    assert stats.open == 0


def test_connected_flow_knows_local_address(udp_sink, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_sink.port, connected=True), dispatcher, stats, log)
    flow = pool.spawn()
    assert flow.local[0] == "127.0.0.1"
    assert flow.local == flow.sock.getsockname()
    flow.close()


def test_icmp_replaces_connected_query(udp_sink, dispatcher, stats, log, fake_icmp):
    cfg = make_cfg(udp_sink.port, connected=True, icmp=100)
    pool = make_pool(cfg, dispatcher, stats, log, icmp=fake_icmp)
    flow = pool.spawn()

    assert stats.sndicmp == 1
    assert stats.send == 0
    assert fake_icmp.injected == [(flow.local, ("127.0.0.1", udp_sink.port))]
    flow.close()


def test_unconnected_flow_never_injects(udp_sink, dispatcher, stats, log, fake_icmp):
    pool = make_pool(make_cfg(udp_sink.port, icmp=100), dispatcher, stats, log, icmp=fake_icmp)
    flow = pool.spawn()
    assert fake_icmp.injected == []
    assert stats.send == 1
    flow.close()


def test_payload_bound_is_sent(udp_echo_server, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_echo_server.actual_port, payload=0, wait=5), dispatcher, stats, log)
    flow = pool.spawn()
    assert wait_readable(flow.sock)
    assert flow.sock.recv(100) == b""
    flow.close()


def test_oneshot_run_against_silent_target(udp_sink, log):
    """One flow, nobody answers: the run ends after its wait budget."""
    cfg = make_cfg(udp_sink.port, resend=1, wait=1)
    svc = ClientService(cfg, log, out=io.StringIO())

    started = time.monotonic()
    asyncio.run(asyncio.wait_for(svc.run(), timeout=10))
    elapsed = time.monotonic() - started

    assert elapsed < 2.5
    assert svc.stats.open == 0
    assert svc.stats.send >= 1
    assert svc.stats.recv == 0
    assert svc.dispatcher.pending() == 0
    assert udp_sink.drain() == svc.stats.send


def test_oneshot_run_against_echo(log):
    server = UdpEchoServer(reply=b"bar\n")
    server.start()
    server.wait_ready()
    try:
        cfg = make_cfg(server.actual_port, sockets=20, resend=0.5, wait=2)
        out = io.StringIO()
        cfg.statistics = True
        svc = ClientService(cfg, log, out=out)
        asyncio.run(asyncio.wait_for(svc.run(), timeout=10))
    finally:
        server.stop()

    assert svc.stats.open == 0
    assert server.received >= 20
    lines = out.getvalue().splitlines()
    assert lines[0].split() == ["open", "send", "snderr", "recv", "rcverr", "error"]
    assert len(lines) >= 3


def test_response_racing_final_timeout_is_counted(udp_echo_server, dispatcher, stats, log):
    pool = make_pool(make_cfg(udp_echo_server.actual_port, wait=5, resend=5), dispatcher, stats, log)
    flow = pool.spawn()
    assert wait_readable(flow.sock)

    # the last wakeup fires while the response is already queued
    flow.wait_usec = 0
    flow.handle(TIMEOUT)

    assert flow.state == CLOSED
    assert stats.recv == 1
    assert stats.rcverr == 0
    assert stats.open == 0
