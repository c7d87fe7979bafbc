"""
Entry points: udpstress-client and udpstress-server.

Exit status: 0 on a clean stop, 1 on a fatal error, 2 on invalid
configuration, 130 on keyboard interrupt.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, Optional, Sequence, Union

from .client import ClientService
from .config import ClientConfig, ServerConfig, parse_client_args, parse_server_args
from .server import ServerService
from .util import FatalError, drop_privileges, setup_logging

Service = Union[ClientService, ServerService]

# SIGINFO is BSD only
DUMP_SIGNAL = getattr(signal, "SIGINFO", signal.SIGUSR1)


async def amain(cfg: Union[ClientConfig, ServerConfig], build: Callable[..., Service], log: logging.Logger) -> int:
    svc = build(cfg, log)
    drop_privileges(log)

    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        log.info("stop requested")
        svc.dispatcher.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            pass
    try:
        loop.add_signal_handler(DUMP_SIGNAL, svc.reporter.dump_now)
    except NotImplementedError:
        pass

    await svc.run()
    return 0


def _run(cfg: Union[ClientConfig, ServerConfig], build: Callable[..., Service]) -> int:
    log = setup_logging(cfg.raw, cfg.verbose, cfg.log_level)
    try:
        return asyncio.run(amain(cfg, build, log))
    except FatalError as e:
        log.error("%s", e)
        return 1
    except KeyboardInterrupt:
        return 130


def client_main(argv: Optional[Sequence[str]] = None) -> None:
    raise SystemExit(_run(parse_client_args(argv), ClientService))


def server_main(argv: Optional[Sequence[str]] = None) -> None:
    raise SystemExit(_run(parse_server_args(argv), ServerService))
