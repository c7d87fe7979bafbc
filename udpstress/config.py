"""
Configuration for both programs.

Options come from the command line, optionally on top of a json-ish file
given with --config whose keys are the option names (dest form).
"""

from __future__ import annotations

import argparse
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .packet import MAX_PAYLOAD
from .util import ConfigError, load_config, to_usec

MAX_SOCKETS = 100000
MAX_BOUND_SEC = 3600.0

_FAMILIES = {
    None: socket.AF_UNSPEC,
    4: socket.AF_INET,
    6: socket.AF_INET6,
    int(socket.AF_INET): socket.AF_INET,
    int(socket.AF_INET6): socket.AF_INET6,
}


@dataclass
class CommonConfig:
    family: int = socket.AF_UNSPEC
    sockets: int = 1000
    oneshot: bool = False
    connected: bool = False
    icmp: int = 0
    payload: Optional[int] = None
    statistics: bool = False
    verbose: bool = False
    log_level: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ClientConfig(CommonConfig):
    host: str = ""
    port: str = ""
    resend: float = 10.0
    wait: float = 30.0
    again: int = 0

    @property
    def resend_usec(self) -> int:
        return to_usec(self.resend)

    @property
    def wait_usec(self) -> int:
        return to_usec(self.wait)


@dataclass
class ServerConfig(CommonConfig):
    port: str = ""
    bind: Optional[str] = None
    reply: float = 10.0
    peer: Optional[Tuple[str, str]] = None

    @property
    def reply_usec(self) -> int:
        return to_usec(self.reply)


# =============================================================================
# Validation
# =============================================================================

def _check_range(name: str, v: Any, lo: float, hi: float) -> None:
    if v is None or not (lo <= v <= hi):
        raise ConfigError(f"{name} must be within [{lo:g}, {hi:g}], got {v!r}")


def _check_bound(name: str, v: Any) -> None:
    if v is None or not (0 < v <= MAX_BOUND_SEC):
        raise ConfigError(f"{name} must be within (0, {MAX_BOUND_SEC:g}] seconds, got {v!r}")


def validate_common(cfg: CommonConfig) -> None:
    _check_range("sockets", cfg.sockets, 1, MAX_SOCKETS)
    _check_range("icmp percentage", cfg.icmp, 0, 100)
    if cfg.payload is not None:
        _check_range("payload size", cfg.payload, 0, MAX_PAYLOAD)
    if cfg.icmp and cfg.family == socket.AF_INET6:
        raise ConfigError("icmp injection is implemented for IPv4 only")


def validate_client(cfg: ClientConfig) -> ClientConfig:
    validate_common(cfg)
    _check_bound("resend timeout", cfg.resend)
    _check_bound("wait timeout", cfg.wait)
    _check_range("request again percentage", cfg.again, 0, 100)
    if not cfg.host or not cfg.port:
        raise ConfigError("host and port are required")
    if cfg.icmp and not cfg.connected:
        raise ConfigError("icmp injection needs connected sockets (-c)")
    return cfg


def validate_server(cfg: ServerConfig) -> ServerConfig:
    validate_common(cfg)
    _check_bound("reply timeout", cfg.reply)
    if not cfg.port:
        raise ConfigError("port is required")
    return cfg


# =============================================================================
# Command line
# =============================================================================

def _add_common(p: argparse.ArgumentParser, sockets_help: str) -> None:
    p.add_argument("--config", default=None, help="Path to JSON (or json-ish) config file")
    fam = p.add_mutually_exclusive_group()
    fam.add_argument("-4", dest="family", action="store_const", const=socket.AF_INET, help="IPv4 only")
    fam.add_argument("-6", dest="family", action="store_const", const=socket.AF_INET6, help="IPv6 only")
    p.add_argument("-n", "--sockets", type=int, default=1000, help=sockets_help)
    p.add_argument("-o", "--oneshot", action="store_true", help="oneshot, do not reopen socket")
    p.add_argument("-c", "--connected", action="store_true", help="use connected sockets")
    p.add_argument("-i", "--icmp", type=int, default=0, metavar="PCT",
                   help="percentage of packets replaced by ICMP unreachable (IPv4, needs root)")
    p.add_argument("-p", "--payload", type=int, default=None, metavar="BYTES",
                   help="send random sized payload up to this many bytes")
    p.add_argument("-s", "--statistics", action="store_true", help="print statistics every second")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging on the console")
    p.add_argument("--log-level", default=None, help="Optional console override: DEBUG/INFO/WARNING/ERROR")


def build_client_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="udpstress-client", description="Open many short lived UDP exchanges against a server")
    _add_common(p, "number of simultaneously connected sockets (1000)")
    p.add_argument("-r", "--resend", type=float, default=10.0, help="maximum resend timeout for the query in seconds (10)")
    p.add_argument("-w", "--wait", type=float, default=30.0, help="maximum wait timeout for the response in seconds (30)")
    p.add_argument("-a", "--again", type=int, default=0, metavar="PCT",
                   help="percentage of responses that trigger another request instead of closing")
    p.add_argument("host")
    p.add_argument("port")
    return p


def build_server_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="udpstress-server", description="Answer UDP requests after a random delay")
    _add_common(p, "maximum number of simultaneously pending replies (1000)")
    p.add_argument("-b", "--bind", default=None, help="bind address")
    p.add_argument("-r", "--reply", type=float, default=10.0, help="maximum reply delay in seconds (10)")
    p.add_argument("--peer", nargs=2, default=None, metavar=("HOST", "PORT"),
                   help="connect listening sockets to this foreign address")
    p.add_argument("port")
    return p


def _file_value(a: argparse.Action, key: str, v: Any) -> Any:
    """Check and convert one config file value the way the option would be."""
    if a.dest == "family":
        return v  # checked by _family()
    if isinstance(a, argparse._StoreTrueAction):
        if not isinstance(v, bool):
            raise ConfigError(f"config key {key!r} must be true or false, got {v!r}")
        return v
    if v is None:
        return v
    if a.nargs == 2:
        if not isinstance(v, list) or len(v) != 2:
            raise ConfigError(f"config key {key!r} must be a list of two values, got {v!r}")
        return [str(x) for x in v]
    if isinstance(v, bool) or not isinstance(v, (int, float, str)):
        raise ConfigError(f"config key {key!r} has invalid value {v!r}")
    if a.type is None:
        return v
    try:
        return a.type(str(v))
    except ValueError:
        raise ConfigError(f"config key {key!r} has invalid value {v!r}") from None


def _apply_file_defaults(p: argparse.ArgumentParser, argv: Optional[Sequence[str]]) -> Dict[str, Any]:
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", default=None)
    known, _rest = pre.parse_known_args(argv)
    if not known.config:
        return {}
    raw = load_config(known.config)
    actions = {a.dest: a for a in p._actions if a.dest not in ("help", "config")}
    defaults = {}
    for k, v in raw.items():
        key = str(k).replace("-", "_")
        if key == "logging":
            continue
        if key not in actions:
            raise ConfigError(f"unknown config key {k!r} in {known.config}")
        defaults[key] = _file_value(actions[key], k, v)
    p.set_defaults(**defaults)
    # positionals given in the file become optional on the command line
    for a in p._actions:
        if not a.option_strings and a.dest in defaults:
            a.nargs = "?"
            a.required = False
    return raw


def _family(v: Any) -> int:
    try:
        return _FAMILIES[v if v is None else int(v)]
    except (KeyError, TypeError, ValueError):
        raise ConfigError(f"address family must be 4 or 6, got {v!r}") from None


def _common_kwargs(ns: argparse.Namespace, raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "family": _family(ns.family),
        "sockets": ns.sockets,
        "oneshot": bool(ns.oneshot),
        "connected": bool(ns.connected),
        "icmp": ns.icmp,
        "payload": ns.payload,
        "statistics": bool(ns.statistics),
        "verbose": bool(ns.verbose),
        "log_level": ns.log_level,
        "raw": raw,
    }


def parse_client_args(argv: Optional[Sequence[str]] = None) -> ClientConfig:
    p = build_client_argparser()
    try:
        raw = _apply_file_defaults(p, argv)
        ns = p.parse_args(argv)
        cfg = ClientConfig(
            host=ns.host or "",
            port=str(ns.port or ""),
            resend=ns.resend,
            wait=ns.wait,
            again=ns.again,
            **_common_kwargs(ns, raw),
        )
        return validate_client(cfg)
    except ConfigError as e:
        p.error(str(e))


def parse_server_args(argv: Optional[Sequence[str]] = None) -> ServerConfig:
    p = build_server_argparser()
    try:
        raw = _apply_file_defaults(p, argv)
        ns = p.parse_args(argv)
        peer: Optional[List[str]] = ns.peer
        cfg = ServerConfig(
            port=str(ns.port or ""),
            bind=ns.bind,
            reply=ns.reply,
            peer=(str(peer[0]), str(peer[1])) if peer else None,
            **_common_kwargs(ns, raw),
        )
        return validate_server(cfg)
    except ConfigError as e:
        p.error(str(e))
