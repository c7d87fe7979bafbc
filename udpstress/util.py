"""
Small helpers shared by the client and the server.

- microsecond timer draws
- json-ish config loader (unquoted keys, comments, trailing commas)
- logging setup (handlers gate output)
- error types and privilege drop
"""

from __future__ import annotations

import json
import logging
import os
import random
import re
import socket
from typing import Any, Dict, Optional, Tuple

USEC = 1_000_000


class FatalError(Exception):
    """Unrecoverable failure; terminates the process with a diagnostic."""


class ConfigError(ValueError):
    """Invalid configuration; the process exits with status 2."""


# =============================================================================
# Small utilities
# =============================================================================

def to_usec(seconds: float) -> int:
    return max(1, int(round(float(seconds) * USEC)))


def draw_usec(bound_usec: int, rng: Optional[random.Random] = None) -> int:
    """Uniform draw from (0, bound_usec]."""
    r = rng or random
    return r.randint(1, bound_usec)


def roll_percent(percentage: int, rng: Optional[random.Random] = None) -> bool:
    if percentage <= 0:
        return False
    if percentage >= 100:
        return True
    r = rng or random
    return r.randrange(100) < percentage


def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    return getattr(logging, name, default)


def format_sockaddr(sa: Tuple[Any, ...]) -> Tuple[str, str]:
    host, service = socket.getnameinfo(sa, socket.NI_NUMERICHOST | socket.NI_NUMERICSERV)
    return host, service


# =============================================================================
# "json-ish" loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)

    def _repl(m: re.Match) -> str:
        prefix, key, suffix = m.group(1), m.group(2), m.group(3)
        return f'{prefix}"{key}"{suffix}:'

    text = _KEY_RE.sub(_repl, text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text


def load_config(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e.strerror}") from e
    try:
        cfg = json.loads(raw)
    except ValueError:
        norm = _jsonish_to_json(raw)
        try:
            cfg = json.loads(norm)
        except ValueError as e:
            raise ConfigError(f"config parse error for {path}:\n{e}\n\nNormalized text:\n{norm}") from e
    if not isinstance(cfg, dict):
        raise ConfigError(f"config {path} must hold an object at top level")
    return cfg


# =============================================================================
# Logging
# =============================================================================

def setup_logging(cfg: Dict[str, Any], verbose: bool = False, cli_level: Optional[str] = None) -> logging.Logger:
    log = logging.getLogger("udpstress")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = get_path(cfg, "logging", {}) or {}

    console_cfg = lc.get("console", {}) or {}
    file_cfg = lc.get("file", {}) or {}

    console_level = parse_level(console_cfg.get("verbosity"), logging.INFO)
    if verbose:
        console_level = logging.DEBUG
    if cli_level:
        console_level = parse_level(cli_level, console_level)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(ch)

    if bool(file_cfg.get("enabled", False)):
        path = str(file_cfg.get("path", "udpstress.log"))
        file_level = parse_level(file_cfg.get("verbosity"), logging.INFO)
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        log.addHandler(fh)

    return log


# =============================================================================
# Privilege drop
# =============================================================================

def _sudo_id(name: str) -> Optional[int]:
    v = os.environ.get(name)
    if v is None:
        return None
    try:
        iv = int(v)
    except ValueError:
        raise FatalError(f"{name} is invalid: {v}") from None
    if iv < 1:
        raise FatalError(f"{name} is too small: {v}")
    return iv


def drop_privileges(log: logging.Logger) -> None:
    """Switch to the invoking sudo user once sockets are bound."""
    if os.geteuid() != 0:
        return
    gid = _sudo_id("SUDO_GID")
    if gid is not None:
        try:
            os.setgid(gid)
        except OSError as e:
            raise FatalError(f"setgid {gid}: {e.strerror}") from e
    uid = _sudo_id("SUDO_UID")
    if uid is not None:
        try:
            os.setuid(uid)
        except OSError as e:
            raise FatalError(f"setuid {uid}: {e.strerror}") from e
    log.info("privileges dropped uid=%s gid=%s", uid, gid)
