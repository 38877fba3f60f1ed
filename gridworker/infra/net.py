"""
Process-wide IPv4 preference.

The exchange authorises API keys by source IP. Hosts with both IPv4 and IPv6
egress can flip between addresses and get spurious auth rejections, so the
worker resolves hostnames to IPv4 only. Applied once at startup.
"""

from __future__ import annotations

import logging
import socket
from typing import Any, Callable, Optional

from gridworker.infra.logging_cfg import log_event

log = logging.getLogger("gridworker")

IPV4_LOCAL_ADDRESS = "0.0.0.0"

_original_getaddrinfo: Optional[Callable[..., Any]] = None


def _ipv4_getaddrinfo(host, port, family=0, type=0, proto=0, flags=0):
    if family in (0, socket.AF_UNSPEC):
        family = socket.AF_INET
    return _original_getaddrinfo(host, port, family, type, proto, flags)


def ensure_ipv4_preferred() -> bool:
    """Force IPv4 name resolution for the whole process. Returns True on first application."""
    global _original_getaddrinfo
    if _original_getaddrinfo is not None:
        return False
    _original_getaddrinfo = socket.getaddrinfo
    socket.getaddrinfo = _ipv4_getaddrinfo
    log_event(log, "ipv4_preferred")
    return True


def ipv4_preferred() -> bool:
    return _original_getaddrinfo is not None


def restore_default_resolution() -> None:
    """Undo ensure_ipv4_preferred (tests only)."""
    global _original_getaddrinfo
    if _original_getaddrinfo is None:
        return
    socket.getaddrinfo = _original_getaddrinfo
    _original_getaddrinfo = None
