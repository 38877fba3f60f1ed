"""
Infrastructure package.

Logging configuration and process-wide networking setup.
"""

from gridworker.infra.logging_cfg import build_logger, log_event, JsonFormatter, ThrottledFilter
from gridworker.infra.net import ensure_ipv4_preferred, ipv4_preferred

__all__ = [
    "build_logger",
    "log_event",
    "JsonFormatter",
    "ThrottledFilter",
    "ensure_ipv4_preferred",
    "ipv4_preferred",
]
