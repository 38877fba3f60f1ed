"""
Fast JSON utilities for log lines, audit rows and persisted records.

Usage:
    from gridworker.core.json_utils import dumps, loads

    log.info(dumps({"event": "order_placed", "px": 100.0}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Compact JSON encode to string."""
    return orjson.dumps(obj, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def dumps_pretty(obj: Any) -> str:
    """Indented JSON for files a human may open."""
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS).decode("utf-8")


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)
