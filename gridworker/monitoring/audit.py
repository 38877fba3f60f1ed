"""
Append-only JSONL audit trail of exchange calls.

One line per request attempt. Secrets never reach this file: the caller
passes the masked API key and only the body's field names are recorded.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from gridworker.core.json_utils import dumps, loads

log = logging.getLogger("gridworker")


class AuditLog:
    def __init__(self, path: str, max_bytes: int = 50 * 1024 * 1024) -> None:
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, entry: Dict[str, Any]) -> None:
        record = {"ts_ms": int(time.time() * 1000), **entry}
        line = dumps(record) + "\n"
        with self._lock:
            self._rotate_if_needed()
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line)

    async def append_async(self, entry: Dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.append, entry)

    def tail(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Return the newest `limit` entries, newest first."""
        if not self.path.exists():
            return []
        with self._lock:
            with self.path.open("r", encoding="utf-8") as fh:
                lines = fh.readlines()
        out: List[Dict[str, Any]] = []
        for raw in reversed(lines):
            raw = raw.strip()
            if not raw:
                continue
            try:
                out.append(loads(raw))
            except ValueError:
                continue
            if len(out) >= limit:
                break
        return out

    def _rotate_if_needed(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size < self.max_bytes:
            return
        rotated = self.path.with_suffix(self.path.suffix + ".1")
        os.replace(self.path, rotated)
        log.info(dumps({"event": "audit_log_rotated", "path": str(rotated), "bytes": size}))


def mask_key(api_key: Optional[str]) -> Optional[str]:
    if not api_key:
        return None
    if len(api_key) <= 8:
        return "****"
    return f"{api_key[:4]}****{api_key[-4:]}"
