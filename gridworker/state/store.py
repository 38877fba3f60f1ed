"""
Key-value persistence for configs, bot state, stop flags and feeds.

Keys are slash-separated ("bots/alice@example.com"). JsonFileStore maps each
key to one JSON file under the data dir and writes via tmp file + replace so
a crash mid-write never leaves a torn record. `update` is atomic per key
within the process.
"""

from __future__ import annotations

import abc
import asyncio
import copy
import os
import re
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from gridworker.core.errors import PersistenceError
from gridworker.core.json_utils import dumps_pretty, loads

_UNSAFE = re.compile(r"[^A-Za-z0-9@._+-]")


class KeyValueStore(abc.ABC):
    @abc.abstractmethod
    async def read(self, key: str, default: Any = None) -> Any:
        ...

    @abc.abstractmethod
    async def write(self, key: str, value: Any) -> None:
        ...

    @abc.abstractmethod
    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """Read-modify-write under the key's lock. Returns the new value."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def keys(self, prefix: str) -> List[str]:
        ...


class MemoryStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def read(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[key])

    async def write(self, key: str, value: Any) -> None:
        async with self._locks[key]:
            self._data[key] = copy.deepcopy(value)

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        async with self._locks[key]:
            current = copy.deepcopy(self._data.get(key, default))
            new = fn(current)
            self._data[key] = copy.deepcopy(new)
            return copy.deepcopy(new)

    async def delete(self, key: str) -> None:
        async with self._locks[key]:
            self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class JsonFileStore(KeyValueStore):
    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _path(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts:
            raise PersistenceError(f"invalid key {key!r}")
        safe = [_UNSAFE.sub("_", p) for p in parts]
        if any(p in (".", "..") for p in safe):
            raise PersistenceError(f"invalid key {key!r}")
        return self.root.joinpath(*safe[:-1], safe[-1] + ".json")

    def _key_for(self, path: Path) -> str:
        rel = path.relative_to(self.root).with_suffix("")
        return "/".join(rel.parts)

    def _load(self, key: str, default: Any) -> Any:
        path = self._path(key)
        if not path.exists():
            return copy.deepcopy(default)
        try:
            return loads(path.read_bytes())
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"read {key} failed: {exc}") from exc

    def _save(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(dumps_pretty(value), encoding="utf-8")
            os.replace(tmp, path)
        except (OSError, TypeError) as exc:
            raise PersistenceError(f"write {key} failed: {exc}") from exc

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def read(self, key: str, default: Any = None) -> Any:
        async with self._locks[key]:
            return await self._run(self._load, key, default)

    async def write(self, key: str, value: Any) -> None:
        async with self._locks[key]:
            await self._run(self._save, key, value)

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        async with self._locks[key]:
            current = await self._run(self._load, key, default)
            new = fn(current)
            await self._run(self._save, key, new)
            return new

    async def delete(self, key: str) -> None:
        async with self._locks[key]:
            path = self._path(key)
            try:
                await self._run(lambda: path.unlink(missing_ok=True))
            except OSError as exc:
                raise PersistenceError(f"delete {key} failed: {exc}") from exc

    async def keys(self, prefix: str) -> List[str]:
        def _scan() -> List[str]:
            if not self.root.exists():
                return []
            return sorted(self._key_for(p) for p in self.root.rglob("*.json"))
        found = await self._run(_scan)
        return [k for k in found if k.startswith(prefix)]
