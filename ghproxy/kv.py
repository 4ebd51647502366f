# SPDX-License-Identifier: GPL-3.0-or-later
#
# Copyright (C) 2025 Mark Sholund
#
# This file is part of the ghproxy project.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

from pathlib import Path
from typing import Optional, Protocol, runtime_checkable
import hashlib
import json
import logging
import os
import time
import uuid

import aiofiles

import ghproxy.config as config
from ghproxy.validators import safe_join_path

logger = logging.getLogger("uvicorn")


@runtime_checkable
class KVStore(Protocol):
    """Narrow key-value contract shared by the rule store and auth records."""

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def list(self, prefix: str = "", limit: int = 1000, cursor: str = "") -> dict: ...

    async def delete(self, key: str) -> None: ...


def _page(keys: list[str], limit: int, cursor: str) -> dict:
    try:
        start = int(cursor) if cursor else 0
    except ValueError:
        start = 0
    limit = max(1, limit)
    page = keys[start:start + limit]
    end = start + len(page)
    complete = end >= len(keys)
    return {"keys": page, "cursor": "" if complete else str(end), "complete": complete}


class MemoryKVStore:
    """Per-process store with TTL expiry. Suitable for tests and single workers."""

    def __init__(self):
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and time.time() >= expires:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires = time.time() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires)

    async def list(self, prefix: str = "", limit: int = 1000, cursor: str = "") -> dict:
        keys = sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)
        return _page(keys, limit, cursor)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileKVStore:
    """
    Directory backed store: one JSON envelope per key.

    File names are the sha256 of the key, so any key maps to a bounded
    name inside root; the key itself is kept in the envelope. Writes go
    to a temp file in the same directory and are moved into place with
    os.replace(), so readers never see partial records.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return safe_join_path(self.root, digest + ".json")

    async def _read(self, path: Path) -> Optional[dict]:
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        try:
            envelope = json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt kv record: %s", path)
            return None
        if not isinstance(envelope, dict):
            logger.warning("Ignoring malformed kv record: %s", path)
            return None
        expires = envelope.get("expires")
        if expires is not None and time.time() >= expires:
            return None
        return envelope

    async def get(self, key: str) -> Optional[str]:
        envelope = await self._read(self._path(key))
        if envelope is None or envelope.get("key") != key:
            return None
        return envelope.get("value")

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        dest = self._path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        envelope = {
            "key": key,
            "value": value,
            "expires": time.time() + ttl_seconds if ttl_seconds else None,
        }
        tmpname = dest.parent / f".{dest.name}.{uuid.uuid4().hex}.tmp"
        try:
            async with aiofiles.open(tmpname, "w", encoding="utf-8") as f:
                await f.write(json.dumps(envelope))
                await f.flush()
            os.replace(tmpname, dest)
        finally:
            if tmpname.exists():
                tmpname.unlink()

    async def list(self, prefix: str = "", limit: int = 1000, cursor: str = "") -> dict:
        if not self.root.exists():
            return {"keys": [], "cursor": "", "complete": True}
        keys = []
        for name in os.listdir(self.root):
            if name.startswith(".") or not name.endswith(".json"):
                continue
            envelope = await self._read(self.root / name)
            key = (envelope or {}).get("key")
            if isinstance(key, str) and key.startswith(prefix):
                keys.append(key)
        return _page(sorted(keys), limit, cursor)

    async def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


def is_kv_store(store) -> bool:
    return store is not None and all(
        callable(getattr(store, name, None)) for name in ("get", "put", "list")
    )


def normalize_kv_keys(list_res) -> list[str]:
    """Key names from a list() page; tolerates {name}/{key} entry objects."""
    raw = (list_res or {}).get("keys") or (list_res or {}).get("objects") or []
    keys = []
    for k in raw:
        if isinstance(k, str):
            name = k
        elif isinstance(k, dict):
            name = k.get("name") or k.get("key") or k.get("id") or ""
        else:
            name = ""
        if name:
            keys.append(name)
    return keys


def build_store(namespace: str, backend: Optional[str] = None):
    """Store for one namespace according to KV_BACKEND (file, memory, none)."""
    backend = (backend if backend is not None else config.KV_BACKEND) or "none"
    if backend == "none":
        return None
    if backend == "memory":
        return MemoryKVStore()
    if backend == "file":
        return FileKVStore(config.DATA_DIR / "kv" / namespace)
    raise config.ConfigurationError(f"Unknown KV_BACKEND: {backend}")
