"""Durable local key/value storage for drafts and the list cache."""

from __future__ import annotations

import copy
import os
import tempfile
from pathlib import Path
from typing import Any, Dict
from urllib.parse import quote, unquote

from tpsync.canonical_json import canonical_dumps, canonical_loads


class KeyValueError(RuntimeError):
    pass


class MemoryKeyValueStore:
    def __init__(self) -> None:
        self._items: Dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        value = self._items.get(key)
        return copy.deepcopy(value) if value is not None else None

    def set(self, key: str, value: Any) -> None:
        # serialize once so unsupported values fail the same way as on disk
        self._items[key] = canonical_loads(canonical_dumps(value))

    def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._items if k.startswith(prefix))


class FileKeyValueStore:
    """One JSON file per key under ``root``.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace`` so a crash never leaves a half-written value.
    """

    _SUFFIX = ".json"

    def __init__(self, root: str | os.PathLike) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        if not key:
            raise KeyValueError("key must be non-empty")
        return self._root / f"{quote(key, safe='')}{self._SUFFIX}"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return canonical_loads(path.read_bytes())
        except (OSError, ValueError) as exc:
            raise KeyValueError(f"unreadable value for {key}: {exc}") from exc

    def set(self, key: str, value: Any) -> None:
        data = canonical_dumps(value).encode("utf-8")
        self._root.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-", suffix=self._SUFFIX)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self, prefix: str = "") -> list[str]:
        if not self._root.exists():
            return []
        found = []
        for path in self._root.glob(f"*{self._SUFFIX}"):
            if path.name.startswith(".tmp-"):
                continue
            key = unquote(path.name[: -len(self._SUFFIX)])
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)
