"""
Backends for the month cache. Entries cross this boundary as JSON-ready
dicts and are copied on the way in and out, so a caller mutating what it got
back never changes what is stored.
"""

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

Serialized = dict[str, Any]


class CacheStore(Protocol):
    def put(self, key: str, value: Serialized) -> None: ...

    def get(self, key: str) -> Serialized | None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def clear(self) -> None: ...


class InMemoryStore:
    """
    Process-local store. Values are kept as JSON text.
    """

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}

    def put(self, key: str, value: Serialized) -> None:
        self._entries[key] = json.dumps(value)

    def get(self, key: str) -> Serialized | None:
        raw = self._entries.get(key)
        return None if raw is None else json.loads(raw)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileStore:
    """
    One ``<key>.json`` file per entry, so cached months survive a restart.

    ``get`` raises ``ValueError`` for a file that is not valid JSON.
    """

    suffix = ".json"

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"invalid cache key: {key!r}")
        return self.directory / f"{key}{self.suffix}"

    def put(self, key: str, value: Serialized) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(value), encoding="utf-8")
        tmp.replace(path)

    def get(self, key: str) -> Serialized | None:
        try:
            text = self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return json.loads(text)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob(f"*{self.suffix}"))

    def clear(self) -> None:
        for path in self.directory.glob(f"*{self.suffix}"):
            path.unlink(missing_ok=True)
        logger.debug("cleared cache directory %s", self.directory)
