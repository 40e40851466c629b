import re
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class KeyValueStore(Protocol):
    """Durable key-value storage port used by the timer and the stats store."""

    def load(self, key: str) -> Optional[bytes]: ...

    def save(self, key: str, data: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class FileStore:
    """Stores each key as one file under ``root``.

    Writes go through a temp file and a rename so a crash mid-write never
    leaves a truncated value behind.
    """

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def load(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def save(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        logger.trace("Saved {} ({} bytes)", key, len(data))

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
            logger.debug("Deleted stored key {}", key)


class MemoryStore:
    """In-process store (tests, or hosts that don't need durability)."""

    def __init__(self):
        self._data: dict[str, bytes] = {}

    def load(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    def save(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)
