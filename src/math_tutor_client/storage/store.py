"""Key-value store port and its implementations (JSON + fcntl.flock + atomic write)."""

import fcntl
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol


class KeyValueStore(Protocol):
    """String-valued key-value store shared by every component.

    Read-modify-write sequences across calls are not atomic.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store, used for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """All keys kept in a single JSON object on disk.

    Args:
        path: Location of the JSON file; parent directories are created.
    """

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock_path = self.path.with_name(self.path.name + ".lock")

    def _load(self) -> dict[str, str]:
        # Caller holds the lock file.
        if not self.path.exists():
            return {}
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _read(self) -> dict[str, str]:
        with open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_SH)
            return self._load()

    def _update(self, key: str, value: str | None) -> None:
        with open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            data = self._load()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            with tempfile.NamedTemporaryFile(
                "w", dir=self.path.parent, delete=False, suffix=".json", encoding="utf-8"
            ) as tmp:
                json.dump(data, tmp)
            os.replace(tmp.name, self.path)

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        self._update(key, value)

    def delete(self, key: str) -> None:
        self._update(key, None)
