"""Shared key-value store used by every surface.

Values must be JSON-compatible. There are no transactions: two writers to the
same key race and the last write wins.
"""

import copy
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

from common.jsonio import atomic_write_json, read_json
from pagechat.errors import StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any: ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None: ...

    @abstractmethod
    def remove(self, *keys: str) -> None: ...

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]: ...

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        missing = object()
        out: dict[str, Any] = {}
        for key in keys:
            value = self.get(key, missing)
            if value is not missing:
                out[key] = value
        return out

    def set_many(self, items: dict[str, Any]) -> None:
        for key, value in items.items():
            self.set(key, value)

    def contains(self, key: str) -> bool:
        missing = object()
        return self.get(key, missing) is not missing


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not JSON serializable: {e}") from e
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def remove(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class FileKeyValueStore(KeyValueStore):
    """One JSON file per key; file names are hashes, the key is stored alongside the value."""

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create store directory {self.data_dir}: {e}") from e
        logger.debug(f"Key-value store at {self.data_dir}")

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.data_dir / f"{digest}.json"

    def _read(self, path: Path) -> dict | None:
        try:
            record = read_json(path)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt store entry {path.name}: {e}") from e
        except OSError as e:
            raise StorageError(f"Cannot read store entry {path.name}: {e}") from e
        if not isinstance(record, dict) or "key" not in record:
            raise StorageError(f"Malformed store entry {path.name}")
        return record

    def get(self, key: str, default: Any = None) -> Any:
        record = self._read(self._path(key))
        if record is None or record["key"] != key:
            return default
        return record.get("value")

    def set(self, key: str, value: Any) -> None:
        try:
            atomic_write_json(self._path(key), {"key": key, "value": value})
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not JSON serializable: {e}") from e
        except OSError as e:
            raise StorageError(f"Cannot write {key}: {e}") from e

    def remove(self, *keys: str) -> None:
        for key in keys:
            try:
                self._path(key).unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot remove {key}: {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        out: list[str] = []
        for path in self.data_dir.glob("*.json"):
            record = self._read(path)
            if record is not None and str(record["key"]).startswith(prefix):
                out.append(record["key"])
        return sorted(out)
