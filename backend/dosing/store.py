"""
store.py — Key-value persistence with a byte quota
===================================================
The history, result cache and quota manager only see the KeyValueStore
interface. Values are JSON strings; `size_of` counts key + value bytes so
the capacity behaves like a browser storage quota.

  InMemoryStore   dict-backed, optional capacity (tests, server-side runs)
  JsonFileStore   InMemoryStore mirrored to a JSON file under CACHE_DIR
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StorageQuotaExceeded
from .settings import DEFAULT_STORE_CAPACITY, STORE_FILE

logger = logging.getLogger(__name__)


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class KeyValueStore(ABC):

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Raises StorageQuotaExceeded when the write does not fit."""

    @abstractmethod
    def remove(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def size_of(self, key: str) -> int:
        value = self.get(key)
        return 0 if value is None else _entry_size(key, value)

    def total_size(self) -> int:
        return sum(self.size_of(k) for k in self.keys())

    def get_json(self, key: str, default: Any = None) -> Any:
        """Decoded JSON value, or `default` when missing or unparsable."""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️  Corrupt entry '{key}': {e}")
            return default

    def set_json(self, key: str, obj: Any) -> None:
        self.set(key, json.dumps(obj, ensure_ascii=False))


class InMemoryStore(KeyValueStore):

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.capacity is not None:
            needed = _entry_size(key, value)
            used = self.total_size() - self.size_of(key)
            if used + needed > self.capacity:
                raise StorageQuotaExceeded(key, needed, max(0, self.capacity - used))
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)


class JsonFileStore(InMemoryStore):

    def __init__(self, path: Path = STORE_FILE, capacity: Optional[int] = DEFAULT_STORE_CAPACITY):
        super().__init__(capacity=capacity)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            try:
                with open(self.path) as f:
                    loaded = json.load(f)
                self._data = {str(k): str(v) for k, v in loaded.items()}
                logger.info(f"✅ Loaded {len(self._data)} stored keys from {self.path}")
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning(f"⚠️  Store file unreadable, starting empty: {e}")
                self._data = {}

    def _flush(self) -> None:
        with open(self.path, "w") as f:
            json.dump(self._data, f, ensure_ascii=False)

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._flush()

    def remove(self, key: str) -> None:
        super().remove(key)
        self._flush()
