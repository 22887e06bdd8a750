import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("ramro.cache")

CART_CACHE_KEY = "ramro-cart-storage"
WISHLIST_CACHE_KEY = "ramro-wishlist-storage"
ADDRESS_CACHE_KEY = "ramro-address-storage"


def user_cache_key(prefix: str, user_id: str) -> str:
    return f"{prefix}:{user_id}"


class LocalCache(ABC):
    """Synchronous key-value cache used for instant re-display. Never authoritative."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any):
        ...

    @abstractmethod
    def remove(self, key: str):
        ...


class MemoryCache(LocalCache):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any):
        self._data[key] = json.dumps(value)

    def remove(self, key: str):
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class FileCache(LocalCache):
    """One JSON file per key under ``directory``; survives process restarts."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / (re.sub(r"[^A-Za-z0-9_.-]", "_", key) + ".json")

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache entry %s: %s", key, exc)
            return None

    def set(self, key: str, value: Any):
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(value), encoding="utf-8")
        tmp.replace(path)

    def remove(self, key: str):
        self._path(key).unlink(missing_ok=True)
