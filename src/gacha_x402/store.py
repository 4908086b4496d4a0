"""Key/value store abstraction injected into the gateway and the client."""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)


class Store(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def items(self) -> Iterator[Tuple[str, Any]]:
        ...

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def set_if_absent(self, key: str, value: Any) -> bool:
        """Store ``value`` unless ``key`` exists. Returns True when stored."""
        if self.get(key) is not None:
            return False
        self.set(key, value)
        return True


class InMemoryStore(Store):
    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Any]]:
        with self._lock:
            snapshot = list(self._data.items())
        return iter(snapshot)

    def set_if_absent(self, key: str, value: Any) -> bool:
        with self._lock:
            if self._data.get(key) is not None:
                return False
            self._data[key] = value
            return True


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to a flat JSON file on every write."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Unable to load store file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise RuntimeError(f"Store file {self.path} must contain a JSON object")
        logger.info("loaded %d entries from %s", len(data), self.path)
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._flush()

    def set_if_absent(self, key: str, value: Any) -> bool:
        with self._lock:
            if self._data.get(key) is not None:
                return False
            self._data[key] = value
            self._flush()
            return True
