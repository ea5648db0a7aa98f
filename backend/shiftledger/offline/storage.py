# Overview: Device-local key/value storage persisted as one JSON document.

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


class LocalStorageError(Exception):
    """Raised when the local store cannot be read or written."""
    pass


class JsonFileStorage:
    """
    Small key/value store backed by a single JSON file.

    Every write rewrites the file through a temp file and os.replace, so a
    crash leaves either the old or the new document on disk, never a torn one.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._data = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise LocalStorageError(f"Local store {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise LocalStorageError(f"Local store {self.path} must hold a JSON object")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data)

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
