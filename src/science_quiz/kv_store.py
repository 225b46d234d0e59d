"""Key-value stores shared by quiz sessions.

The set tracker only needs a synchronous, string-keyed store of
JSON-serialisable values. No atomicity is assumed: callers do plain
read-modify-write and tolerate lost updates.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class KVStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKVStore:
    """In-process store. Values round-trip through JSON like the file store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKVStore:
    """JSON file-based store, one file per key.

    Keys may contain characters that are unsafe in file names (grades such
    as "Grade 9"), so files are named by a hash and carry the key inside.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self.directory / f"{digest}.json"

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable state file %s: %s", path, e)
            return None
        if not isinstance(data, dict) or "key" not in data:
            logger.warning("Malformed state file %s", path)
            return None
        return data

    def get(self, key: str, default: Any = None) -> Any:
        data = self._read(self._path(key))
        if data is None:
            return default
        return data.get("value", default)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        path.write_text(
            json.dumps({"key": key, "value": value}, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
