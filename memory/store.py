import json
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from core.file_tools import atomic_write_text
from core.logging_utils import log_json


@runtime_checkable
class PersistenceStore(Protocol):
    """Key/value persistence for memory snapshots. Values are JSON-compatible."""

    def save(self, key: str, value: Any) -> None:
        ...

    def load(self, key: str) -> Optional[Any]:
        ...


class JsonFileStore:
    """One ``<key>.json`` file per key under *root*, written atomically."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _key_path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in key)
        return self.root / f"{safe}.json"

    def save(self, key: str, value: Any) -> None:
        atomic_write_text(self._key_path(key), json.dumps(value, indent=2, default=str))

    def load(self, key: str) -> Optional[Any]:
        path = self._key_path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            log_json("WARN", "memory_snapshot_unreadable", details={"path": str(path), "error": str(e)})
            return None


class InMemoryStore:
    def __init__(self):
        self.data: Dict[str, Any] = {}

    def save(self, key: str, value: Any) -> None:
        # Round-trip through JSON so callers get the same isolation as on disk.
        self.data[key] = json.loads(json.dumps(value, default=str))

    def load(self, key: str) -> Optional[Any]:
        return self.data.get(key)
