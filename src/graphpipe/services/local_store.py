"""Local record stores backing the entity services."""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from ..core.models import EntityType


class LocalStore(Protocol):
    """Persistence seam: replace or fetch every cached record of one type."""

    def fetch(self, entity_type: EntityType | str) -> List[Any]: ...

    def replace(self, entity_type: EntityType | str, items: Sequence[Any]) -> None: ...

    def reset(self) -> None: ...


class MemoryStore:
    """Process-local store; records are kept as given."""

    def __init__(self) -> None:
        self._records: Dict[str, List[Any]] = {}
        self._lock = threading.Lock()

    def fetch(self, entity_type: EntityType | str) -> List[Any]:
        with self._lock:
            return list(self._records.get(_key(entity_type), []))

    def replace(self, entity_type: EntityType | str, items: Sequence[Any]) -> None:
        with self._lock:
            self._records[_key(entity_type)] = list(items)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class SQLiteStore:
    """SQLite-backed store holding one JSON document per record.

    ``fetch`` returns plain dicts unless a decoder is registered for the
    entity type, in which case each row is passed through it.
    """

    def __init__(
        self,
        path: Path | str,
        decoders: Optional[Dict[str, Callable[[Dict[str, Any]], Any]]] = None,
    ) -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(self._path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._decoders = {_key(k): v for k, v in (decoders or {}).items()}
        self._lock = threading.Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    entity_type TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    PRIMARY KEY (entity_type, position)
                )
                """
            )

    def register_decoder(self, entity_type: EntityType | str, decoder: Callable[[Dict[str, Any]], Any]) -> None:
        self._decoders[_key(entity_type)] = decoder

    def close(self) -> None:
        self._connection.close()

    def fetch(self, entity_type: EntityType | str) -> List[Any]:
        key = _key(entity_type)
        with self._lock:
            cursor = self._connection.execute(
                "SELECT payload FROM records WHERE entity_type = ? ORDER BY position",
                (key,),
            )
            rows = cursor.fetchall()
        decoder = self._decoders.get(key)
        items = [json.loads(row["payload"]) for row in rows]
        if decoder is None:
            return items
        return [decoder(item) for item in items]

    def replace(self, entity_type: EntityType | str, items: Sequence[Any]) -> None:
        key = _key(entity_type)
        timestamp = datetime.now(timezone.utc).isoformat()
        rows = [
            (key, position, json.dumps(_to_record(item), default=_json_default), timestamp)
            for position, item in enumerate(items)
        ]
        with self._lock, self._connection:
            self._connection.execute("DELETE FROM records WHERE entity_type = ?", (key,))
            self._connection.executemany(
                "INSERT INTO records (entity_type, position, payload, stored_at) VALUES (?, ?, ?, ?)",
                rows,
            )

    def reset(self) -> None:
        with self._lock, self._connection:
            self._connection.execute("DELETE FROM records")


def _key(entity_type: EntityType | str) -> str:
    if isinstance(entity_type, EntityType):
        return entity_type.value
    return str(entity_type)


def _to_record(item: Any) -> Any:
    if is_dataclass(item) and not isinstance(item, type):
        return asdict(item)
    return item


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
