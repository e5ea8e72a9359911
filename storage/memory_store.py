"""In-process implementation of the enrichment store.

Used by the test suite and for dry runs. Mirrors the Postgres schema's
upsert semantics: conflict columns are matched with NULL treated as a
regular value, and columns missing from a record keep their stored value.
"""

import copy
import threading
import uuid
from typing import Any, Optional

from storage.base import ENRICHABLE_TABLES, TABLE_KEYS


def _sort_key(row: dict[str, Any]) -> tuple:
    github_id = row.get("github_id")
    return (row.get("enrichment_attempts") or 0, github_id is None, github_id if github_id is not None else 0)


class MemoryStore:
    """Thread-safe dict-backed store keyed like the Postgres tables."""

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {name: [] for name in TABLE_KEYS}
        self._lock = threading.Lock()

    def _rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def _find(self, table: str, columns: list[str], record: dict[str, Any]) -> Optional[dict[str, Any]]:
        for row in self._rows(table):
            if all(row.get(col) == record.get(col) for col in columns):
                return row
        return None

    def fetch_unenriched(
        self,
        table: str,
        limit: int,
        offset: int = 0,
        max_attempts: int = 3,
    ) -> list[dict[str, Any]]:
        with self._lock:
            pending = [
                row for row in self._rows(table)
                if not row.get("is_enriched") and (row.get("enrichment_attempts") or 0) < max_attempts
            ]
            pending.sort(key=_sort_key)
            return copy.deepcopy(pending[offset:offset + limit])

    def get(self, table: str, column: str, value: Any) -> Optional[dict[str, Any]]:
        with self._lock:
            for row in self._rows(table):
                if row.get(column) == value:
                    return copy.deepcopy(row)
        return None

    def update(self, table: str, key_column: str, key_value: Any, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        with self._lock:
            for row in self._rows(table):
                if row.get(key_column) == key_value:
                    row.update(copy.deepcopy(fields))
                    return copy.deepcopy(row)
        return None

    def upsert(self, table: str, record: dict[str, Any], on_conflict: Optional[str] = None) -> dict[str, Any]:
        columns = [c.strip() for c in (on_conflict or TABLE_KEYS.get(table, "id")).split(",")]
        with self._lock:
            existing = self._find(table, columns, record)
            if existing is not None:
                existing.update(copy.deepcopy(record))
                return copy.deepcopy(existing)

            row = copy.deepcopy(record)
            row.setdefault("id", str(uuid.uuid4()))
            if table in ENRICHABLE_TABLES:
                row.setdefault("is_enriched", False)
                row.setdefault("enrichment_attempts", 0)
            self._rows(table).append(row)
            return copy.deepcopy(row)

    def insert(self, table: str, record: dict[str, Any]) -> dict[str, Any]:
        """Seed a row directly (ingestion stand-in)."""
        return self.upsert(table, record, on_conflict="id")

    def all(self, table: str) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._rows(table))

    def get_enrichment_stats(self, table: str) -> dict[str, int]:
        with self._lock:
            rows = self._rows(table)
            enriched = sum(1 for row in rows if row.get("is_enriched"))
            return {"total": len(rows), "enriched": enriched, "pending": len(rows) - enriched}
