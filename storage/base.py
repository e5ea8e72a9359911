"""Persistence contract consumed by the enrichers."""

from typing import Any, Optional, Protocol

# Upsert conflict keys per table
TABLE_KEYS = {
    "repositories": "id",
    "contributors": "github_id",
    "merge_requests": "id",
    "commits": "github_id,repository_id,filename",
}

ENRICHABLE_TABLES = ("repositories", "contributors", "merge_requests")


class EnrichmentStore(Protocol):
    """Key/value upsert store with a paged "needs enrichment" query.

    Implementations must make ``upsert`` and ``update`` atomic per row. No
    cross-row transactions are assumed.
    """

    def fetch_unenriched(
        self,
        table: str,
        limit: int,
        offset: int = 0,
        max_attempts: int = 3,
    ) -> list[dict[str, Any]]:
        """Rows with ``is_enriched = false`` and ``enrichment_attempts < max_attempts``,
        ordered by ``(enrichment_attempts ASC, github_id ASC)``."""
        ...

    def get(self, table: str, column: str, value: Any) -> Optional[dict[str, Any]]:
        ...

    def update(self, table: str, key_column: str, key_value: Any, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Update fields of an existing row. Returns the row, or None if absent."""
        ...

    def upsert(self, table: str, record: dict[str, Any], on_conflict: Optional[str] = None) -> dict[str, Any]:
        """Insert ``record`` or merge it into the row matching ``on_conflict``.

        Columns missing from ``record`` keep their stored values.
        """
        ...

    def get_enrichment_stats(self, table: str) -> dict[str, int]:
        ...
