"""
Supabase storage client for enrichment data.

Implements the ``EnrichmentStore`` contract on top of PostgREST:
- Paged selection of rows still needing enrichment
- Single-statement upserts keyed by each table's conflict columns
- Attempt bookkeeping via targeted updates

All writes are idempotent and can be safely re-run.
"""

from typing import Any, Dict, List, Optional
from supabase import Client, create_client

from storage.base import TABLE_KEYS
from utils.logger import setup_logger

logger = setup_logger(__name__)


class SupabaseClient:
    """Client for interacting with Supabase storage."""

    def __init__(self, supabase_url: str, supabase_key: str):
        """
        Initialize Supabase client.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase API key (anon/service key)
        """
        self.client: Client = create_client(supabase_url, supabase_key)
        logger.info(f"Initialized SupabaseClient for {supabase_url}")

    def fetch_unenriched(
        self,
        table: str,
        limit: int,
        offset: int = 0,
        max_attempts: int = 3,
    ) -> List[Dict[str, Any]]:
        """
        Query rows that still need enrichment.

        Fresh rows come first: ordering by attempts keeps heavily retried
        rows from starving new ones when batches are cut short.

        Args:
            table: Table name (repositories, contributors, merge_requests)
            limit: Maximum number of rows to return
            offset: Rows to skip
            max_attempts: Rows at or above this attempt count are excluded

        Returns:
            List of row dicts (empty when nothing is left)

        Raises:
            Exception if the query fails
        """
        try:
            query = (
                self.client.table(table)
                .select("*")
                .eq("is_enriched", False)
                .lt("enrichment_attempts", max_attempts)
                .order("enrichment_attempts")
                .order("github_id")
                .range(offset, offset + limit - 1)
            )
            result = query.execute()

            logger.debug(
                f"Found {len(result.data)} unenriched {table} (offset={offset}, limit={limit})"
            )
            return result.data

        except Exception as e:
            logger.error(f"Failed to query unenriched {table}: {e}")
            raise

    def get(self, table: str, column: str, value: Any) -> Optional[Dict[str, Any]]:
        """
        Get a single row by column value.

        Returns:
            Row dict or None if not found
        """
        try:
            result = self.client.table(table).select("*").eq(column, value).limit(1).execute()
            if result.data:
                return result.data[0]
            return None

        except Exception as e:
            logger.error(f"Failed to get {table} row ({column}={value}): {e}")
            raise

    def update(self, table: str, key_column: str, key_value: Any, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Update selected fields of an existing row.

        Returns:
            The updated row, or None if no row matched
        """
        try:
            result = self.client.table(table).update(fields).eq(key_column, key_value).execute()
            logger.debug(f"Updated {table} ({key_column}={key_value}): {sorted(fields)}")
            return result.data[0] if result.data else None

        except Exception as e:
            logger.error(f"Failed to update {table} ({key_column}={key_value}): {e}")
            raise

    def upsert(self, table: str, record: Dict[str, Any], on_conflict: Optional[str] = None) -> Dict[str, Any]:
        """
        Insert or update a row in a single statement.

        Args:
            table: Table name
            record: Column values; absent columns keep their stored values
            on_conflict: Comma-separated unique columns (defaults per table)

        Returns:
            Dict with the inserted/updated record

        Raises:
            Exception if the upsert fails
        """
        conflict = on_conflict or TABLE_KEYS.get(table, "id")
        try:
            result = self.client.table(table).upsert(record, on_conflict=conflict).execute()
            logger.debug(f"Upserted {table} row on ({conflict})")
            return result.data[0] if result.data else record

        except Exception as e:
            logger.error(f"Failed to upsert {table} row on ({conflict}): {e}")
            raise

    def get_enrichment_stats(self, table: str) -> Dict[str, int]:
        """
        Get enrichment progress for a table.

        Returns:
            Dict with counts: {'total': int, 'enriched': int, 'pending': int}
        """
        try:
            stats = {'total': 0, 'enriched': 0, 'pending': 0}

            # Count queries avoid the default 1000 row limit
            result = self.client.table(table).select("*", count="exact", head=True).execute()
            stats['total'] = result.count or 0

            result = (
                self.client.table(table)
                .select("*", count="exact", head=True)
                .eq("is_enriched", True)
                .execute()
            )
            stats['enriched'] = result.count or 0
            stats['pending'] = stats['total'] - stats['enriched']

            return stats

        except Exception as e:
            logger.error(f"Failed to get enrichment stats for {table}: {e}")
            return {'total': 0, 'enriched': 0, 'pending': 0}
