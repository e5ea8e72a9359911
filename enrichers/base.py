"""Generic batch enricher shared by every entity type.

Per row:

1. ``enrichment_attempts`` is incremented before any network call.
2. Rate limit or open circuit: the increment is reverted, the rest of the
   batch is skipped and the result tells the orchestrator why. A row
   turned away only because another worker holds the half-open trial call is
   left pending without halting the batch.
3. Not found: the row is marked enriched with no further data.
4. Any other failure counts as a failed attempt; on the last allowed
   attempt the row is marked enriched so it is never retried again.
5. Success: the subclass has written the mapped record with
   ``is_enriched = True``.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Optional

from fetchers.circuit_breaker import CircuitState
from fetchers.exceptions import CircuitOpenError, NotFoundError, RateLimitError
from fetchers.github import GitHubFetcher
from models.config_models import EnrichmentSettings
from models.data_models import BatchResult, EntityType
from storage.base import EnrichmentStore
from utils.cancellation import OperationCancelled

logger = logging.getLogger(__name__)

# (entity_type, stage, exception)
ErrorHook = Callable[[str, str, Exception], None]


class EntityEnricher:
    """Select unenriched rows, enrich each one, and keep attempt bookkeeping.

    Subclasses set ``entity_type`` and implement ``enrich_row``.
    """

    entity_type: EntityType
    key_column = "id"

    def __init__(
        self,
        fetcher: GitHubFetcher,
        store: EnrichmentStore,
        settings: Optional[EnrichmentSettings] = None,
        error_hook: Optional[ErrorHook] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.settings = settings or fetcher.settings
        self.error_hook = error_hook
        self.token = fetcher.cancel_token

    @property
    def table(self) -> str:
        return self.entity_type.value

    def describe(self, row: dict[str, Any]) -> str:
        return str(row.get(self.key_column))

    def enrich_row(self, row: dict[str, Any], attempt: int) -> None:
        """Fetch, map and upsert one row. Raise typed API errors on failure."""
        raise NotImplementedError

    def report_error(self, stage: str, error: Exception) -> None:
        if self.error_hook is not None:
            self.error_hook(self.entity_type.value, stage, error)

    def enrich_batch(
        self,
        batch_size: Optional[int] = None,
        offset: int = 0,
        skip_ids: Iterable[Any] = (),
    ) -> BatchResult:
        """Enrich one page of unenriched rows.

        Args:
            batch_size: Rows to select (defaults to settings)
            offset: Rows to skip in the selection order
            skip_ids: Row keys already handled in this run; selected but not
                processed again

        Returns:
            BatchResult with counters, the halt reason (rate limited / circuit
            open) and the keys of rows that reached an outcome
        """
        batch_size = batch_size or self.settings.batch_size
        rows = self.store.fetch_unenriched(
            self.table,
            limit=batch_size,
            offset=offset,
            max_attempts=self.settings.max_attempts,
        )
        result = BatchResult(fetched=len(rows))

        skip = set(skip_ids)
        pending = [row for row in rows if row.get(self.key_column) not in skip]
        if not pending:
            return result

        logger.info(
            f"Processing {len(pending)} {self.table} (offset {offset}, "
            f"{len(rows) - len(pending)} already handled)"
        )

        halt = threading.Event()
        lock = threading.Lock()

        if self.settings.workers > 1 and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.workers) as executor:
                futures = [
                    executor.submit(self._process_row, row, result, halt, lock)
                    for row in pending
                ]
                for future in futures:
                    future.result()
        else:
            for row in pending:
                if halt.is_set():
                    break
                self._process_row(row, result, halt, lock)

        return result

    def _set_attempts(self, key: Any, attempts: int) -> None:
        self.store.update(self.table, self.key_column, key, {"enrichment_attempts": attempts})

    def _mark_enriched(self, key: Any) -> None:
        self.store.update(self.table, self.key_column, key, {"is_enriched": True})

    def _process_row(
        self,
        row: dict[str, Any],
        result: BatchResult,
        halt: threading.Event,
        lock: threading.Lock,
    ) -> None:
        if halt.is_set():
            return
        self.token.raise_if_cancelled()

        key = row.get(self.key_column)
        name = self.describe(row)
        attempt = (row.get("enrichment_attempts") or 0) + 1
        self._set_attempts(key, attempt)

        try:
            self.enrich_row(row, attempt)

        except RateLimitError as e:
            self._set_attempts(key, attempt - 1)
            with lock:
                halt.set()
                result.rate_limited = True
                if e.reset_at is not None:
                    result.rate_limit_reset_at = max(result.rate_limit_reset_at or 0, e.reset_at)
            logger.warning(f"Rate limited while enriching {self.entity_type.value} {name}; pausing batch")
            return

        except CircuitOpenError as e:
            self._set_attempts(key, attempt - 1)
            if self.fetcher.circuit_breaker.state != CircuitState.OPEN:
                # Another worker holds the half-open trial call; the row stays pending
                logger.info(f"Skipping {self.entity_type.value} {name} while the circuit is half-open")
                return
            with lock:
                halt.set()
                result.circuit_open = True
            logger.warning(f"Circuit open while enriching {self.entity_type.value} {name}: {e}")
            self.report_error("circuit_breaker", e)
            return

        except OperationCancelled:
            self._set_attempts(key, attempt - 1)
            raise

        except NotFoundError:
            logger.warning(f"{self.entity_type.value} {name} not found on GitHub, marking enriched")
            self._mark_enriched(key)
            with lock:
                result.processed += 1
                result.not_found += 1
                result.attempted_ids.append(key)
            return

        except Exception as e:
            logger.error(f"Error enriching {self.entity_type.value} {name} (attempt {attempt}): {e}")
            self.report_error("enrich", e)
            if attempt >= self.settings.max_attempts:
                logger.warning(
                    f"Maximum enrichment attempts reached for {self.entity_type.value} {name}, "
                    f"marking as enriched"
                )
                self._mark_enriched(key)
            with lock:
                result.processed += 1
                result.failed += 1
                result.attempted_ids.append(key)
            if self.settings.abort_on_error:
                halt.set()
                raise
            return

        logger.info(f"Successfully enriched {self.entity_type.value} {name}")
        with lock:
            result.processed += 1
            result.success += 1
            result.attempted_ids.append(key)
