"""Outer batch loop and control surface for the enrichment engine.

Paging: rows handled during a run leave the unenriched set (or are skipped
through ``skip_ids`` when they stay in it after a failed attempt), so the
loop re-reads the same offset until a page holds only already-handled
rows, then moves past them. A rate limited batch waits for the reset and
re-reads the same offset. An open circuit pauses the entity type.
"""

import logging
from typing import Any, Callable, Optional, Union

from enrichers.base import EntityEnricher, ErrorHook
from enrichers.contributor import ContributorEnricher
from enrichers.merge_request import MergeRequestEnricher
from enrichers.pipeline import run_stages
from enrichers.repository import RepositoryEnricher
from fetchers.github import GitHubFetcher
from models.config_models import EnrichmentSettings
from models.data_models import EnrichmentStats, EntityType
from storage.base import EnrichmentStore
from utils.cancellation import CancellationToken, OperationCancelled

logger = logging.getLogger(__name__)

# Order used by run_all: merge requests create contributors lazily
RUN_ALL_ORDER = (EntityType.REPOSITORIES, EntityType.MERGE_REQUESTS, EntityType.CONTRIBUTORS)

# Consecutive batches failing with an unexpected error before giving up on a type
MAX_CONSECUTIVE_BATCH_ERRORS = 5

RESET_BUFFER_SEC = 1.0


class EnrichmentOrchestrator:
    """Drives the per-entity-type batch loops and exposes status."""

    def __init__(
        self,
        fetcher: GitHubFetcher,
        store: EnrichmentStore,
        settings: Optional[EnrichmentSettings] = None,
        token: Optional[CancellationToken] = None,
        enrichers: Optional[dict[EntityType, EntityEnricher]] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.settings = settings or fetcher.settings
        self.token = token or fetcher.cancel_token
        self.clock = fetcher.clock

        self._error_hooks: list[ErrorHook] = []
        self.stats: dict[EntityType, EnrichmentStats] = {et: EnrichmentStats() for et in EntityType}

        if enrichers is None:
            enrichers = {
                EntityType.REPOSITORIES: RepositoryEnricher(fetcher, store, self.settings),
                EntityType.CONTRIBUTORS: ContributorEnricher(fetcher, store, self.settings),
                EntityType.MERGE_REQUESTS: MergeRequestEnricher(fetcher, store, self.settings),
            }
        for enricher in enrichers.values():
            enricher.error_hook = self._dispatch_error
        self.enrichers = enrichers

    # Error hooks ---------------------------------------------------------

    def add_error_hook(self, hook: ErrorHook) -> None:
        """Register ``hook(entity_type, stage, exception)`` for per-stage errors."""
        self._error_hooks.append(hook)

    def _dispatch_error(self, entity_type: str, stage: str, error: Exception) -> None:
        self.stats[EntityType(entity_type)].last_error = f"{stage}: {error}"
        for hook in self._error_hooks:
            try:
                hook(entity_type, stage, error)
            except Exception:
                logger.exception(f"Error hook {hook!r} failed")

    # Batch loop ------------------------------------------------------------

    def _rate_limit_wait(self, reset_at: Optional[float]) -> float:
        if reset_at is None:
            reset_at = self.fetcher.rate_limiter.reset_at("core")
        if reset_at is None:
            return float(self.settings.default_rate_limit_wait_sec)
        return max(reset_at - self.clock(), 0.0) + RESET_BUFFER_SEC

    def enrich_all(
        self,
        entity_type: Union[EntityType, str],
        batch_size: Optional[int] = None,
    ) -> EnrichmentStats:
        """Enrich every pending row of one entity type.

        Args:
            entity_type: Which table to work through
            batch_size: Rows per batch (defaults to settings)

        Returns:
            Stats for this run. Running totals are kept in ``self.stats``.

        Raises:
            OperationCancelled: If shutdown was requested
        """
        if isinstance(entity_type, str):
            entity_type = EntityType.parse(entity_type)
        enricher = self.enrichers[entity_type]
        batch_size = batch_size or self.settings.batch_size
        totals = self.stats[entity_type]
        totals.circuit_open = False

        run = EnrichmentStats()
        seen: set[Any] = set()
        offset = 0
        consecutive_errors = 0

        logger.info(f"Starting {entity_type.value} enrichment (batch size {batch_size})")

        while True:
            self.token.raise_if_cancelled()

            try:
                result = enricher.enrich_batch(batch_size, offset, skip_ids=seen)
            except OperationCancelled:
                raise
            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Error processing {entity_type.value} batch at offset {offset}: {e}")
                self._dispatch_error(entity_type.value, "batch", e)
                run.last_error = totals.last_error
                if consecutive_errors >= MAX_CONSECUTIVE_BATCH_ERRORS:
                    logger.error(
                        f"Stopping {entity_type.value} enrichment after "
                        f"{consecutive_errors} consecutive batch errors"
                    )
                    break
                offset += batch_size
                continue

            consecutive_errors = 0
            run.absorb(result)
            totals.absorb(result)

            if result.fetched == 0:
                logger.info(f"No more unenriched {entity_type.value} found")
                break

            seen.update(result.attempted_ids)

            if result.rate_limited:
                wait_seconds = self._rate_limit_wait(result.rate_limit_reset_at)
                logger.warning(
                    f"Rate limited during {entity_type.value} batch. "
                    f"Waiting {wait_seconds:.0f}s, then retrying offset {offset}"
                )
                self.token.sleep(wait_seconds)
                continue

            if result.circuit_open:
                message = f"Circuit breaker open; pausing {entity_type.value} enrichment"
                logger.error(message)
                totals.last_error = message
                run.last_error = message
                break

            if not result.attempted_ids:
                # Whole page already handled in this run
                offset += result.fetched

        logger.info(
            f"{entity_type.value} enrichment finished: {run.processed} processed, "
            f"{run.success} succeeded, {run.failed} failed, {run.not_found} not found"
        )
        return run

    def run_all(self, batch_size: Optional[int] = None) -> dict[str, EnrichmentStats]:
        """Enrich repositories, then merge requests, then contributors."""

        def make_stage(entity_type: EntityType) -> Callable[[dict], dict]:
            def stage(results: dict) -> dict:
                results[entity_type.value] = self.enrich_all(entity_type, batch_size)
                return results

            stage.__name__ = f"enrich_{entity_type.value}"
            return stage

        return run_stages([make_stage(et) for et in RUN_ALL_ORDER], {}, token=self.token)

    # Control surface ------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Running totals across entity types plus a per-type breakdown."""
        by_type = {et.value: stats.model_dump() for et, stats in self.stats.items()}
        reset_times = [s.rate_limit_reset_at for s in self.stats.values() if s.rate_limit_reset_at]
        return {
            "processed": sum(s.processed for s in self.stats.values()),
            "success": sum(s.success for s in self.stats.values()),
            "failed": sum(s.failed for s in self.stats.values()),
            "not_found": sum(s.not_found for s in self.stats.values()),
            "rate_limited": sum(s.rate_limited for s in self.stats.values()),
            "rate_limit_reset_at": max(reset_times) if reset_times else None,
            "by_type": by_type,
            "circuit_breaker": self.get_circuit_breaker_status(),
        }

    def get_circuit_breaker_status(self) -> dict[str, Any]:
        return self.fetcher.circuit_breaker.get_state()

    def clear_cache(self, pattern: Optional[str] = None) -> int:
        """Drop cached responses whose key starts with ``pattern`` (all when None)."""
        if pattern is None:
            removed = self.fetcher.cache.clear()
        else:
            removed = self.fetcher.cache.invalidate_prefix(pattern)
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def start(self) -> None:
        """Start the circuit breaker's background monitor."""
        self.fetcher.circuit_breaker.start_monitoring()

    def shutdown(self) -> None:
        """Cancel pending waits, stop the breaker monitor and close the session."""
        self.token.cancel()
        self.fetcher.close()
        logger.info("Enrichment engine shut down")
