#!/usr/bin/env python3
"""
GitHub Enrichment Pipeline - Main CLI entrypoint

Enriches repositories, contributors and merge requests stored in Supabase
with data from the GitHub REST API. Safe to run repeatedly (e.g. from cron):
only rows that still need enrichment are picked up.

Usage:
    python main.py enrich all                           # Everything, in dependency order
    python main.py enrich repositories --batch-size 25
    python main.py enrich merge-requests --workers 4
    python main.py status                               # Database progress + rate limits
    python main.py rate-limit                           # Current GitHub API budget
"""

import argparse
import signal
import sys
from datetime import datetime
from typing import Optional

from enrichers.orchestrator import EnrichmentOrchestrator
from fetchers.github import GitHubFetcher
from models.config_models import Config
from models.data_models import EntityType
from storage.base import ENRICHABLE_TABLES
from storage.supabase_client import SupabaseClient
from utils.cancellation import CancellationToken, OperationCancelled
from utils.config_loader import load_config
from utils.logger import setup_logger

logger = setup_logger(__name__)

ENTITY_CHOICES = ["repositories", "contributors", "merge-requests", "all"]


def build_orchestrator(
    config: Config,
    supabase: SupabaseClient,
    workers: Optional[int] = None,
    token: Optional[CancellationToken] = None,
) -> EnrichmentOrchestrator:
    """
    Wire the GitHub client and Supabase storage into an orchestrator.

    Args:
        config: Validated configuration
        supabase: Storage client
        workers: Optional override for intra-batch concurrency
        token: Cancellation token shared by every wait

    Returns:
        EnrichmentOrchestrator ready to run
    """
    settings = config.settings
    if workers is not None:
        settings = settings.model_copy(update={"workers": workers})

    fetcher = GitHubFetcher(
        token=config.credentials.github_token,
        settings=settings,
        cancel_token=token or CancellationToken(),
    )
    return EnrichmentOrchestrator(fetcher, supabase, settings)


def run_enrichment(
    orchestrator: EnrichmentOrchestrator,
    entity: str,
    batch_size: Optional[int] = None,
) -> bool:
    """
    Run enrichment for one entity type (or all of them) and log a summary.

    Returns:
        bool: True if the run finished without the circuit opening
    """
    orchestrator.start()

    if entity == "all":
        results = orchestrator.run_all(batch_size)
    else:
        entity_type = EntityType.parse(entity)
        results = {entity_type.value: orchestrator.enrich_all(entity_type, batch_size)}

    logger.info("\n" + "=" * 80)
    logger.info("SUMMARY")
    logger.info("=" * 80)
    for name, stats in results.items():
        logger.info(
            f"{name}: {stats.processed} processed, {stats.success} enriched, "
            f"{stats.failed} failed, {stats.not_found} not found, "
            f"{stats.rate_limited} rate-limit pauses"
        )
        if stats.last_error:
            logger.warning(f"  Last error: {stats.last_error}")

    breaker = orchestrator.get_circuit_breaker_status()
    logger.info(f"Circuit breaker: {breaker['state']} ({breaker['failure_count']} recent failures)")

    success = not any(stats.circuit_open for stats in results.values())
    if success:
        logger.info("\n✓ Enrichment complete!")
    else:
        logger.warning("\n⚠ GitHub API kept failing and the circuit opened. Run again later to resume.")
    return success


def show_rate_limit(fetcher: GitHubFetcher) -> bool:
    """Log the current GitHub API budget for each resource class."""
    try:
        payload = fetcher.get_rate_limits(use_cache=False)
    except Exception as e:
        logger.error(f"Failed to fetch rate limits: {e}")
        return False

    for resource in ("core", "search", "graphql"):
        data = payload.get("resources", {}).get(resource)
        if not data:
            continue
        reset_str = datetime.fromtimestamp(data["reset"]).strftime("%H:%M:%S")
        logger.info(f"  {resource}: {data['remaining']}/{data['limit']} remaining (resets at {reset_str})")
    return True


def show_status(supabase: SupabaseClient, fetcher: GitHubFetcher) -> bool:
    """Log enrichment progress per table, then the API budget."""
    logger.info("Enrichment progress:")
    for table in ENRICHABLE_TABLES:
        stats = supabase.get_enrichment_stats(table)
        logger.info(
            f"  {table}: {stats['enriched']}/{stats['total']} enriched "
            f"({stats['pending']} pending)"
        )

    logger.info("GitHub API rate limits:")
    return show_rate_limit(fetcher)


def main():
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="GitHub Enrichment Pipeline - enrich stored GitHub entities via the REST API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Enrich everything (repositories → merge requests → contributors)
  python main.py enrich all

  # Enrich contributors 50 at a time
  python main.py enrich contributors --batch-size 50

  # Check progress
  python main.py status
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Enrich command
    enrich_parser = subparsers.add_parser(
        "enrich",
        help="Enrich pending rows of an entity type"
    )
    enrich_parser.add_argument(
        "entity",
        choices=ENTITY_CHOICES,
        help="Entity type to enrich ('all' runs every type in dependency order)"
    )
    enrich_parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Rows per batch (default: ENRICH_BATCH_SIZE or 10)"
    )
    enrich_parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Rows processed concurrently within a batch (default: ENRICH_WORKERS or 1)"
    )

    subparsers.add_parser(
        "status",
        help="Show enrichment progress and GitHub rate limits"
    )
    subparsers.add_parser(
        "rate-limit",
        help="Show the current GitHub API rate limit budget"
    )

    args = parser.parse_args()

    # Show help if no command provided
    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = load_config()
    setup_logger(config.log_level)

    if args.command == "rate-limit":
        fetcher = GitHubFetcher(config.credentials.github_token, settings=config.settings)
        try:
            success = show_rate_limit(fetcher)
        finally:
            fetcher.close()
        sys.exit(0 if success else 1)

    # Initialize Supabase client
    try:
        supabase = SupabaseClient(
            config.credentials.supabase_url,
            config.credentials.supabase_key
        )
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        sys.exit(1)

    if args.command == "status":
        fetcher = GitHubFetcher(config.credentials.github_token, settings=config.settings)
        try:
            success = show_status(supabase, fetcher)
        finally:
            fetcher.close()
        sys.exit(0 if success else 1)

    # Handle enrich command
    if args.batch_size is not None and args.batch_size < 1:
        logger.error("--batch-size must be at least 1")
        sys.exit(1)

    token = CancellationToken()
    orchestrator = build_orchestrator(config, supabase, workers=args.workers, token=token)

    def handle_interrupt(signum, frame):
        logger.warning("Interrupt received - stopping after the current request...")
        token.cancel()

    signal.signal(signal.SIGINT, handle_interrupt)

    try:
        success = run_enrichment(orchestrator, args.entity, args.batch_size)
    except OperationCancelled:
        logger.warning("Enrichment cancelled. Progress so far is saved; run again to resume.")
        success = False
    except Exception as e:
        logger.error(f"Enrichment failed: {e}")
        success = False
    finally:
        orchestrator.shutdown()

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
