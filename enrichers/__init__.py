"""Entity enrichers and the orchestration loop."""

from enrichers.base import EntityEnricher
from enrichers.cascade import CascadeContext, CascadeProcessor
from enrichers.contributor import ContributorEnricher
from enrichers.merge_request import MergeRequestEnricher
from enrichers.orchestrator import EnrichmentOrchestrator
from enrichers.repository import RepositoryEnricher

__all__ = [
    "EntityEnricher",
    "CascadeContext",
    "CascadeProcessor",
    "ContributorEnricher",
    "MergeRequestEnricher",
    "EnrichmentOrchestrator",
    "RepositoryEnricher",
]
