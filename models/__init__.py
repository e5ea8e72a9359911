"""Data models for the GitHub enrichment engine."""

from models.config_models import Config, CredentialsConfig, EnrichmentSettings
from models.data_models import (
    BatchResult,
    CommitFileRecord,
    Contributor,
    EnrichmentStats,
    EntityType,
    MergeRequest,
    RateLimitState,
    Repository,
)

__all__ = [
    "Config",
    "CredentialsConfig",
    "EnrichmentSettings",
    "BatchResult",
    "CommitFileRecord",
    "Contributor",
    "EnrichmentStats",
    "EntityType",
    "MergeRequest",
    "RateLimitState",
    "Repository",
]
