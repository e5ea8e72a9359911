"""Data models for GitHub entities and enrichment bookkeeping."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field


class EntityType(str, Enum):
    """Entity kinds the orchestrator knows how to enrich."""

    REPOSITORIES = "repositories"
    CONTRIBUTORS = "contributors"
    MERGE_REQUESTS = "merge_requests"

    @classmethod
    def parse(cls, value: str) -> "EntityType":
        """Accept CLI spellings such as ``merge-requests``."""
        return cls(value.strip().lower().replace("-", "_"))


class StorageRecord(BaseModel):
    """Base for records written through the persistence contract.

    Records stay strongly typed in memory; ``to_record`` is the single
    serialization point at the storage boundary. None fields are dropped so
    an upsert never overwrites a previously stored value with null.
    """

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Repository(StorageRecord):
    """Repository row keyed by internal id."""

    id: str
    github_id: Optional[int] = None
    name: Optional[str] = None
    full_name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    api_url: Optional[str] = None
    stars: Optional[int] = None
    forks: Optional[int] = None
    open_issues_count: Optional[int] = None
    watchers_count: Optional[int] = None
    size_kb: Optional[int] = None
    primary_language: Optional[str] = None
    license: Optional[str] = None
    is_fork: Optional[bool] = None
    is_archived: Optional[bool] = None
    default_branch: Optional[str] = None
    last_updated: Optional[datetime] = None

    # Enrichment tracking
    is_enriched: Optional[bool] = None
    enrichment_attempts: Optional[int] = None


class Contributor(StorageRecord):
    """Contributor row keyed by GitHub user id."""

    id: Optional[str] = None
    github_id: int
    username: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None
    bio: Optional[str] = None
    company: Optional[str] = None
    blog: Optional[str] = None
    twitter_username: Optional[str] = None
    location: Optional[str] = None
    followers: Optional[int] = None
    repositories: Optional[int] = None
    impact_score: Optional[int] = None
    role_classification: Optional[str] = None
    top_languages: Optional[list[str]] = None

    is_enriched: Optional[bool] = None
    enrichment_attempts: Optional[int] = None


class MergeRequest(StorageRecord):
    """Merge request row keyed by internal id.

    ``github_id`` is always GitHub's internal pull request id while
    ``pr_number`` is the per-repository number used in API paths. The two
    are never inferred from each other.
    """

    id: str
    github_id: Optional[int] = None
    pr_number: Optional[int] = None
    repository_id: Optional[str] = None
    repository_github_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    state: Optional[Literal["open", "closed", "merged"]] = None
    is_draft: Optional[bool] = None
    author_id: Optional[str] = None
    author_github_id: Optional[int] = None
    merged_by_id: Optional[str] = None
    merged_by_github_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    source_branch: Optional[str] = None
    target_branch: Optional[str] = None
    labels: Optional[list[str]] = None
    commits_count: Optional[int] = None
    files_changed: Optional[int] = None
    additions: Optional[int] = None
    deletions: Optional[int] = None
    comments_count: Optional[int] = None
    review_comments: Optional[int] = None
    reviews_count: Optional[int] = None
    complexity_score: Optional[int] = None
    cycle_time_hours: Optional[float] = None
    review_time_hours: Optional[float] = None
    url: Optional[str] = None

    is_enriched: Optional[bool] = None
    enrichment_attempts: Optional[int] = None


class CommitFileRecord(StorageRecord):
    """One row per (commit SHA, repository, filename).

    A commit with no file data is stored as a single row with
    ``filename=None``.
    """

    github_id: str  # commit SHA
    repository_id: str
    repository_github_id: Optional[int] = None
    filename: Optional[str] = None
    contributor_id: Optional[str] = None
    contributor_github_id: Optional[int] = None
    pull_request_id: Optional[str] = None
    pull_request_github_id: Optional[int] = None
    message: Optional[str] = None
    committed_at: Optional[datetime] = None
    parents: list[str] = Field(default_factory=list)
    is_merge_commit: bool = False
    status: Optional[str] = None
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None
    is_enriched: bool = True


class RateLimitState(BaseModel):
    """Rate limit budget for one API resource class (core, search, graphql)."""

    resource: str = "core"
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None  # epoch seconds
    updated_at: float = 0.0  # epoch seconds when this snapshot was taken


class BatchResult(BaseModel):
    """Outcome of one ``enrich_batch`` call."""

    processed: int = 0
    success: int = 0
    failed: int = 0
    not_found: int = 0
    rate_limited: bool = False
    rate_limit_reset_at: Optional[float] = None  # epoch seconds
    circuit_open: bool = False
    fetched: int = 0  # rows returned by the selection query
    attempted_ids: list[Any] = Field(default_factory=list)


class EnrichmentStats(BaseModel):
    """Running totals for one entity type (or all of them)."""

    processed: int = 0
    success: int = 0
    failed: int = 0
    not_found: int = 0
    rate_limited: int = 0  # number of batches interrupted by rate limiting
    rate_limit_reset_at: Optional[float] = None
    batches: int = 0
    circuit_open: bool = False
    last_error: Optional[str] = None

    def absorb(self, result: BatchResult) -> None:
        """Fold a batch result into the running totals."""
        self.batches += 1
        self.processed += result.processed
        self.success += result.success
        self.failed += result.failed
        self.not_found += result.not_found
        if result.rate_limited:
            self.rate_limited += 1
            self.rate_limit_reset_at = result.rate_limit_reset_at
        if result.circuit_open:
            self.circuit_open = True
