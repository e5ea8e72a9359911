"""Repository enrichment: metadata from ``GET /repos/{owner}/{repo}``."""

from typing import Any

from enrichers.base import EntityEnricher
from enrichers.scoring import parse_timestamp
from fetchers.exceptions import PermanentError
from models.data_models import EntityType, Repository


def map_repository(data: dict[str, Any], repository_id: str) -> Repository:
    """Map a GitHub repository object onto the repositories table."""
    license_info = data.get("license") or {}
    return Repository(
        id=repository_id,
        github_id=data.get("id"),
        name=data.get("name"),
        full_name=data.get("full_name"),
        description=data.get("description"),
        url=data.get("html_url"),
        api_url=data.get("url"),
        stars=data.get("stargazers_count"),
        forks=data.get("forks_count"),
        open_issues_count=data.get("open_issues_count"),
        watchers_count=data.get("watchers_count"),
        size_kb=data.get("size"),
        primary_language=data.get("language"),
        license=license_info.get("spdx_id"),
        is_fork=data.get("fork"),
        is_archived=data.get("archived"),
        default_branch=data.get("default_branch"),
        last_updated=parse_timestamp(data.get("updated_at")),
        is_enriched=True,
    )


class RepositoryEnricher(EntityEnricher):
    entity_type = EntityType.REPOSITORIES

    def describe(self, row: dict[str, Any]) -> str:
        return row.get("full_name") or str(row.get("id"))

    def enrich_row(self, row: dict[str, Any], attempt: int) -> None:
        full_name = row.get("full_name") or ""
        owner, _, repo = full_name.partition("/")
        if not owner or not repo:
            raise PermanentError(f"Invalid repository name format: {full_name!r}")

        data = self.fetcher.get_repository(owner, repo)
        record = map_repository(data, row["id"])
        self.store.upsert(self.table, record.to_record(), on_conflict="id")
