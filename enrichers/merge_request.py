"""Merge request enrichment via the commit/file cascade."""

from typing import Any

from enrichers.base import EntityEnricher
from enrichers.cascade import CascadeContext, CascadeProcessor
from fetchers.exceptions import PermanentError
from models.data_models import EntityType


class MergeRequestEnricher(EntityEnricher):
    """Enrich merge requests using their explicit ``pr_number``.

    Rows without a ``pr_number`` or without a resolvable repository fail
    permanently and are given up on after the attempt budget.
    """

    entity_type = EntityType.MERGE_REQUESTS

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.cascade = CascadeProcessor(
            self.fetcher,
            self.store,
            error_hook=self.report_error,
            token=self.token,
        )

    def describe(self, row: dict[str, Any]) -> str:
        return f"#{row.get('pr_number')} (id={row.get('id')})"

    def build_context(self, row: dict[str, Any]) -> CascadeContext:
        pr_number = row.get("pr_number")
        if not pr_number:
            raise PermanentError(f"Merge request {row.get('id')} has no pr_number")

        repository_id = row.get("repository_id")
        repository = self.store.get("repositories", "id", repository_id) if repository_id else None
        if repository is None:
            raise PermanentError(f"Merge request {row.get('id')} references unknown repository {repository_id}")

        full_name = repository.get("full_name") or ""
        owner, _, repo = full_name.partition("/")
        if not owner or not repo:
            raise PermanentError(f"Invalid repository name format: {full_name!r}")

        return CascadeContext(
            merge_request=row,
            owner=owner,
            repo=repo,
            pr_number=int(pr_number),
            repository_id=repository_id,
            repository_github_id=repository.get("github_id"),
        )

    def enrich_row(self, row: dict[str, Any], attempt: int) -> None:
        self.cascade.run(self.build_context(row))
