"""Merge request cascade: pull request → commits → per-file commit rows.

The cascade is a linear list of stages over a ``CascadeContext``:

1. fetch_pull_request: PR metadata and review count
2. fetch_commits: the PR's commit list
3. process_commits: per commit, full detail and one row per changed file
4. finalize: the merge request row itself, marked enriched

Commit rows are upserted on ``(github_id, repository_id, filename)`` with
None fields omitted, so re-running the cascade converges on the same rows
and never erases values stored by an earlier run.
"""

import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from enrichers.pipeline import run_stages
from enrichers.scoring import (
    calculate_complexity_score,
    calculate_cycle_time,
    calculate_review_time,
    parse_timestamp,
)
from fetchers.exceptions import NotFoundError, PermanentError, TransientError
from fetchers.github import GitHubFetcher
from models.data_models import CommitFileRecord, Contributor, MergeRequest
from storage.base import EnrichmentStore
from utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

COMMIT_CONFLICT_KEY = "github_id,repository_id,filename"

# Failures tolerated for a single commit; the cascade moves on to the next one
RECOVERABLE_ERRORS = (NotFoundError, TransientError, PermanentError)


class CascadeContext(BaseModel):
    """State threaded through the cascade stages."""

    merge_request: dict[str, Any]
    owner: str
    repo: str
    pr_number: int
    repository_id: str
    repository_github_id: Optional[int] = None

    pull_request: dict[str, Any] = Field(default_factory=dict)
    review_count: int = 0
    author_id: Optional[str] = None
    merged_by_id: Optional[str] = None
    commits: list[dict[str, Any]] = Field(default_factory=list)
    pr_files: Optional[list[dict[str, Any]]] = None

    rows_written: int = 0
    commit_errors: int = 0
    commit_additions: int = 0
    commit_deletions: int = 0


def _parent_shas(commit: dict[str, Any]) -> list[str]:
    return [p.get("sha") if isinstance(p, dict) else str(p) for p in commit.get("parents") or []]


def build_commit_rows(
    commit: dict[str, Any],
    files: list[dict[str, Any]],
    context: CascadeContext,
    contributor_id: Optional[str] = None,
) -> list[CommitFileRecord]:
    """One row per file, or a single ``filename=None`` row when ``files`` is empty."""
    info = commit.get("commit") or {}
    author = commit.get("author") or {}
    parents = _parent_shas(commit)

    base = {
        "github_id": commit["sha"],
        "repository_id": context.repository_id,
        "repository_github_id": context.repository_github_id,
        "contributor_id": contributor_id,
        "contributor_github_id": author.get("id"),
        "pull_request_id": context.merge_request.get("id"),
        "pull_request_github_id": context.pull_request.get("id"),
        "message": info.get("message"),
        "committed_at": parse_timestamp((info.get("author") or {}).get("date")),
        "parents": parents,
        "is_merge_commit": len(parents) > 1,
    }

    if not files:
        return [CommitFileRecord(**base)]

    return [
        CommitFileRecord(
            **base,
            filename=f.get("filename"),
            status=f.get("status"),
            additions=f.get("additions") or 0,
            deletions=f.get("deletions") or 0,
            patch=f.get("patch"),
        )
        for f in files
    ]


class CascadeProcessor:
    """Fan a merge request out into commit and file rows."""

    def __init__(
        self,
        fetcher: GitHubFetcher,
        store: EnrichmentStore,
        error_hook: Optional[Callable[[str, Exception], None]] = None,
        token: Optional[CancellationToken] = None,
    ):
        self.fetcher = fetcher
        self.store = store
        self.error_hook = error_hook
        self.token = token or fetcher.cancel_token

    @property
    def stages(self) -> list[Callable[[CascadeContext], CascadeContext]]:
        return [self.fetch_pull_request, self.fetch_commits, self.process_commits, self.finalize]

    def run(self, context: CascadeContext) -> CascadeContext:
        return run_stages(self.stages, context, token=self.token)

    def _report(self, stage: str, error: Exception) -> None:
        if self.error_hook is not None:
            self.error_hook(stage, error)

    def ensure_contributor(self, user: Optional[dict[str, Any]]) -> Optional[str]:
        """Create (or touch) a contributor referenced by a commit or PR.

        Returns the contributor's internal id, or None for anonymous authors.
        """
        if not user or not user.get("id"):
            return None
        record = Contributor(
            github_id=user["id"],
            username=user.get("login"),
            avatar=user.get("avatar_url"),
        )
        row = self.store.upsert("contributors", record.to_record(), on_conflict="github_id")
        return row.get("id")

    # Stages ------------------------------------------------------------

    def fetch_pull_request(self, context: CascadeContext) -> CascadeContext:
        pr = self.fetcher.get_pull_request(context.owner, context.repo, context.pr_number)
        reviews = self.fetcher.get_pull_request_reviews(context.owner, context.repo, context.pr_number)

        context.pull_request = pr
        context.review_count = len(reviews)
        context.author_id = self.ensure_contributor(pr.get("user"))
        context.merged_by_id = self.ensure_contributor(pr.get("merged_by"))
        return context

    def fetch_commits(self, context: CascadeContext) -> CascadeContext:
        context.commits = self.fetcher.get_pull_request_commits(context.owner, context.repo, context.pr_number)
        logger.info(
            f"Found {len(context.commits)} commits for PR #{context.pr_number} "
            f"in {context.owner}/{context.repo}"
        )
        return context

    def _pull_request_files(self, context: CascadeContext) -> list[dict[str, Any]]:
        """PR file list, fetched at most once per cascade."""
        if context.pr_files is None:
            try:
                context.pr_files = self.fetcher.get_pull_request_files(
                    context.owner, context.repo, context.pr_number
                )
            except RECOVERABLE_ERRORS as e:
                logger.warning(f"Failed to fetch PR files for #{context.pr_number} as fallback: {e}")
                self._report("pull_request_files", e)
                context.pr_files = []
        return context.pr_files

    def _has_commit_rows(self, sha: str, repository_id: Any) -> bool:
        existing = self.store.get("commits", "github_id", sha)
        return existing is not None and existing.get("repository_id") == repository_id

    def process_commits(self, context: CascadeContext) -> CascadeContext:
        for commit in context.commits:
            self.token.raise_if_cancelled()
            sha = commit["sha"]
            contributor_id = self.ensure_contributor(commit.get("author"))

            detail = commit
            try:
                detail = {**commit, **self.fetcher.get_commit(context.owner, context.repo, sha)}
            except RECOVERABLE_ERRORS as e:
                logger.warning(f"Could not fetch commit details for {sha[:7]}: {e}")
                self._report("commit_detail", e)
                context.commit_errors += 1
                # PR files are only a stand-in; never write them over rows from an earlier run
                if self._has_commit_rows(sha, context.repository_id):
                    logger.info(f"Keeping stored file rows for commit {sha[:7]}")
                    continue

            files = detail.get("files") or []
            if not files:
                files = self._pull_request_files(context)
                if files:
                    logger.info(f"No files for commit {sha[:7]}, using {len(files)} PR files instead")
                else:
                    logger.warning(f"No file data for commit {sha[:7]}, storing a single row without filename")

            for record in build_commit_rows(detail, files, context, contributor_id):
                self.store.upsert("commits", record.to_record(), on_conflict=COMMIT_CONFLICT_KEY)
                context.rows_written += 1

            stats = detail.get("stats") or {}
            context.commit_additions += stats.get("additions") or 0
            context.commit_deletions += stats.get("deletions") or 0

        return context

    def finalize(self, context: CascadeContext) -> CascadeContext:
        pr = context.pull_request
        merged_by = pr.get("merged_by") or {}
        author = pr.get("user") or {}

        if pr.get("merged_at"):
            state = "merged"
        elif pr.get("closed_at") or pr.get("state") == "closed":
            state = "closed"
        else:
            state = "open"

        additions = pr.get("additions")
        deletions = pr.get("deletions")

        record = MergeRequest(
            id=context.merge_request["id"],
            github_id=pr.get("id"),
            pr_number=context.pr_number,
            repository_id=context.repository_id,
            repository_github_id=context.repository_github_id,
            title=pr.get("title"),
            description=pr.get("body"),
            state=state,
            is_draft=pr.get("draft"),
            author_id=context.author_id,
            author_github_id=author.get("id"),
            merged_by_id=context.merged_by_id,
            merged_by_github_id=merged_by.get("id"),
            created_at=parse_timestamp(pr.get("created_at")),
            updated_at=parse_timestamp(pr.get("updated_at")),
            closed_at=parse_timestamp(pr.get("closed_at")),
            merged_at=parse_timestamp(pr.get("merged_at")),
            source_branch=(pr.get("head") or {}).get("ref"),
            target_branch=(pr.get("base") or {}).get("ref"),
            labels=[label.get("name") for label in pr.get("labels") or [] if label.get("name")],
            commits_count=len(context.commits),
            files_changed=pr.get("changed_files"),
            additions=additions if additions is not None else context.commit_additions,
            deletions=deletions if deletions is not None else context.commit_deletions,
            comments_count=pr.get("comments"),
            review_comments=pr.get("review_comments"),
            reviews_count=context.review_count,
            complexity_score=calculate_complexity_score(pr, context.review_count),
            cycle_time_hours=calculate_cycle_time(pr),
            review_time_hours=calculate_review_time(pr),
            url=pr.get("html_url"),
            is_enriched=True,
        )
        self.store.upsert("merge_requests", record.to_record(), on_conflict="id")
        logger.info(
            f"Wrote {context.rows_written} commit rows for PR #{context.pr_number} "
            f"({context.commit_errors} commits without detail)"
        )
        return context
