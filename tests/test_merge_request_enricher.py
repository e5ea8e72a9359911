"""Tests for merge request enrichment and the commit/file cascade."""

import pytest

from enrichers.cascade import CascadeContext, build_commit_rows
from enrichers.merge_request import MergeRequestEnricher
from fetchers.exceptions import PermanentError
from tests.conftest import FakeResponse

PR_PAYLOAD = {
    "id": 9001,
    "number": 42,
    "title": "Add caching layer",
    "body": "Speeds up repeated lookups",
    "state": "closed",
    "draft": False,
    "user": {"id": 1, "login": "alice", "avatar_url": "https://avatars/1"},
    "merged_by": {"id": 2, "login": "bob", "avatar_url": "https://avatars/2"},
    "created_at": "2024-03-01T08:00:00Z",
    "updated_at": "2024-03-01T20:00:00Z",
    "closed_at": "2024-03-02T08:00:00Z",
    "merged_at": "2024-03-02T08:00:00Z",
    "head": {"ref": "feature/cache"},
    "base": {"ref": "main"},
    "labels": [{"name": "enhancement"}, {"name": "performance"}],
    "commits": 2,
    "changed_files": 5,
    "additions": 65,
    "deletions": 7,
    "comments": 3,
    "review_comments": 4,
    "html_url": "https://github.com/octo/app/pull/42",
}

COMMITS = [
    {
        "sha": "aaa1111",
        "commit": {"message": "Add cache", "author": {"date": "2024-03-01T09:00:00Z"}},
        "author": {"id": 1, "login": "alice"},
        "parents": [{"sha": "p000000"}],
    },
    {
        "sha": "bbb2222",
        "commit": {"message": "Merge main", "author": {"date": "2024-03-01T10:00:00Z"}},
        "author": {"id": 3, "login": "carol"},
        "parents": [{"sha": "aaa1111"}, {"sha": "p999999"}],
    },
]

COMMIT_A_DETAIL = {
    **COMMITS[0],
    "stats": {"additions": 35, "deletions": 4},
    "files": [
        {"filename": "cache.py", "status": "added", "additions": 30, "deletions": 0, "patch": "@@ +1,30 @@"},
        {"filename": "app.py", "status": "modified", "additions": 4, "deletions": 3},
        {"filename": "README.md", "status": "modified", "additions": 1, "deletions": 1},
    ],
}

COMMIT_B_DETAIL = {**COMMITS[1], "stats": {"additions": 0, "deletions": 0}, "files": []}

PR_FILES = [
    {"filename": "cache.py", "status": "added", "additions": 60, "deletions": 0},
    {"filename": "app.py", "status": "modified", "additions": 5, "deletions": 7},
]


@pytest.fixture
def seeded(store):
    store.insert("repositories", {"id": "repo-1", "github_id": 100, "full_name": "octo/app", "is_enriched": True})
    store.insert("merge_requests", {
        "id": "mr-1",
        "github_id": 9001,
        "pr_number": 42,
        "repository_id": "repo-1",
        "enrichment_attempts": 0,
        "is_enriched": False,
    })
    return store


def route_pull_request(session, commit_b=COMMIT_B_DETAIL, pr_files=PR_FILES):
    session.ok("repos/octo/app/pulls/42", PR_PAYLOAD)
    session.ok("repos/octo/app/pulls/42/reviews", [{"id": 1}, {"id": 2}, {"id": 3}])
    session.ok("repos/octo/app/pulls/42/commits", COMMITS)
    session.ok("repos/octo/app/commits/aaa1111", COMMIT_A_DETAIL)
    if commit_b is not None:
        session.ok("repos/octo/app/commits/bbb2222", commit_b)
    if pr_files is not None:
        session.ok("repos/octo/app/pulls/42/files", pr_files)


def commit_rows(store):
    return sorted(store.all("commits"), key=lambda r: (r["github_id"], r.get("filename") or ""))


class TestCascade:
    """Tests for the PR → commits → files fan-out."""

    def test_writes_row_per_file_with_pr_file_fallback(self, fetcher, seeded, session):
        """3 files on the first commit + 2 PR files for the empty one = 5 rows."""
        route_pull_request(session)

        result = MergeRequestEnricher(fetcher, seeded).enrich_batch(10)

        assert result.success == 1
        rows = commit_rows(seeded)
        assert len(rows) == 5
        assert [(r["github_id"], r["filename"], r["additions"], r["deletions"]) for r in rows] == [
            ("aaa1111", "README.md", 1, 1),
            ("aaa1111", "app.py", 4, 3),
            ("aaa1111", "cache.py", 30, 0),
            ("bbb2222", "app.py", 5, 7),
            ("bbb2222", "cache.py", 60, 0),
        ]
        assert all(r["repository_id"] == "repo-1" for r in rows)
        assert all(r["pull_request_id"] == "mr-1" for r in rows)
        assert all(r["is_merge_commit"] for r in rows if r["github_id"] == "bbb2222")
        assert not any(r["is_merge_commit"] for r in rows if r["github_id"] == "aaa1111")

    def test_merge_request_row_finalized(self, fetcher, seeded, session):
        route_pull_request(session)

        MergeRequestEnricher(fetcher, seeded).enrich_batch(10)

        mr = seeded.get("merge_requests", "id", "mr-1")
        alice = seeded.get("contributors", "github_id", 1)
        bob = seeded.get("contributors", "github_id", 2)
        assert mr["is_enriched"] is True
        assert mr["enrichment_attempts"] == 1
        assert mr["state"] == "merged"
        assert mr["pr_number"] == 42
        assert mr["github_id"] == 9001
        assert mr["labels"] == ["enhancement", "performance"]
        assert mr["reviews_count"] == 3
        assert mr["commits_count"] == 2
        assert mr["additions"] == 65
        assert mr["cycle_time_hours"] == 24.0
        assert mr["source_branch"] == "feature/cache"
        assert mr["author_id"] == alice["id"]
        assert mr["merged_by_id"] == bob["id"]
        assert 0 < mr["complexity_score"] <= 100

    def test_contributors_created_lazily(self, fetcher, seeded, session):
        route_pull_request(session)

        MergeRequestEnricher(fetcher, seeded).enrich_batch(10)

        contributors = {row["github_id"]: row for row in seeded.all("contributors")}
        assert set(contributors) == {1, 2, 3}
        assert contributors[3]["username"] == "carol"
        # Picked up later by the contributor pass
        assert contributors[3]["is_enriched"] is False
        assert contributors[3]["enrichment_attempts"] == 0

    def test_cascade_is_idempotent(self, fetcher, seeded, session):
        """A second run converges on the same rows and values."""
        route_pull_request(session)
        enricher = MergeRequestEnricher(fetcher, seeded)
        row = seeded.get("merge_requests", "id", "mr-1")

        enricher.enrich_row(row, 1)
        first = commit_rows(seeded)
        enricher.enrich_row(row, 2)
        second = commit_rows(seeded)

        assert len(second) == 5
        assert first == second
        assert len(seeded.all("contributors")) == 3

    def test_commit_without_any_files_stores_single_row(self, fetcher, seeded, session):
        route_pull_request(session, pr_files=None)
        enricher = MergeRequestEnricher(fetcher, seeded)
        errors = []
        enricher.error_hook = lambda entity, stage, error: errors.append(stage)
        row = seeded.get("merge_requests", "id", "mr-1")

        enricher.enrich_row(row, 1)
        enricher.enrich_row(row, 2)

        empty = [r for r in seeded.all("commits") if r["github_id"] == "bbb2222"]
        assert len(empty) == 1
        assert empty[0].get("filename") is None
        assert empty[0]["additions"] == 0
        assert "pull_request_files" in errors

    def test_failed_commit_detail_keeps_earlier_rows(self, make_fetcher, seeded, session):
        """PR files never overwrite rows written from a real commit payload."""
        fetcher = make_fetcher(max_retries=0)
        route_pull_request(session)
        enricher = MergeRequestEnricher(fetcher, seeded)
        row = seeded.get("merge_requests", "id", "mr-1")

        enricher.enrich_row(row, 1)
        first = commit_rows(seeded)
        fetcher.cache.clear()
        session.add("repos/octo/app/commits/aaa1111", FakeResponse(500, text="boom"))
        enricher.enrich_row(row, 2)

        assert commit_rows(seeded) == first
        assert [(r["filename"], r["additions"]) for r in first if r["github_id"] == "aaa1111"] == [
            ("README.md", 1),
            ("app.py", 4),
            ("cache.py", 30),
        ]

    def test_commit_detail_failure_falls_back_to_pr_files(self, fetcher, seeded, session):
        route_pull_request(session, commit_b=None)
        enricher = MergeRequestEnricher(fetcher, seeded)
        errors = []
        enricher.error_hook = lambda entity, stage, error: errors.append(stage)

        result = enricher.enrich_batch(10)

        assert result.success == 1
        assert len(commit_rows(seeded)) == 5
        assert errors == ["commit_detail"]

    def test_pr_files_fetched_once(self, fetcher, seeded, session):
        route_pull_request(session, commit_b=None)
        session.ok("repos/octo/app/commits/aaa1111", {**COMMIT_A_DETAIL, "files": []})

        MergeRequestEnricher(fetcher, seeded).enrich_batch(10)

        assert session.paths().count("repos/octo/app/pulls/42/files") == 1
        assert len(commit_rows(seeded)) == 4

    def test_reviews_failure_fails_row(self, make_fetcher, seeded, session):
        fetcher = make_fetcher(max_retries=0)
        route_pull_request(session)
        session.add("repos/octo/app/pulls/42/reviews", FakeResponse(500, text="boom"))

        result = MergeRequestEnricher(fetcher, seeded).enrich_batch(10)

        mr = seeded.get("merge_requests", "id", "mr-1")
        assert result.failed == 1
        assert mr["enrichment_attempts"] == 1
        assert mr["is_enriched"] is False

    def test_rate_limit_reverts_attempt(self, make_fetcher, seeded, session, clock):
        fetcher = make_fetcher(rate_limit_retries=0)
        route_pull_request(session)
        reset = int(clock()) + 2
        session.add(
            "repos/octo/app/pulls/42",
            FakeResponse(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)}),
        )

        result = MergeRequestEnricher(fetcher, seeded).enrich_batch(10)

        assert result.rate_limited is True
        assert result.rate_limit_reset_at == reset
        assert result.attempted_ids == []
        assert seeded.get("merge_requests", "id", "mr-1")["enrichment_attempts"] == 0


class TestBuildContext:
    """Tests for resolving the PR coordinates of a merge request row."""

    def test_missing_pr_number(self, fetcher, store):
        enricher = MergeRequestEnricher(fetcher, store)
        with pytest.raises(PermanentError, match="no pr_number"):
            enricher.build_context({"id": "mr-1", "repository_id": "repo-1"})

    def test_unknown_repository(self, fetcher, store):
        enricher = MergeRequestEnricher(fetcher, store)
        with pytest.raises(PermanentError, match="unknown repository"):
            enricher.build_context({"id": "mr-1", "pr_number": 5, "repository_id": "missing"})

    def test_resolves_owner_and_repo(self, fetcher, seeded):
        enricher = MergeRequestEnricher(fetcher, seeded)
        context = enricher.build_context(seeded.get("merge_requests", "id", "mr-1"))

        assert (context.owner, context.repo, context.pr_number) == ("octo", "app", 42)
        assert context.repository_github_id == 100


def test_build_commit_rows_without_files():
    context = CascadeContext(
        merge_request={"id": "mr-1"},
        owner="octo",
        repo="app",
        pr_number=42,
        repository_id="repo-1",
        pull_request={"id": 9001},
    )

    rows = build_commit_rows(COMMITS[0], [], context, contributor_id="c-1")

    assert len(rows) == 1
    assert rows[0].filename is None
    assert rows[0].contributor_id == "c-1"
    assert rows[0].pull_request_github_id == 9001
    assert rows[0].parents == ["p000000"]
