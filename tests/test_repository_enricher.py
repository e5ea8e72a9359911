"""Tests for repository enrichment and the shared batch bookkeeping."""

import threading
import time

import pytest

from enrichers.orchestrator import EnrichmentOrchestrator
from enrichers.repository import RepositoryEnricher, map_repository
from fetchers.circuit_breaker import CircuitState
from fetchers.github import GitHubFetcher
from models.config_models import EnrichmentSettings
from models.data_models import EntityType
from tests.conftest import FakeResponse, FakeSession

REPO_PAYLOAD = {
    "id": 10270250,
    "name": "react",
    "full_name": "facebook/react",
    "description": "The library for web and native user interfaces.",
    "html_url": "https://github.com/facebook/react",
    "url": "https://api.github.com/repos/facebook/react",
    "stargazers_count": 230000,
    "forks_count": 47000,
    "open_issues_count": 900,
    "watchers_count": 230000,
    "size": 350000,
    "language": "JavaScript",
    "license": {"spdx_id": "MIT"},
    "fork": False,
    "archived": False,
    "default_branch": "main",
    "updated_at": "2024-06-01T10:00:00Z",
}


@pytest.fixture
def enricher(fetcher, store):
    return RepositoryEnricher(fetcher, store)


def seed(store, **fields):
    return store.insert("repositories", {"enrichment_attempts": 0, "is_enriched": False, **fields})


class TestMapRepository:
    """Tests for payload → row mapping."""

    def test_maps_fields(self):
        record = map_repository(REPO_PAYLOAD, "r1")

        assert record.id == "r1"
        assert record.github_id == 10270250
        assert record.stars == 230000
        assert record.license == "MIT"
        assert record.primary_language == "JavaScript"
        assert record.is_enriched is True
        assert record.enrichment_attempts is None

    def test_missing_license(self):
        assert map_repository({**REPO_PAYLOAD, "license": None}, "r1").license is None


class TestRepositoryEnricher:
    """Tests for per-row outcomes."""

    def test_success_writes_row(self, enricher, store, session):
        seed(store, id="r1", full_name="facebook/react")
        session.ok("repos/facebook/react", REPO_PAYLOAD)

        result = enricher.enrich_batch(10)

        row = store.get("repositories", "id", "r1")
        assert result.success == 1
        assert result.attempted_ids == ["r1"]
        assert row["is_enriched"] is True
        assert row["enrichment_attempts"] == 1
        assert row["github_id"] == 10270250
        assert row["stars"] == 230000

    def test_not_found_marks_enriched(self, enricher, store):
        seed(store, id="r1", full_name="gone/away")

        result = enricher.enrich_batch(10)

        assert result.not_found == 1
        assert store.get("repositories", "id", "r1")["is_enriched"] is True

    def test_invalid_name_fails_attempt(self, enricher, store):
        seed(store, id="r1", full_name="no-slash")

        result = enricher.enrich_batch(10)

        row = store.get("repositories", "id", "r1")
        assert result.failed == 1
        assert row["enrichment_attempts"] == 1
        assert row["is_enriched"] is False

    def test_gives_up_after_max_attempts(self, enricher, store, session):
        """The last allowed attempt marks the row enriched even on failure."""
        seed(store, id="r1", full_name="o/r", enrichment_attempts=2)
        session.add("repos/o/r", FakeResponse(422, text="Unprocessable"))

        result = enricher.enrich_batch(10)

        row = store.get("repositories", "id", "r1")
        assert result.failed == 1
        assert row["enrichment_attempts"] == 3
        assert row["is_enriched"] is True

    def test_skip_ids_are_not_reprocessed(self, enricher, store, session):
        seed(store, id="r1", github_id=1, full_name="o/a")
        seed(store, id="r2", github_id=2, full_name="o/b")
        session.ok("repos/o/b", {**REPO_PAYLOAD, "id": 2, "full_name": "o/b"})

        result = enricher.enrich_batch(10, skip_ids={"r1"})

        assert result.fetched == 2
        assert result.attempted_ids == ["r2"]
        assert store.get("repositories", "id", "r1")["enrichment_attempts"] == 0

    def test_empty_table(self, enricher):
        result = enricher.enrich_batch(10)
        assert result.fetched == 0
        assert result.processed == 0

    def test_error_hook_receives_stage(self, enricher, store):
        errors = []
        enricher.error_hook = lambda entity, stage, error: errors.append((entity, stage))
        seed(store, id="r1", full_name="bad")

        enricher.enrich_batch(10)

        assert errors == [("repositories", "enrich")]

    def test_abort_on_error_reraises(self, make_fetcher, store):
        fetcher = make_fetcher(abort_on_error=True)
        enricher = RepositoryEnricher(fetcher, store)
        seed(store, id="r1", github_id=1, full_name="bad")
        seed(store, id="r2", github_id=2, full_name="o/r")

        with pytest.raises(Exception):
            enricher.enrich_batch(10)

        assert store.get("repositories", "id", "r2")["enrichment_attempts"] == 0

    def test_concurrent_workers_process_every_row(self, make_fetcher, store, session):
        fetcher = make_fetcher(workers=4)
        enricher = RepositoryEnricher(fetcher, store)
        for i in range(6):
            seed(store, id=f"r{i}", github_id=i, full_name=f"o/repo{i}")
            session.ok(f"repos/o/repo{i}", {**REPO_PAYLOAD, "id": i, "full_name": f"o/repo{i}"})

        result = enricher.enrich_batch(10)

        assert result.success == 6
        assert sorted(result.attempted_ids) == [f"r{i}" for i in range(6)]
        assert store.get_enrichment_stats("repositories")["pending"] == 0

    def test_rate_limit_with_workers_reverts_attempt(self, make_fetcher, store, session, clock):
        fetcher = make_fetcher(workers=4, rate_limit_retries=0)
        enricher = RepositoryEnricher(fetcher, store)
        for i in range(4):
            seed(store, id=f"r{i}", github_id=i, full_name=f"o/repo{i}", enrichment_attempts=1)
            session.ok(f"repos/o/repo{i}", {**REPO_PAYLOAD, "id": i, "full_name": f"o/repo{i}"})
        reset = int(clock()) + 30
        session.add(
            "repos/o/repo2",
            FakeResponse(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)}),
        )

        result = enricher.enrich_batch(10)

        assert result.rate_limited is True
        assert result.rate_limit_reset_at == reset
        assert "r2" not in result.attempted_ids
        assert store.get("repositories", "id", "r2")["enrichment_attempts"] == 1
        for row in store.all("repositories"):
            if row["id"] not in result.attempted_ids:
                assert row["enrichment_attempts"] == 1
                assert row["is_enriched"] is False


def trip_and_wait(fetcher, clock):
    """Open the fetcher's circuit and let the reset timeout pass."""
    breaker = fetcher.circuit_breaker
    for _ in range(fetcher.settings.failure_threshold):
        breaker.before_call()
        breaker.record_failure()
    clock.advance(fetcher.settings.reset_timeout_sec + 1)


class SlowFirstRequestSession(FakeSession):
    """Holds the first repository request long enough for other workers to hit the gate."""

    def __init__(self, delay=0.2):
        super().__init__()
        self.delay = delay
        self._delayed = False
        self._lock = threading.Lock()

    def get(self, url, params=None, timeout=None):
        if "/repos/" in url:
            with self._lock:
                first = not self._delayed
                self._delayed = True
            if first:
                time.sleep(self.delay)
        return super().get(url, params=params, timeout=timeout)


class TestHalfOpenCircuit:
    """Rows turned away while half-open stay pending without stopping the run."""

    def test_rows_rejected_while_half_open_stay_pending(self, fetcher, store, session, clock):
        enricher = RepositoryEnricher(fetcher, store)
        for i in range(2):
            seed(store, id=f"r{i}", github_id=i, full_name=f"o/repo{i}")
            session.ok(f"repos/o/repo{i}", {**REPO_PAYLOAD, "id": i, "full_name": f"o/repo{i}"})
        trip_and_wait(fetcher, clock)
        fetcher.circuit_breaker.before_call()

        result = enricher.enrich_batch(10)

        assert result.circuit_open is False
        assert result.attempted_ids == []
        assert all(row["enrichment_attempts"] == 0 for row in store.all("repositories"))
        assert session.paths() == []

        fetcher.circuit_breaker.record_success()
        result = enricher.enrich_batch(10)

        assert result.success == 2
        assert store.get_enrichment_stats("repositories")["pending"] == 0

    def test_workers_resume_after_half_open_success(self, store, clock, token):
        slow = SlowFirstRequestSession()
        fetcher = GitHubFetcher(
            "ghp_test_token",
            settings=EnrichmentSettings(workers=4),
            session=slow,
            cancel_token=token,
            clock=clock,
        )
        for i in range(4):
            seed(store, id=f"r{i}", github_id=i, full_name=f"o/repo{i}")
            slow.ok(f"repos/o/repo{i}", {**REPO_PAYLOAD, "id": i, "full_name": f"o/repo{i}"})
        trip_and_wait(fetcher, clock)

        stats = EnrichmentOrchestrator(fetcher, store).enrich_all(EntityType.REPOSITORIES)

        assert stats.circuit_open is False
        assert stats.success == 4
        assert store.get_enrichment_stats("repositories")["pending"] == 0
        assert fetcher.circuit_breaker.state == CircuitState.CLOSED
