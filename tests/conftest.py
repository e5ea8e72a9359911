"""Shared pytest fixtures and configuration."""

import pytest

from fetchers.github import GitHubFetcher
from models.config_models import EnrichmentSettings
from storage.memory_store import MemoryStore
from utils.cancellation import CancellationToken, OperationCancelled

START_TIME = 1_700_000_000.0

HEALTHY_RATE_LIMIT = {
    "resources": {
        "core": {"limit": 5000, "remaining": 4999, "reset": int(START_TIME) + 3600},
        "search": {"limit": 30, "remaining": 30, "reset": int(START_TIME) + 60},
        "graphql": {"limit": 5000, "remaining": 5000, "reset": int(START_TIME) + 3600},
    },
    "rate": {"limit": 5000, "remaining": 4999, "reset": int(START_TIME) + 3600},
}


@pytest.fixture
def test_env(monkeypatch, tmp_path):
    """
    Create a temporary .env file with test credentials.

    This fixture sets up valid test environment variables so config
    can be loaded during tests without requiring real credentials.
    """
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_test_token_1234567890")
    monkeypatch.setenv("SUPABASE_URL", "https://test-project.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "test_supabase_key_1234567890")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    return {
        "github_token": "ghp_test_token_1234567890",
        "supabase_url": "https://test-project.supabase.co",
        "supabase_key": "test_supabase_key_1234567890",
        "log_level": "DEBUG",
    }


@pytest.fixture
def invalid_env(monkeypatch):
    """
    Set up invalid/missing environment variables for testing validation.
    """
    monkeypatch.setenv("GITHUB_TOKEN", "")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_KEY", "")


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeToken(CancellationToken):
    """Cancellation token whose sleeps advance a fake clock instead of blocking."""

    def __init__(self, clock: FakeClock):
        super().__init__()
        self.clock = clock
        self.sleeps = []

    def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        self.sleeps.append(seconds)
        if seconds > 0:
            self.clock.advance(seconds)


class CancellingToken(FakeToken):
    """Token that cancels itself on the first sleep."""

    def sleep(self, seconds: float) -> None:
        self.cancel()
        raise OperationCancelled("Operation cancelled during wait")


class FakeResponse:
    """Minimal stand-in for ``requests.Response``."""

    def __init__(self, status_code=200, json_data=None, headers=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        self.text = text

    def json(self):
        if isinstance(self._json, Exception):
            raise self._json
        return self._json


class FakeSession:
    """Routes ``GET https://api.github.com/<path>`` to queued responses.

    Each route holds a list of responses (or exceptions to raise). The last
    entry is sticky: it keeps being returned once the others are used up.
    Unknown paths answer 404, except ``rate_limit`` which reports a healthy
    budget unless overridden.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.headers = {}
        self.closed = False

    def add(self, path, *responses):
        self.routes[path] = list(responses)
        return self

    def ok(self, path, data, headers=None):
        return self.add(path, FakeResponse(200, data, headers=headers))

    def get(self, url, params=None, timeout=None):
        path = url.split("api.github.com/", 1)[-1]
        self.calls.append((path, params))

        queue = self.routes.get(path)
        if not queue:
            if path == "rate_limit":
                return FakeResponse(200, HEALTHY_RATE_LIMIT)
            return FakeResponse(404, {"message": "Not Found"}, text="Not Found")

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def paths(self):
        """Requested paths, without the rate limit endpoint."""
        return [path for path, _ in self.calls if path != "rate_limit"]

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token(clock):
    return FakeToken(clock)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_fetcher(session, clock, token):
    """Factory building a GitHubFetcher on the fake session, clock and token."""

    def _make(**overrides):
        settings = EnrichmentSettings(**overrides)
        return GitHubFetcher(
            token="ghp_test_token",
            settings=settings,
            session=session,
            cancel_token=token,
            clock=clock,
        )

    return _make


@pytest.fixture
def fetcher(make_fetcher):
    return make_fetcher()
