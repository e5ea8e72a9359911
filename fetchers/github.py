"""Resilient GitHub REST client.

Every public operation runs through the same pipeline:

1. Circuit breaker gate (fail fast with ``CircuitOpenError``)
2. Response cache lookup (when the caller allows it)
3. Rate limit check, waiting for the reset when the budget is low
4. HTTP call with exponential backoff + jitter for transient failures.
   A 403/429 carrying ``x-ratelimit-remaining: 0`` waits until the reset
   instead of counting as a failure, up to ``rate_limit_retries`` times.
5. Breaker bookkeeping, cache population, typed errors
"""

import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Optional

import requests

from fetchers.cache import (
    COMMIT_TTL,
    PULL_REQUEST_TTL,
    RATE_LIMIT_TTL,
    REPOSITORY_TTL,
    USER_TTL,
    ResponseCache,
    cache_key,
)
from fetchers.circuit_breaker import CircuitBreaker
from fetchers.exceptions import (
    GitHubApiError,
    NotFoundError,
    PermanentError,
    RateLimitError,
    TransientError,
)
from fetchers.rate_limit import RateLimitTracker
from models.config_models import EnrichmentSettings
from utils.cancellation import CancellationToken, OperationCancelled

logger = logging.getLogger(__name__)

PER_PAGE = 100


class GitHubFetcher:
    """GitHub API client with rate limiting, caching, retries and a circuit breaker.

    All mutable client state (rate limit budget, cache, breaker) lives on the
    instance, so tests and parallel runs can build isolated clients.
    """

    def __init__(
        self,
        token: str,
        settings: Optional[EnrichmentSettings] = None,
        session: Optional[requests.Session] = None,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimitTracker] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        cancel_token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.time,
        base_url: str = "https://api.github.com",
    ):
        """Initialize GitHub API client.

        Args:
            token: GitHub personal access token for authentication
            settings: Retry, backoff, rate limit and breaker tuning
            session: HTTP session (a new ``requests.Session`` by default)
            cache: Response cache shared by all operations
            rate_limiter: Rate limit tracker; its snapshot function is wired
                to this client's ``/rate_limit`` call when unset
            circuit_breaker: Breaker guarding every call
            cancel_token: Token interrupting rate limit and backoff waits
            clock: Time source (epoch seconds)
            base_url: API root
        """
        self.token = token
        self.settings = settings or EnrichmentSettings()
        self.base_url = base_url.rstrip("/")
        self.clock = clock
        self.cancel_token = cancel_token or CancellationToken()

        self.headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.session = session or requests.Session()
        self.session.headers.update(self.headers)

        self.cache = cache or ResponseCache(clock=clock)

        if rate_limiter is None:
            rate_limiter = RateLimitTracker(
                safety_margin=self.settings.safety_margin,
                token=self.cancel_token,
                clock=clock,
            )
        if rate_limiter.snapshot_fn is None:
            rate_limiter.snapshot_fn = self._fetch_rate_limit_resources
        self.rate_limiter = rate_limiter

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.settings.failure_threshold,
            reset_timeout=self.settings.reset_timeout_sec,
            monitor_interval=self.settings.monitor_interval_sec,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(
        self,
        path: str,
        params: Optional[dict] = None,
        key: Optional[str] = None,
        ttl: float = 0,
        use_cache: bool = True,
        resource: str = "core",
    ) -> Any:
        """Run one GET through breaker, cache, rate limiter and retry loop.

        Returns:
            Decoded JSON body

        Raises:
            CircuitOpenError: Breaker rejected the call
            RateLimitError: Budget exhausted after the inline waits
            NotFoundError: 404/410
            TransientError: Network or 5xx failure after all retries
            PermanentError: Any other non-success response or invalid JSON
            OperationCancelled: Cancelled while waiting
        """
        url = self._url(path)

        self.circuit_breaker.before_call()

        if use_cache and key:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit: {key}")
                self.circuit_breaker.release_probe()
                return cached

        try:
            self.rate_limiter.check_and_wait(resource)
            data = self._execute_with_retry(url, params)
        except NotFoundError:
            # The upstream answered correctly; the resource just isn't there
            self.circuit_breaker.record_success()
            raise
        except (TransientError, PermanentError):
            self.circuit_breaker.record_failure()
            raise
        except (RateLimitError, OperationCancelled):
            self.circuit_breaker.release_probe()
            raise

        self.circuit_breaker.record_success()
        if key and ttl:
            self.cache.set(key, data, ttl)
        return data

    def _execute_with_retry(self, url: str, params: Optional[dict] = None) -> Any:
        retries = 0
        rate_limit_waits = 0

        while True:
            self.cancel_token.raise_if_cancelled()
            try:
                response = self.session.get(
                    url, params=params, timeout=self.settings.request_timeout_sec
                )
            except requests.RequestException as e:
                error: GitHubApiError = TransientError(f"Request failed: {e}", url=url)
            else:
                self.rate_limiter.record_from_headers(response.headers)

                if self._is_rate_limited(response):
                    reset_at = self._reset_from_response(response)
                    if reset_at is not None and rate_limit_waits < self.settings.rate_limit_retries:
                        rate_limit_waits += 1
                        self._wait_for_reset(reset_at)
                        continue
                    raise RateLimitError(
                        f"API rate limit exceeded for {url}",
                        reset_at=reset_at,
                        status_code=response.status_code,
                        url=url,
                    )

                error = self._classify(response, url)
                if error is None:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise PermanentError(
                            f"Invalid JSON in response: {e}",
                            status_code=response.status_code,
                            url=url,
                        ) from e

            if isinstance(error, TransientError) and retries < self.settings.max_retries:
                delay = self._backoff_delay(retries)
                retries += 1
                logger.warning(
                    f"{error} - retry {retries}/{self.settings.max_retries} in {delay:.1f}s"
                )
                self.cancel_token.sleep(delay)
                continue

            raise error

    def _is_rate_limited(self, response: requests.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        headers = {str(k).lower(): v for k, v in (response.headers or {}).items()}
        return str(headers.get("x-ratelimit-remaining", "")).strip() == "0" or "retry-after" in headers

    def _reset_from_response(self, response: requests.Response) -> Optional[float]:
        """Compute the reset time (epoch seconds) from rate limit headers."""
        headers = {str(k).lower(): v for k, v in (response.headers or {}).items()}
        retry_after = headers.get("retry-after")
        if retry_after is not None:
            try:
                return self.clock() + float(retry_after)
            except ValueError:
                pass
        reset = headers.get("x-ratelimit-reset")
        if reset is not None:
            try:
                return float(reset)
            except ValueError:
                return None
        return None

    def _wait_for_reset(self, reset_at: float) -> None:
        wait_seconds = max(reset_at - self.clock() + 1, 0)
        reset_str = datetime.fromtimestamp(reset_at).strftime("%H:%M:%S")
        logger.warning(
            f"⏳ Rate limited! Waiting until {reset_str} ({wait_seconds:.0f}s)..."
        )
        self.cancel_token.sleep(wait_seconds)
        logger.info("Rate limit reset - resuming...")

    def _classify(self, response: requests.Response, url: str) -> Optional[GitHubApiError]:
        """Map a non-rate-limit response to an error, or None on success."""
        status = response.status_code
        if 200 <= status < 300:
            return None

        detail = (response.text or "")[:200]
        if status in (404, 410):
            return NotFoundError(f"Not found: {url}", status_code=status, url=url)
        if status >= 500:
            return TransientError(f"Server error {status}: {detail}", status_code=status, url=url)
        if status in (401, 403):
            logger.error(f"Authentication error: {status} - {detail}")
        return PermanentError(f"HTTP {status}: {detail}", status_code=status, url=url)

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential delay for retry ``attempt`` (0-based) with +/- jitter."""
        delay = min(self.settings.backoff_cap_sec, self.settings.backoff_base_sec * (2 ** attempt))
        jitter = delay * self.settings.jitter_ratio * random.uniform(-1, 1)
        return min(self.settings.backoff_cap_sec, max(0.0, delay + jitter))

    def _paginate(
        self,
        path: str,
        key: str,
        ttl: float,
        use_cache: bool = True,
        params: Optional[dict] = None,
        max_pages: int = 30,
    ) -> list[dict[str, Any]]:
        """Fetch every page of a list endpoint and cache the combined list."""
        self.circuit_breaker.before_call()
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                self.circuit_breaker.release_probe()
                return cached
        self.circuit_breaker.release_probe()

        items: list[dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            page_params = {**(params or {}), "per_page": PER_PAGE, "page": page}
            batch = self._request(path, params=page_params, use_cache=False)
            if not batch:
                break
            items.extend(batch)
            if len(batch) < PER_PAGE:
                break

        self.cache.set(key, items, ttl)
        return items

    def _fetch_rate_limit_payload(self) -> dict[str, Any]:
        """GET /rate_limit directly, bypassing breaker, cache and tracker."""
        url = self._url("rate_limit")
        try:
            response = self.session.get(url, timeout=self.settings.request_timeout_sec)
        except requests.RequestException as e:
            raise TransientError(f"Request failed: {e}", url=url) from e

        error = self._classify(response, url)
        if error is not None:
            raise error
        try:
            return response.json()
        except ValueError as e:
            raise PermanentError(f"Invalid JSON in response: {e}", url=url) from e

    def _fetch_rate_limit_resources(self) -> Any:
        payload = self._fetch_rate_limit_payload()
        if not isinstance(payload, dict):
            return None
        return payload.get("resources")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_repository(self, owner: str, repo: Optional[str] = None, use_cache: bool = True) -> dict[str, Any]:
        """Fetch repository metadata.

        Args:
            owner: Repository owner, or a full name like "facebook/react"
            repo: Repository name (omit when ``owner`` is a full name)
            use_cache: Serve from cache when available

        Returns:
            Raw GitHub repository object
        """
        full_name = f"{owner}/{repo}" if repo else owner
        if "/" not in full_name:
            raise PermanentError(f"Invalid repository name: {full_name!r}")
        return self._request(
            f"repos/{full_name}",
            key=cache_key("repo", full_name),
            ttl=REPOSITORY_TTL,
            use_cache=use_cache,
        )

    def get_user(self, username: str, use_cache: bool = True) -> dict[str, Any]:
        return self._request(
            f"users/{username}",
            key=cache_key("user", username),
            ttl=USER_TTL,
            use_cache=use_cache,
        )

    def get_user_by_id(self, user_id: int, use_cache: bool = True) -> dict[str, Any]:
        """Fetch a user profile by numeric GitHub id (stable across renames)."""
        return self._request(
            f"user/{user_id}",
            key=cache_key("user", "id", user_id),
            ttl=USER_TTL,
            use_cache=use_cache,
        )

    def get_user_repositories(self, username: str, max_pages: int = 1, use_cache: bool = True) -> list[dict[str, Any]]:
        """Fetch a user's public repositories, most recently pushed first."""
        return self._paginate(
            f"users/{username}/repos",
            key=cache_key("user_repos", username),
            ttl=USER_TTL,
            use_cache=use_cache,
            params={"sort": "pushed"},
            max_pages=max_pages,
        )

    def get_pull_request(self, owner: str, repo: str, pr_number: int, use_cache: bool = True) -> dict[str, Any]:
        return self._request(
            f"repos/{owner}/{repo}/pulls/{pr_number}",
            key=cache_key("pr", f"{owner}/{repo}", pr_number),
            ttl=PULL_REQUEST_TTL,
            use_cache=use_cache,
        )

    def get_pull_request_commits(self, owner: str, repo: str, pr_number: int, use_cache: bool = True) -> list[dict[str, Any]]:
        return self._paginate(
            f"repos/{owner}/{repo}/pulls/{pr_number}/commits",
            key=cache_key("pr", f"{owner}/{repo}", pr_number, "commits"),
            ttl=PULL_REQUEST_TTL,
            use_cache=use_cache,
        )

    def get_pull_request_files(self, owner: str, repo: str, pr_number: int, use_cache: bool = True) -> list[dict[str, Any]]:
        return self._paginate(
            f"repos/{owner}/{repo}/pulls/{pr_number}/files",
            key=cache_key("pr", f"{owner}/{repo}", pr_number, "files"),
            ttl=PULL_REQUEST_TTL,
            use_cache=use_cache,
        )

    def get_pull_request_reviews(self, owner: str, repo: str, pr_number: int, use_cache: bool = True) -> list[dict[str, Any]]:
        return self._paginate(
            f"repos/{owner}/{repo}/pulls/{pr_number}/reviews",
            key=cache_key("pr", f"{owner}/{repo}", pr_number, "reviews"),
            ttl=PULL_REQUEST_TTL,
            use_cache=use_cache,
        )

    def get_pull_request_comments(self, owner: str, repo: str, pr_number: int, use_cache: bool = True) -> list[dict[str, Any]]:
        """Fetch review comments left on the pull request diff."""
        return self._paginate(
            f"repos/{owner}/{repo}/pulls/{pr_number}/comments",
            key=cache_key("pr", f"{owner}/{repo}", pr_number, "comments"),
            ttl=PULL_REQUEST_TTL,
            use_cache=use_cache,
        )

    def get_commit(self, owner: str, repo: str, sha: str, use_cache: bool = True) -> dict[str, Any]:
        """Fetch a single commit including its per-file changes."""
        return self._request(
            f"repos/{owner}/{repo}/commits/{sha}",
            key=cache_key("commit", f"{owner}/{repo}", sha),
            ttl=COMMIT_TTL,
            use_cache=use_cache,
        )

    def get_rate_limits(self, use_cache: bool = True) -> dict[str, Any]:
        """Fetch the rate limit snapshot for every resource class.

        Does not pass through the breaker or the tracker's wait, so the
        budget can be inspected even while the circuit is open. The tracker
        is updated with the result.
        """
        key = cache_key("rate_limit")
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        payload = self._fetch_rate_limit_payload()
        for resource, data in payload.get("resources", {}).items():
            self.rate_limiter.update(
                resource,
                limit=data.get("limit"),
                remaining=data.get("remaining"),
                reset=data.get("reset"),
            )
        self.cache.set(key, payload, RATE_LIMIT_TTL)
        return payload

    def close(self) -> None:
        """Stop the breaker monitor and release the HTTP session."""
        self.circuit_breaker.stop_monitoring()
        self.session.close()
