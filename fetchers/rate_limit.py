"""GitHub rate limit bookkeeping.

The tracker keeps the last known budget per resource class (core, search,
graphql) and blocks callers when the remaining budget drops to the safety
margin. State is refreshed opportunistically from ``x-ratelimit-*``
response headers and, when missing or stale, from the ``/rate_limit``
endpoint through an injected snapshot function.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from fetchers.exceptions import GitHubApiError
from models.data_models import RateLimitState
from utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

# Seconds added to the reset time before resuming
RESET_BUFFER_SEC = 1.0

# Snapshot function: returns {"core": {"limit": .., "remaining": .., "reset": ..}, ...}
SnapshotFn = Callable[[], Mapping[str, Mapping[str, Any]]]


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class RateLimitTracker:
    """Tracks remaining API budget and waits for resets when it runs low."""

    def __init__(
        self,
        snapshot_fn: Optional[SnapshotFn] = None,
        safety_margin: int = 20,
        token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.time,
        stale_after: float = 60.0,
    ):
        """Initialize the tracker.

        Args:
            snapshot_fn: Callable fetching the full rate limit snapshot. It must
                not go through the tracker itself.
            safety_margin: Requests kept in reserve before waiting for reset
            token: Cancellation token used for every wait
            clock: Time source (epoch seconds)
            stale_after: Seconds after which a recorded state is refreshed
        """
        self.snapshot_fn = snapshot_fn
        self.safety_margin = safety_margin
        self.token = token or CancellationToken()
        self.clock = clock
        self.stale_after = stale_after
        self._states: dict[str, RateLimitState] = {}
        self._lock = threading.Lock()

    def update(
        self,
        resource: str,
        limit: Optional[int],
        remaining: Optional[int],
        reset: Optional[int],
    ) -> RateLimitState:
        state = RateLimitState(
            resource=resource,
            limit=limit,
            remaining=remaining,
            reset=reset,
            updated_at=self.clock(),
        )
        with self._lock:
            self._states[resource] = state
        return state

    def record_from_headers(self, headers: Mapping[str, Any], resource: str = "core") -> Optional[RateLimitState]:
        """Update state from ``x-ratelimit-*`` response headers.

        Header lookup is case-insensitive. Responses without rate limit
        headers leave the state untouched.
        """
        if not headers:
            return None
        normalized = {str(k).lower(): v for k, v in headers.items()}

        remaining = _parse_int(normalized.get("x-ratelimit-remaining"))
        if remaining is None:
            return None

        resource = normalized.get("x-ratelimit-resource") or resource
        state = self.update(
            resource,
            limit=_parse_int(normalized.get("x-ratelimit-limit")),
            remaining=remaining,
            reset=_parse_int(normalized.get("x-ratelimit-reset")),
        )
        logger.debug(f"Rate limit ({resource}): {state.remaining}/{state.limit} remaining")
        return state

    def refresh(self) -> bool:
        """Reload every resource class from the rate limit endpoint.

        Never raises: a failed refresh is logged and the previous state kept.

        Returns:
            True if the snapshot was loaded
        """
        if self.snapshot_fn is None:
            return False

        try:
            resources = self.snapshot_fn()
        except GitHubApiError as e:
            logger.warning(f"Could not refresh rate limits: {e}")
            return False

        if not isinstance(resources, dict):
            logger.warning(f"Unexpected rate limit payload: {type(resources).__name__}")
            return False

        for resource, data in resources.items():
            if not isinstance(data, dict):
                logger.warning(f"Skipping malformed rate limit entry for {resource}")
                continue
            self.update(
                resource,
                limit=_parse_int(data.get("limit")),
                remaining=_parse_int(data.get("remaining")),
                reset=_parse_int(data.get("reset")),
            )
        return True

    def get_state(self, resource: str = "core") -> Optional[RateLimitState]:
        with self._lock:
            return self._states.get(resource)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return every known resource state as plain dicts."""
        with self._lock:
            return {name: state.model_dump() for name, state in self._states.items()}

    def reset_at(self, resource: str = "core") -> Optional[float]:
        state = self.get_state(resource)
        return float(state.reset) if state and state.reset is not None else None

    def is_stale(self, state: RateLimitState) -> bool:
        return self.clock() - state.updated_at > self.stale_after

    def check_and_wait(self, resource: str = "core", safety_margin: Optional[int] = None) -> float:
        """Block until it is safe to spend another request on ``resource``.

        Missing or stale state triggers a refresh first. When the remaining
        budget is at or below the margin, sleeps until the reset time plus a
        one second buffer and then refreshes. A reset time already in the
        past means the window rolled over: no wait, just a refresh.

        Returns:
            Seconds spent waiting (0 when no wait was needed)

        Raises:
            OperationCancelled: If the token is cancelled during the wait
        """
        margin = self.safety_margin if safety_margin is None else safety_margin

        state = self.get_state(resource)
        if state is None or state.remaining is None or self.is_stale(state):
            self.refresh()
            state = self.get_state(resource)

        if state is None or state.remaining is None:
            # Nothing known even after refresh; let the request reveal the budget
            return 0.0

        if state.remaining > margin:
            return 0.0

        wait_seconds = (state.reset or 0) - self.clock() + RESET_BUFFER_SEC
        if wait_seconds <= 0:
            logger.debug(f"Rate limit window for '{resource}' already reset, refreshing")
            self.refresh()
            return 0.0

        reset_str = datetime.fromtimestamp(state.reset).strftime("%H:%M:%S") if state.reset else "unknown"
        logger.warning(
            f"⏳ Rate limit low ({state.remaining}/{state.limit} '{resource}' requests left). "
            f"Waiting until {reset_str} ({wait_seconds:.0f}s)..."
        )
        self.token.sleep(wait_seconds)
        logger.info("Rate limit reset - resuming...")
        self.refresh()
        return wait_seconds
