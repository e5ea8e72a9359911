"""Three-state circuit breaker guarding calls to the GitHub API."""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from fetchers.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Stops calling a failing upstream and periodically probes for recovery.

    - CLOSED: calls pass; consecutive failures are counted and reaching
      ``failure_threshold`` opens the circuit.
    - OPEN: calls are rejected with ``CircuitOpenError``. Once
      ``reset_timeout`` seconds have passed since opening, the breaker moves
      to HALF_OPEN (checked by the monitor thread and lazily on every gate).
    - HALF_OPEN: exactly one probe call is admitted. Success closes the
      circuit, failure opens it again with a fresh timer.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        monitor_interval: float = 5.0,
        name: str = "github",
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.monitor_interval = monitor_interval
        self.name = name
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._last_state_change_time = clock()
        self._probe_in_flight = False

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_reset_timeout()
            return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds the lock
        old_state = self._state
        self._state = new_state
        self._last_state_change_time = self.clock()
        self._probe_in_flight = False
        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Circuit '{self.name}' {old_state.value} → OPEN after "
                f"{self._failure_count} consecutive failures"
            )
        else:
            logger.info(f"Circuit '{self.name}' {old_state.value} → {new_state.value}")

    def _check_reset_timeout(self) -> None:
        # Caller holds the lock
        if self._state == CircuitState.OPEN and self.clock() - self._last_state_change_time > self.reset_timeout:
            self._transition(CircuitState.HALF_OPEN)

    def is_allowed(self) -> bool:
        """Return True if a call would currently be admitted."""
        with self._lock:
            self._check_reset_timeout()
            if self._state == CircuitState.OPEN:
                return False
            if self._state == CircuitState.HALF_OPEN:
                return not self._probe_in_flight
            return True

    def before_call(self) -> None:
        """Gate a call, claiming the probe slot when HALF_OPEN.

        Raises:
            CircuitOpenError: If the circuit is open or a probe is already running
        """
        with self._lock:
            self._check_reset_timeout()
            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(f"Circuit '{self.name}' is open")
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(f"Circuit '{self.name}' is half-open with a probe in flight")
                self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self.clock()
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Free the HALF_OPEN probe slot after an outcome that is neither success nor failure."""
        with self._lock:
            self._probe_in_flight = False

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._failure_count = 0
            self._last_failure_time = None
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)
            self._probe_in_flight = False

    def get_state(self) -> dict[str, Any]:
        with self._lock:
            self._check_reset_timeout()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "last_failure_time": self._last_failure_time,
                "last_state_change_time": self._last_state_change_time,
                "reset_timeout": self.reset_timeout,
                "monitoring": self.is_monitoring,
            }

    @property
    def is_monitoring(self) -> bool:
        return self._monitor_thread is not None and self._monitor_thread.is_alive()

    def start_monitoring(self) -> None:
        """Start the background thread that moves OPEN → HALF_OPEN on time."""
        if self.is_monitoring:
            return
        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            name=f"circuit-breaker-{self.name}",
            daemon=True,
        )
        self._monitor_thread.start()
        logger.debug(f"Circuit '{self.name}' monitor started (every {self.monitor_interval}s)")

    def stop_monitoring(self) -> None:
        """Stop the monitor thread. Safe to call more than once."""
        self._stop_event.set()
        thread = self._monitor_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.monitor_interval + 1)
        self._monitor_thread = None

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self.monitor_interval):
            with self._lock:
                self._check_reset_timeout()
