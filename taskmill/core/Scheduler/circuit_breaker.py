# circuit_breaker.py
# Named circuit breakers consulted by the executor before running a job

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger

from taskmill.core.Metrics import increment_circuit_trips, set_circuit_state


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = 0      # Normal operation, executions pass through
    OPEN = 1        # Failing, executions are refused
    HALF_OPEN = 2   # Testing if the dependency recovered


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout: float = 30.0
    half_open_limit: int = 3


class CircuitBreaker:
    """
    A single named breaker.

    States:
    - CLOSED: executions pass; consecutive failures are counted
    - OPEN: executions are refused until ``reset_timeout`` has elapsed
    - HALF_OPEN: up to ``half_open_limit`` trial executions; ``success_threshold``
      successes close the circuit, any failure opens it again
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None,
                 time_fn: Callable[[], float] = time.monotonic):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._time = time_fn

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at: Optional[float] = None
        self._trips = 0

        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, updating if necessary"""
        with self._lock:
            self._update_state()
            return self._state

    def _update_state(self):
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if self._time() - self._opened_at >= self.config.reset_timeout:
                self._transition_to_half_open()

    def _publish(self):
        try:
            set_circuit_state(self.name, self._state.value)
        except Exception:
            pass

    def _transition_to_closed(self):
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = None
        self._publish()
        logger.info(f"Circuit breaker '{self.name}' CLOSED")

    def _transition_to_open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self._time()
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._trips += 1
        self._publish()
        try:
            increment_circuit_trips(self.name)
        except Exception:
            pass
        logger.warning(f"Circuit breaker '{self.name}' OPEN - will retry in {self.config.reset_timeout}s")

    def _transition_to_half_open(self):
        self._state = CircuitState.HALF_OPEN
        self._success_count = 0
        self._failure_count = 0
        self._half_open_calls = 0
        self._publish()
        logger.info(f"Circuit breaker '{self.name}' HALF-OPEN (testing recovery)")

    def allow(self) -> bool:
        """Admit one execution; counts against the half-open trial budget."""
        with self._lock:
            self._update_state()
            if self._state == CircuitState.OPEN:
                return False
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_limit:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition_to_closed()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        with self._lock:
            self._update_state()
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to_open()
            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to_open()

    def reset(self):
        """Reset circuit breaker to initial state."""
        with self._lock:
            self._transition_to_closed()
            logger.info(f"Circuit breaker {self.name} reset")

    def status(self) -> Dict[str, Any]:
        with self._lock:
            self._update_state()
            return {
                "name": self.name,
                "state": self._state.name.lower(),
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "half_open_calls": self._half_open_calls,
                "trips": self._trips,
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "success_threshold": self.config.success_threshold,
                    "reset_timeout": self.config.reset_timeout,
                    "half_open_limit": self.config.half_open_limit,
                },
            }


class CircuitBreakerRegistry:
    """Breakers by name. Jobs refer to a breaker through ``job.circuit_breaker``."""

    def __init__(self, time_fn: Callable[[], float] = time.monotonic):
        self._time = time_fn
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def register(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config, self._time)
                self._breakers[name] = breaker
                logger.debug(f"Circuit breaker '{name}' registered")
            elif config is not None:
                breaker.config = config
            return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        with self._lock:
            return self._breakers.get(name)

    def allow(self, name: Optional[str]) -> bool:
        """Unknown or unnamed breakers always allow."""
        if not name:
            return True
        breaker = self.get(name)
        return True if breaker is None else breaker.allow()

    def record_success(self, name: Optional[str]) -> None:
        breaker = self.get(name) if name else None
        if breaker is not None:
            breaker.record_success()

    def record_failure(self, name: Optional[str]) -> None:
        breaker = self.get(name) if name else None
        if breaker is not None:
            breaker.record_failure()

    def state(self, name: str) -> Optional[CircuitState]:
        breaker = self.get(name)
        return breaker.state if breaker is not None else None

    def reset(self, name: Optional[str] = None) -> None:
        with self._lock:
            targets = list(self._breakers.values()) if name is None else [b for b in [self._breakers.get(name)] if b]
        for b in targets:
            b.reset()

    def status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: b.status() for name, b in self._breakers.items()}
