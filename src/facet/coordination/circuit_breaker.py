"""Circuit breaker pattern for failing agents."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from facet.config.schema import BreakerConfig
from facet.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Too many failures, calls rejected
    HALF_OPEN = "half_open"  # Single probe allowed to test recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Open circuit after this many failures
    success_threshold: int = 1  # Close circuit after this many successful probes
    open_timeout_ms: float = 60000.0  # Milliseconds before probing in half-open

    @classmethod
    def from_settings(cls, settings: BreakerConfig) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.failure_threshold,
            success_threshold=settings.success_threshold,
            open_timeout_ms=float(settings.open_timeout_ms),
        )


@dataclass
class CircuitBreakerStats:
    """Snapshot of a breaker's state and counters."""

    agent_id: str
    state: CircuitState
    failure_count: int
    total_calls: int
    successful_calls: int
    failed_calls: int
    rejected_calls: int
    success_rate: float
    uptime: float
    last_failure_time: float | None = None
    next_retry_time: float | None = None


class CircuitBreaker:
    """
    Circuit breaker for isolating a failing agent.

    Failures in closed state accumulate until the threshold opens the
    circuit. Successes in closed state decay the failure count by one.
    After the open timeout, exactly one probe is admitted in half-open;
    its outcome closes or reopens the circuit.
    """

    HALF_OPEN_PERMITS = 1

    def __init__(
        self,
        config: CircuitBreakerConfig,
        agent_id: str = "",
        clock: Clock = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            config: Circuit breaker configuration
            agent_id: Agent this breaker protects
            clock: Monotonic time source in seconds
        """
        self.config = config
        self.agent_id = agent_id
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.probe_successes = 0
        self.last_failure_time: float | None = None
        self.next_retry_time: float | None = None
        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.rejected_calls = 0
        self._probes_in_flight = 0
        self._created_at = clock()
        self._opened_at: float | None = None
        self._open_seconds = 0.0

    def can_execute(self) -> bool:
        """Check whether a call may proceed.

        In half-open state this claims the probe permit, so a True result
        must be followed by :meth:`record_success`, :meth:`record_failure`
        or :meth:`release_probe`.
        """
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.next_retry_time is not None and self._clock() >= self.next_retry_time:
                self._transition_to_half_open()
            else:
                return False

        if self._probes_in_flight < self.HALF_OPEN_PERMITS:
            self._probes_in_flight += 1
            return True
        return False

    def record_success(self) -> None:
        """Record a successful operation."""
        self.total_calls += 1
        self.successful_calls += 1

        if self.state == CircuitState.HALF_OPEN:
            self._probes_in_flight = max(0, self._probes_in_flight - 1)
            self.probe_successes += 1
            if self.probe_successes >= self.config.success_threshold:
                self._close_circuit()
        elif self.state == CircuitState.CLOSED:
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self) -> None:
        """Record a failed operation."""
        self.total_calls += 1
        self.failed_calls += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.config.failure_threshold:
                self._open_circuit()

        elif self.state == CircuitState.HALF_OPEN:
            # Probe failed, back to open
            self._probes_in_flight = max(0, self._probes_in_flight - 1)
            self.failure_count += 1
            self._open_circuit()

    def release_probe(self) -> None:
        """Return a half-open permit without recording an outcome."""
        if self.state == CircuitState.HALF_OPEN:
            self._probes_in_flight = max(0, self._probes_in_flight - 1)

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run ``fn`` under the breaker.

        Args:
            fn: Async callable to invoke
            *args: Positional arguments for ``fn``
            **kwargs: Keyword arguments for ``fn``

        Returns:
            Result of ``fn``

        Raises:
            CircuitOpenError: If the circuit does not admit the call;
                ``fn`` is not invoked
        """
        if not self.can_execute():
            self.rejected_calls += 1
            raise CircuitOpenError(self.agent_id, self.next_retry_time or self._clock())

        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            self.release_probe()
            raise
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def _open_circuit(self) -> None:
        """Transition to OPEN state."""
        now = self._clock()
        if self.state != CircuitState.OPEN:
            self._opened_at = now
        self.state = CircuitState.OPEN
        self.next_retry_time = now + self.config.open_timeout_ms / 1000
        self.probe_successes = 0
        self._probes_in_flight = 0
        logger.warning(
            "Circuit opened for agent %s after %d failures", self.agent_id, self.failure_count
        )

    def _close_circuit(self) -> None:
        """Transition to CLOSED state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.probe_successes = 0
        self.last_failure_time = None
        self.next_retry_time = None
        self._probes_in_flight = 0
        logger.info("Circuit closed for agent %s", self.agent_id)

    def _transition_to_half_open(self) -> None:
        """Transition to HALF_OPEN state."""
        if self._opened_at is not None:
            self._open_seconds += self._clock() - self._opened_at
            self._opened_at = None
        self.state = CircuitState.HALF_OPEN
        self.failure_count = 0
        self.probe_successes = 0
        self._probes_in_flight = 0
        logger.info("Circuit half-open for agent %s, admitting probe", self.agent_id)

    def get_state(self) -> CircuitState:
        """Get current circuit state without claiming a probe permit."""
        return self.state

    def is_open(self) -> bool:
        """True while calls are rejected outright."""
        if self.state != CircuitState.OPEN:
            return False
        return self.next_retry_time is None or self._clock() < self.next_retry_time

    def force_state(self, state: CircuitState) -> None:
        """Operator override of the circuit state."""
        if state == CircuitState.CLOSED:
            self._close_circuit()
        elif state == CircuitState.OPEN:
            self._open_circuit()
        else:
            self.state = CircuitState.OPEN
            self._transition_to_half_open()

    def reset(self) -> None:
        """Reset to the initial closed state and clear counters."""
        self._close_circuit()
        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.rejected_calls = 0
        self._created_at = self._clock()
        self._opened_at = None
        self._open_seconds = 0.0

    def get_stats(self) -> CircuitBreakerStats:
        """Snapshot of state and counters."""
        now = self._clock()
        open_seconds = self._open_seconds
        if self._opened_at is not None:
            open_seconds += now - self._opened_at
        elapsed = now - self._created_at
        uptime = 1.0 if elapsed <= 0 else max(0.0, 1.0 - open_seconds / elapsed)
        success_rate = 1.0 if self.total_calls == 0 else self.successful_calls / self.total_calls

        return CircuitBreakerStats(
            agent_id=self.agent_id,
            state=self.state,
            failure_count=self.failure_count,
            total_calls=self.total_calls,
            successful_calls=self.successful_calls,
            failed_calls=self.failed_calls,
            rejected_calls=self.rejected_calls,
            success_rate=success_rate,
            uptime=uptime,
            last_failure_time=self.last_failure_time,
            next_retry_time=self.next_retry_time,
        )


@dataclass
class BreakerHealthReport:
    """Aggregate health across all agent breakers."""

    healthy_agents: list[str] = field(default_factory=list)
    unhealthy_agents: list[str] = field(default_factory=list)
    overall_health: float = 1.0  # Fraction of agents not open
    stats: dict[str, CircuitBreakerStats] = field(default_factory=dict)


class CircuitBreakerRegistry:
    """Registry of circuit breakers per agent."""

    def __init__(self, config: CircuitBreakerConfig, clock: Clock = time.monotonic):
        """
        Initialize registry.

        Args:
            config: Default circuit breaker configuration
            clock: Time source shared by all breakers
        """
        self.config = config
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def register(self, agent_id: str) -> CircuitBreaker:
        """Create the breaker for an agent if it does not exist yet."""
        return self.get_breaker(agent_id)

    def get_breaker(self, agent_id: str) -> CircuitBreaker:
        """
        Get circuit breaker for an agent.

        Args:
            agent_id: Agent id

        Returns:
            Circuit breaker for the agent
        """
        if agent_id not in self._breakers:
            self._breakers[agent_id] = CircuitBreaker(self.config, agent_id, self._clock)
        return self._breakers[agent_id]

    def can_execute(self, agent_id: str) -> bool:
        """Check if a call may proceed for the agent."""
        return self.get_breaker(agent_id).can_execute()

    def is_open(self, agent_id: str) -> bool:
        """Check if the agent's circuit currently rejects calls."""
        return self.get_breaker(agent_id).is_open()

    def record_success(self, agent_id: str) -> None:
        """Record successful operation for agent."""
        self.get_breaker(agent_id).record_success()

    def record_failure(self, agent_id: str) -> None:
        """Record failed operation for agent."""
        self.get_breaker(agent_id).record_failure()

    def get_state(self, agent_id: str) -> CircuitState:
        """Get circuit state for agent."""
        return self.get_breaker(agent_id).get_state()

    def reset(self, agent_id: str) -> None:
        """Operator reset of one agent's breaker."""
        self.get_breaker(agent_id).reset()

    @property
    def agent_ids(self) -> list[str]:
        return list(self._breakers.keys())

    def health_report(self) -> BreakerHealthReport:
        """Aggregate health of every registered breaker."""
        report = BreakerHealthReport()
        for agent_id, breaker in self._breakers.items():
            report.stats[agent_id] = breaker.get_stats()
            if breaker.is_open():
                report.unhealthy_agents.append(agent_id)
            else:
                report.healthy_agents.append(agent_id)

        if self._breakers:
            report.overall_health = len(report.healthy_agents) / len(self._breakers)
        return report
