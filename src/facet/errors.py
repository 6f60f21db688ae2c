"""Error taxonomy for agent coordination and orchestration."""


class FacetError(Exception):
    """Base class for all coordination and orchestration errors."""


class CircuitOpenError(FacetError):
    """Agent was skipped because its circuit breaker is open."""

    def __init__(self, agent_id: str, next_retry_time: float):
        self.agent_id = agent_id
        self.next_retry_time = next_retry_time
        super().__init__(f"Circuit open for agent '{agent_id}' until {next_retry_time:.3f}")


class AgentTimeoutError(FacetError, TimeoutError):
    """Agent call exceeded its deadline."""

    def __init__(self, agent_id: str, timeout_ms: float):
        self.agent_id = agent_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Agent '{agent_id}' did not respond within {timeout_ms:.0f}ms")


class AgentInvocationError(FacetError):
    """Agent raised while processing a request."""

    def __init__(self, agent_id: str, message: str):
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' failed: {message}")


class ConfigurationError(FacetError):
    """Coordination was requested with an unusable setup."""


class NoEligibleAgentsError(FacetError):
    """Filtering left no agent able to take the request."""
