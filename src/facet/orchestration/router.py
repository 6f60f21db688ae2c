"""Weighted multi-factor routing of a user turn to one agent."""

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from facet.agents.base import Agent, AgentStatus, AgentType
from facet.config.schema import RoutingConfig, RoutingWeights
from facet.coordination.circuit_breaker import CircuitBreakerRegistry
from facet.coordination.models import Urgency
from facet.errors import ConfigurationError, NoEligibleAgentsError

logger = logging.getLogger(__name__)

CRISIS_CAPABILITY = "crisis intervention"
DEFAULT_ESTIMATE_MS = 3000.0
MAX_ALTERNATIVES = 3

# Input keyword -> capabilities or specializations that serve it
SPECIALIZATION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "family": ("family therapy", "family systems", "relationship"),
    "anxiety": ("anxiety", "cognitive behavioral", "cbt"),
    "mindfulness": ("mindfulness", "meditation", "mbsr", "mbct"),
    "progress": ("progress tracking", "goal setting", "outcome measurement"),
    "culture": ("cultural integration", "cultural identity"),
}

RELIGIOUS_TERMS = ("spiritual", "religious", "faith", "traditional")

GENERATIONAL_TERMS: dict[str, tuple[str, ...]] = {
    "first": ("immigration", "acculturation", "cultural adaptation"),
    "second": ("bicultural", "identity", "generational conflict"),
    "third": ("cultural heritage", "tradition preservation"),
}


@dataclass
class CulturalProfile:
    """Cultural background stated by the requester."""

    primary_culture: str | None = None
    secondary_cultures: list[str] = field(default_factory=list)
    language_preferences: list[str] = field(default_factory=list)
    religious_background: str | None = None
    generational_status: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CulturalProfile":
        return cls(
            primary_culture=data.get("primary_culture"),
            secondary_cultures=list(data.get("secondary_cultures", [])),
            language_preferences=list(data.get("language_preferences", [])),
            religious_background=data.get("religious_background"),
            generational_status=data.get("generational_status"),
        )


@dataclass
class PerformanceRequirements:
    max_response_time_ms: float | None = None
    min_success_rate: float | None = None


@dataclass
class SessionTurn:
    """One earlier turn of the session, as seen by the router."""

    agent_id: str
    escalation_required: bool = False


@dataclass
class RoutingContext:
    """Everything the router knows about the turn being routed."""

    session_id: str
    user_input: str
    user_id: str = "anonymous"
    urgency: Urgency = Urgency.MEDIUM
    cultural_profile: CulturalProfile | None = None
    session_history: list[SessionTurn] = field(default_factory=list)
    current_agent: str | None = None
    preferred_agents: list[str] = field(default_factory=list)
    blacklisted_agents: list[str] = field(default_factory=list)
    requirements: PerformanceRequirements | None = None


@dataclass
class RoutingFactors:
    """Per-factor scores of one agent, each in [0, 1]."""

    cultural_match: float
    load_balance: float
    performance: float
    specialization: float
    user_preference: float
    session_continuity: float

    def weighted(self, weights: RoutingWeights) -> float:
        return (
            self.cultural_match * weights.cultural_match
            + self.load_balance * weights.load_balance
            + self.performance * weights.performance
            + self.specialization * weights.specialization
            + self.user_preference * weights.user_preference
            + self.session_continuity * weights.session_continuity
        )


@dataclass
class AgentPerformanceProfile:
    """Moving averages of an agent's observed performance."""

    agent_id: str
    average_response_time_ms: float = 2000.0
    success_rate: float = 0.85
    satisfaction: float = 0.8
    updates: int = 0

    def update(
        self, response_time_ms: float, success: bool, satisfaction: float | None = None
    ) -> None:
        self.average_response_time_ms = self.average_response_time_ms * 0.9 + response_time_ms * 0.1
        self.success_rate = self.success_rate * 0.95 + (1.0 if success else 0.0) * 0.05
        if satisfaction is not None:
            self.satisfaction = self.satisfaction * 0.9 + satisfaction * 0.1
        self.updates += 1


@dataclass
class RoutingDecision:
    """Ranked outcome of one routing call."""

    selected_agent: Agent
    score: float
    factors: RoutingFactors
    alternatives: list[Agent]
    reason: str
    estimated_response_time_ms: float
    confidence: float
    timestamp: float = field(default_factory=time.time)

    @property
    def selected_agent_id(self) -> str:
        return self.selected_agent.descriptor.id


@dataclass
class ScoredAgent:
    agent: Agent
    factors: RoutingFactors
    score: float


LoadBalancer = Callable[[AgentStatus, AgentPerformanceProfile], float]
CulturalMatcher = Callable[[Agent, CulturalProfile], float]


def weighted_round_robin(status: AgentStatus, profile: AgentPerformanceProfile) -> float:
    # Sessions beyond capacity count as queued
    queue_length = max(0, status.active_sessions - status.max_concurrency)
    return (1.0 - status.utilization) * max(0.0, 1.0 - queue_length * 0.1)


def least_connections(status: AgentStatus, profile: AgentPerformanceProfile) -> float:
    if status.max_concurrency <= 0:
        return 0.0
    return max(0.0, 1.0 - status.active_sessions / status.max_concurrency)


def performance_based(status: AgentStatus, profile: AgentPerformanceProfile) -> float:
    response_score = max(0.0, 1.0 - profile.average_response_time_ms / 5000)
    penalty = 0.5 if status.utilization > 0.8 else 1.0
    return (profile.success_rate * 0.6 + response_score * 0.4) * penalty


def cultural_affinity(agent: Agent, profile: CulturalProfile) -> float:
    specializations = [s.lower() for s in agent.descriptor.cultural_specializations]
    score = 0.0

    if profile.primary_culture:
        primary = profile.primary_culture.lower()
        if any(primary in spec for spec in specializations):
            score += 0.6

    for culture in profile.secondary_cultures:
        if any(culture.lower() in spec for spec in specializations):
            score += 0.2

    if profile.language_preferences:
        score += 0.1

    if profile.religious_background and any(
        term in spec for spec in specializations for term in RELIGIOUS_TERMS
    ):
        score += 0.1

    return min(1.0, score)


def generational_matching(agent: Agent, profile: CulturalProfile) -> float:
    specializations = [s.lower() for s in agent.descriptor.cultural_specializations]
    score = 0.3
    if profile.generational_status:
        terms = GENERATIONAL_TERMS.get(profile.generational_status.lower(), ())
        for term in terms:
            if any(term in spec for spec in specializations):
                score += 0.2
    return min(1.0, score)


LOAD_BALANCERS: dict[str, LoadBalancer] = {
    "weighted_round_robin": weighted_round_robin,
    "least_connections": least_connections,
    "performance_based": performance_based,
}

CULTURAL_MATCHERS: dict[str, CulturalMatcher] = {
    "cultural_affinity": cultural_affinity,
    "generational_matching": generational_matching,
}


class IntelligentRouter:
    """
    Scores candidate agents on six weighted factors and picks the best.

    Routing is deterministic: equal scores keep the candidates' input
    order. Load figures come from each agent's live status, performance
    figures from moving averages fed by ``update_agent_performance``.
    """

    def __init__(
        self,
        config: RoutingConfig | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize router.

        Args:
            config: Weights, strategy names and history limits
            breakers: Circuit breakers consulted by the pre-filter
            clock: Wall clock in epoch seconds
        """
        self.config = config or RoutingConfig()
        self.breakers = breakers
        self._clock = clock
        self._profiles: dict[str, AgentPerformanceProfile] = {}
        self._history: dict[str, list[RoutingDecision]] = {}
        self.load_balancing = self.config.load_balancing
        self.cultural_algorithm = self.config.cultural_algorithm

    def route(self, candidates: Sequence[Agent], context: RoutingContext) -> RoutingDecision:
        """
        Pick the best agent for a turn.

        Args:
            candidates: Agents that may take the turn
            context: Routing context of the turn

        Returns:
            Decision with the selected agent, up to three alternatives and
            the factor breakdown

        Raises:
            NoEligibleAgentsError: If the pre-filter removes every candidate
        """
        eligible = self.pre_filter(candidates, context)
        if not eligible:
            raise NoEligibleAgentsError(
                f"No eligible agents among {len(candidates)} candidates "
                f"for session {context.session_id}"
            )

        scored = self.score_agents(eligible, context)
        best = scored[0]
        decision = RoutingDecision(
            selected_agent=best.agent,
            score=best.score,
            factors=best.factors,
            alternatives=[s.agent for s in scored[1 : 1 + MAX_ALTERNATIVES]],
            reason=self.routing_reason(best.factors, context),
            estimated_response_time_ms=self.estimate_response_time(best.agent, context),
            confidence=self.confidence(scored),
            timestamp=self._clock(),
        )
        self._store_decision(context.session_id, decision)
        logger.debug(
            "Routed session %s to %s (score %.3f, confidence %.2f)",
            context.session_id,
            decision.selected_agent_id,
            decision.score,
            decision.confidence,
        )
        return decision

    def pre_filter(self, candidates: Sequence[Agent], context: RoutingContext) -> list[Agent]:
        """Drop agents that are open-circuited, blacklisted, full or too slow."""
        eligible = []
        for agent in candidates:
            agent_id = agent.descriptor.id
            if agent_id in context.blacklisted_agents:
                continue
            if self.breakers is not None and self.breakers.is_open(agent_id):
                continue
            if agent.get_status().at_capacity:
                continue

            profile = self._profiles.get(agent_id)
            reqs = context.requirements
            if profile is not None and reqs is not None:
                if (
                    reqs.max_response_time_ms is not None
                    and profile.average_response_time_ms > reqs.max_response_time_ms
                ):
                    continue
                if reqs.min_success_rate is not None and profile.success_rate < reqs.min_success_rate:
                    continue
            eligible.append(agent)
        return eligible

    def score_agents(self, agents: Sequence[Agent], context: RoutingContext) -> list[ScoredAgent]:
        """Score and rank agents, best first."""
        weights = self.weights_for(context.urgency)
        scored = []
        for agent in agents:
            factors = self.routing_factors(agent, context)
            scored.append(ScoredAgent(agent=agent, factors=factors, score=factors.weighted(weights)))
        return sorted(scored, key=lambda s: s.score, reverse=True)

    def weights_for(self, urgency: Urgency) -> RoutingWeights:
        if urgency == Urgency.CRITICAL:
            return self.config.critical_urgency_weights
        if urgency == Urgency.HIGH:
            return self.config.high_urgency_weights
        return self.config.weights

    def routing_factors(self, agent: Agent, context: RoutingContext) -> RoutingFactors:
        return RoutingFactors(
            cultural_match=self._cultural_match(agent, context),
            load_balance=self._load_balance(agent),
            performance=self._performance(agent),
            specialization=self._specialization(agent, context),
            user_preference=self._user_preference(agent, context),
            session_continuity=self._session_continuity(agent, context),
        )

    def _cultural_match(self, agent: Agent, context: RoutingContext) -> float:
        if context.cultural_profile is None:
            return 0.5
        return CULTURAL_MATCHERS[self.cultural_algorithm](agent, context.cultural_profile)

    def _load_balance(self, agent: Agent) -> float:
        profile = self._profiles.get(agent.descriptor.id)
        if profile is None:
            return 0.5
        return LOAD_BALANCERS[self.load_balancing](agent.get_status(), profile)

    def _performance(self, agent: Agent) -> float:
        profile = self._profiles.get(agent.descriptor.id)
        if profile is None:
            return 0.5
        response_score = max(0.0, 1.0 - profile.average_response_time_ms / 10000)
        return profile.success_rate * 0.4 + response_score * 0.3 + profile.satisfaction * 0.3

    def _specialization(self, agent: Agent, context: RoutingContext) -> float:
        capabilities = [c.lower() for c in agent.descriptor.capabilities]
        specializations = [s.lower() for s in agent.descriptor.cultural_specializations]
        text = context.user_input.lower()
        score = 0.0

        if context.urgency == Urgency.CRITICAL and CRISIS_CAPABILITY in capabilities:
            score += 0.8

        profile = context.cultural_profile
        if profile is not None and profile.primary_culture:
            primary = profile.primary_culture.lower()
            if any(primary in spec for spec in specializations):
                score += 0.6

        for keyword, wanted in SPECIALIZATION_KEYWORDS.items():
            if keyword not in text:
                continue
            if any(w in item for w in wanted for item in (*capabilities, *specializations)):
                score += 0.4

        return min(1.0, score)

    def _user_preference(self, agent: Agent, context: RoutingContext) -> float:
        agent_id = agent.descriptor.id
        if agent_id in context.preferred_agents:
            return 1.0
        recent_uses = sum(1 for turn in context.session_history[-5:] if turn.agent_id == agent_id)
        if recent_uses:
            return 0.6 + recent_uses * 0.1
        return 0.5

    def _session_continuity(self, agent: Agent, context: RoutingContext) -> float:
        if context.current_agent is None:
            return 0.5
        if context.current_agent == agent.descriptor.id:
            return 1.0
        last = context.session_history[-1] if context.session_history else None
        if last is not None and last.escalation_required:
            if agent.descriptor.type == AgentType.CRISIS_MONITOR:
                return 0.9
        return 0.3

    def routing_reason(self, factors: RoutingFactors, context: RoutingContext) -> str:
        reasons = []
        if factors.specialization > 0.7:
            reasons.append("Strong specialization match")
        if factors.cultural_match > 0.6:
            reasons.append("Good cultural alignment")
        if factors.performance > 0.8:
            reasons.append("Excellent performance history")
        if factors.load_balance > 0.7:
            reasons.append("Optimal load distribution")
        if factors.user_preference > 0.7:
            reasons.append("User preference or continuity")
        if context.urgency == Urgency.CRITICAL:
            reasons.append("Crisis-optimized routing")
        return "; ".join(reasons) if reasons else "Standard routing algorithm applied"

    def estimate_response_time(self, agent: Agent, context: RoutingContext) -> float:
        """Expected response time of the agent under its current load, in ms."""
        profile = self._profiles.get(agent.descriptor.id)
        if profile is None:
            return DEFAULT_ESTIMATE_MS

        status = agent.get_status()
        estimate = profile.average_response_time_ms
        if status.utilization > 0.8:
            estimate *= 1.5
        if context.urgency == Urgency.CRITICAL:
            estimate *= 0.7
        queue_length = max(0, status.active_sessions - status.max_concurrency)
        return float(round(estimate + queue_length * 500))

    @staticmethod
    def confidence(scored: Sequence[ScoredAgent]) -> float:
        """Confidence from the gap between the two best scores."""
        if len(scored) < 2:
            return 1.0
        gap = scored[0].score - scored[1].score
        return round(max(0.0, min(1.0, 0.5 + gap * 2)), 2)

    # Profiles

    def update_agent_performance(
        self,
        agent_id: str,
        response_time_ms: float,
        success: bool,
        satisfaction: float | None = None,
    ) -> AgentPerformanceProfile:
        """Fold one observed interaction into the agent's moving averages."""
        profile = self._profiles.get(agent_id)
        if profile is None:
            profile = AgentPerformanceProfile(agent_id=agent_id)
            self._profiles[agent_id] = profile
        profile.update(response_time_ms, success, satisfaction)
        return profile

    def get_profile(self, agent_id: str) -> AgentPerformanceProfile | None:
        return self._profiles.get(agent_id)

    def set_load_balancing_strategy(self, name: str) -> None:
        if name not in LOAD_BALANCERS:
            raise ConfigurationError(f"Unknown load balancing strategy: {name}")
        self.load_balancing = name
        logger.info("Load balancing strategy set to %s", name)

    def set_cultural_algorithm(self, name: str) -> None:
        if name not in CULTURAL_MATCHERS:
            raise ConfigurationError(f"Unknown cultural matching algorithm: {name}")
        self.cultural_algorithm = name
        logger.info("Cultural matching algorithm set to %s", name)

    # History

    def _store_decision(self, session_id: str, decision: RoutingDecision) -> None:
        history = self._history.setdefault(session_id, [])
        history.append(decision)
        if len(history) > self.config.history_per_session:
            del history[: len(history) - self.config.history_per_session]

    def get_history(self, session_id: str) -> list[RoutingDecision]:
        return list(self._history.get(session_id, []))

    def trim_history(self) -> int:
        """Drop decisions older than the retention window.

        Returns:
            Number of decisions removed
        """
        cutoff = self._clock() - self.config.history_retention_hours * 3600
        removed = 0
        for session_id in list(self._history):
            kept = [d for d in self._history[session_id] if d.timestamp >= cutoff]
            removed += len(self._history[session_id]) - len(kept)
            if kept:
                self._history[session_id] = kept
            else:
                del self._history[session_id]
        return removed

    def get_routing_analytics(self) -> dict[str, Any]:
        """Totals and averages across every stored decision."""
        decisions = [d for history in self._history.values() for d in history]
        total = len(decisions)
        usage: dict[str, int] = {}
        for decision in decisions:
            usage[decision.selected_agent_id] = usage.get(decision.selected_agent_id, 0) + 1

        return {
            "total_routing_decisions": total,
            "average_routing_score": sum(d.score for d in decisions) / total if total else 0.0,
            "average_confidence": sum(d.confidence for d in decisions) / total if total else 0.0,
            "agent_utilization": {agent_id: count / total for agent_id, count in usage.items()},
            "load_balancing": self.load_balancing,
            "cultural_algorithm": self.cultural_algorithm,
        }
