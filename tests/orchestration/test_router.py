"""Tests for intelligent routing."""

import pytest

from facet.agents.base import AgentState, AgentStatus, AgentType
from facet.config.schema import RoutingConfig
from facet.coordination.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from facet.coordination.models import Urgency
from facet.errors import ConfigurationError, NoEligibleAgentsError
from facet.orchestration.router import (
    AgentPerformanceProfile,
    CulturalProfile,
    IntelligentRouter,
    PerformanceRequirements,
    RoutingContext,
    RoutingFactors,
    ScoredAgent,
    SessionTurn,
    cultural_affinity,
    generational_matching,
    least_connections,
    performance_based,
    weighted_round_robin,
)


def context(user_input="I need someone to talk to", **fields):
    return RoutingContext(session_id="s1", user_input=user_input, **fields)


@pytest.fixture
def router(clock):
    return IntelligentRouter(RoutingConfig(), CircuitBreakerRegistry(CircuitBreakerConfig()), clock)


class TestLoadBalancers:
    def test_weighted_round_robin(self):
        profile = AgentPerformanceProfile("a")

        idle = AgentStatus("a", AgentState.IDLE, active_sessions=0, max_concurrency=10)
        half = AgentStatus("a", AgentState.BUSY, active_sessions=5, max_concurrency=10)
        over = AgentStatus("a", AgentState.BUSY, active_sessions=12, max_concurrency=10)

        assert weighted_round_robin(idle, profile) == 1.0
        assert weighted_round_robin(half, profile) == pytest.approx(0.5)
        assert weighted_round_robin(over, profile) == 0.0

    def test_least_connections(self):
        profile = AgentPerformanceProfile("a")
        status = AgentStatus("a", AgentState.BUSY, active_sessions=3, max_concurrency=10)

        assert least_connections(status, profile) == pytest.approx(0.7)

    def test_performance_based_penalizes_high_utilization(self):
        profile = AgentPerformanceProfile("a", average_response_time_ms=1000, success_rate=1.0)
        calm = AgentStatus("a", AgentState.IDLE, active_sessions=0, max_concurrency=10)
        busy = AgentStatus("a", AgentState.BUSY, active_sessions=9, max_concurrency=10)

        assert performance_based(calm, profile) == pytest.approx(0.6 + 0.8 * 0.4)
        assert performance_based(busy, profile) == pytest.approx((0.6 + 0.8 * 0.4) * 0.5)


class TestCulturalMatchers:
    def test_cultural_affinity(self, make_agent):
        agent = make_agent(
            "culture_1",
            AgentType.CULTURAL_ADAPTER,
            cultural_specializations=("Hispanic/Latino", "Mexican-American", "spiritual care"),
        )
        profile = CulturalProfile(
            primary_culture="Latino",
            secondary_cultures=["mexican"],
            language_preferences=["es"],
            religious_background="Catholic",
        )

        assert cultural_affinity(agent, profile) == pytest.approx(1.0)
        assert cultural_affinity(agent, CulturalProfile(primary_culture="Korean")) == 0.0

    def test_generational_matching(self, make_agent):
        agent = make_agent(
            "culture_1",
            AgentType.CULTURAL_ADAPTER,
            cultural_specializations=("bicultural identity", "generational conflict"),
        )

        second = CulturalProfile(generational_status="second")
        assert generational_matching(agent, second) == pytest.approx(0.3 + 0.2 * 3)
        assert generational_matching(agent, CulturalProfile()) == pytest.approx(0.3)

    def test_profile_from_dict(self):
        profile = CulturalProfile.from_dict(
            {"primary_culture": "Filipino", "language_preferences": ["tl", "en"]}
        )

        assert profile.primary_culture == "Filipino"
        assert profile.language_preferences == ["tl", "en"]
        assert profile.secondary_cultures == []


def test_route_is_deterministic_on_ties(router, make_agent):
    """Test equal scores keep the candidates' input order."""
    agents = [make_agent("b"), make_agent("a"), make_agent("c")]

    first = router.route(agents, context())
    second = router.route(agents, context())

    assert first.selected_agent_id == "b"
    assert second.selected_agent_id == "b"
    assert [a.descriptor.id for a in first.alternatives] == ["a", "c"]
    assert first.confidence == 0.5


def test_route_prefers_specialization(router, make_agent):
    """Test keyword specialization lifts the matching agent."""
    generalist = make_agent("generalist")
    specialist = make_agent("anxiety_1", capabilities=("anxiety management", "CBT"))

    decision = router.route([generalist, specialist], context("My anxiety is getting worse"))

    assert decision.selected_agent_id == "anxiety_1"
    assert decision.factors.specialization == pytest.approx(0.4)
    assert decision.confidence > 0.5


def test_critical_urgency_routes_to_crisis_capability(router, make_agent):
    """Test crisis capability dominates critical routing."""
    agents = [
        make_agent("intake_1"),
        make_agent("crisis_1", AgentType.CRISIS_MONITOR, capabilities=("crisis intervention",)),
    ]

    decision = router.route(agents, context("I can't go on", urgency=Urgency.CRITICAL))

    assert decision.selected_agent_id == "crisis_1"
    assert "Crisis-optimized routing" in decision.reason
    assert router.weights_for(Urgency.CRITICAL).performance == 0.40


def test_pre_filter(router, make_agent):
    """Test blacklisted, open-circuited, full and slow agents are removed."""
    agents = [
        make_agent("blocked"),
        make_agent("open"),
        make_agent("full", max_concurrency=0),
        make_agent("slow"),
        make_agent("ok"),
    ]
    breaker = router.breakers.get_breaker("open")
    for _ in range(breaker.config.failure_threshold):
        breaker.record_failure()
    router.update_agent_performance("slow", 60000, success=True)

    eligible = router.pre_filter(
        agents,
        context(
            blacklisted_agents=["blocked"],
            requirements=PerformanceRequirements(max_response_time_ms=5000),
        ),
    )

    assert [a.descriptor.id for a in eligible] == ["ok"]


def test_route_without_eligible_agents(router, make_agent):
    """Test routing fails when every candidate is filtered out."""
    with pytest.raises(NoEligibleAgentsError):
        router.route([make_agent("a")], context(blacklisted_agents=["a"]))


def test_session_continuity_and_preference(router, make_agent):
    """Test the current agent and preferred agents score higher."""
    agent_a, agent_b = make_agent("a"), make_agent("b")
    turn = context(
        current_agent="b",
        preferred_agents=["b"],
        session_history=[SessionTurn("b"), SessionTurn("a")],
    )

    factors_a = router.routing_factors(agent_a, turn)
    factors_b = router.routing_factors(agent_b, turn)

    assert factors_b.session_continuity == 1.0
    assert factors_a.session_continuity == 0.3
    assert factors_b.user_preference == 1.0
    assert factors_a.user_preference == pytest.approx(0.7)
    assert router.route([agent_a, agent_b], turn).selected_agent_id == "b"


def test_escalated_session_favors_crisis_monitor(router, make_agent):
    """Test a previous escalation steers continuity toward crisis monitors."""
    crisis = make_agent("crisis_1", AgentType.CRISIS_MONITOR)
    turn = context(current_agent="intake_1", session_history=[SessionTurn("intake_1", True)])

    assert router.routing_factors(crisis, turn).session_continuity == 0.9


def test_performance_profile_moving_average(router):
    """Test performance updates fold into exponential moving averages."""
    profile = router.update_agent_performance("a", 1000, success=False, satisfaction=0.5)

    assert profile.average_response_time_ms == pytest.approx(2000 * 0.9 + 1000 * 0.1)
    assert profile.success_rate == pytest.approx(0.85 * 0.95)
    assert profile.satisfaction == pytest.approx(0.8 * 0.9 + 0.5 * 0.1)
    assert router.get_profile("a") is profile
    assert router.get_profile("b") is None


def test_estimate_response_time(router, make_agent):
    """Test estimates default without a profile and shrink for critical turns."""
    agent = make_agent("a")
    assert router.estimate_response_time(agent, context()) == 3000

    router.update_agent_performance("a", 2000, success=True)
    assert router.estimate_response_time(agent, context()) == 2000
    assert router.estimate_response_time(agent, context(urgency=Urgency.CRITICAL)) == 1400


def test_confidence_from_score_gap():
    """Test confidence grows with the gap between the top two scores."""
    factors = RoutingFactors(0.5, 0.5, 0.5, 0.5, 0.5, 0.5)

    def scored(score):
        return ScoredAgent(agent=None, factors=factors, score=score)

    assert IntelligentRouter.confidence([scored(0.9)]) == 1.0
    assert IntelligentRouter.confidence([scored(0.6), scored(0.5)]) == 0.7
    assert IntelligentRouter.confidence([scored(0.9), scored(0.1)]) == 1.0


def test_strategy_switching(router):
    """Test load balancing and cultural algorithms can be switched by name."""
    router.set_load_balancing_strategy("least_connections")
    router.set_cultural_algorithm("generational_matching")

    assert router.load_balancing == "least_connections"
    assert router.cultural_algorithm == "generational_matching"
    with pytest.raises(ConfigurationError):
        router.set_load_balancing_strategy("random")
    with pytest.raises(ConfigurationError):
        router.set_cultural_algorithm("astrology")


def test_history_is_capped_and_trimmed(clock, make_agent):
    """Test per-session history limits and age-based trimming."""
    router = IntelligentRouter(
        RoutingConfig(history_per_session=3, history_retention_hours=1), clock=clock
    )
    agents = [make_agent("a")]
    for _ in range(5):
        router.route(agents, context())
    assert len(router.get_history("s1")) == 3

    clock.advance(1800)
    router.route(agents, RoutingContext(session_id="s2", user_input="hi"))
    clock.advance(1801)

    assert router.trim_history() == 3
    assert router.get_history("s1") == []
    assert len(router.get_history("s2")) == 1


def test_routing_analytics(router, make_agent):
    """Test analytics across stored decisions."""
    agents = [make_agent("a"), make_agent("b")]
    router.route(agents, context())
    router.route(agents, context(blacklisted_agents=["a"]))

    analytics = router.get_routing_analytics()

    assert analytics["total_routing_decisions"] == 2
    assert analytics["agent_utilization"] == {"a": 0.5, "b": 0.5}
    assert analytics["load_balancing"] == "performance_based"
