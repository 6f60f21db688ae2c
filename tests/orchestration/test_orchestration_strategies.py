"""Tests for orchestration strategy scoring and selection."""

import pytest

from facet.agents.base import AgentType
from facet.coordination.models import CoordinationStrategy, Urgency
from facet.orchestration.router import SessionTurn
from facet.orchestration.strategies import (
    CollaborativeOrchestration,
    OrchestrationContext,
    OrchestrationRegistry,
    ParallelOrchestration,
    SequentialOrchestration,
    SingleAgentOrchestration,
    select_strategy,
)


def context(user_input="hello", **fields):
    return OrchestrationContext(session_id="s1", user_input=user_input, **fields)


@pytest.fixture
def agents(make_agent):
    return [
        make_agent("intake_1"),
        make_agent("therapy_coordinator_1", AgentType.THERAPY_COORDINATOR),
        make_agent("culture_1", AgentType.CULTURAL_ADAPTER),
    ]


def test_registry_declaration_order():
    """Test strategies are listed in declaration order."""
    assert OrchestrationRegistry.available()[:4] == [
        "single",
        "collaborative",
        "sequential",
        "parallel",
    ]
    assert isinstance(OrchestrationRegistry.create("single"), SingleAgentOrchestration)
    with pytest.raises(KeyError):
        OrchestrationRegistry.get("swarm")


def test_low_urgency_new_session_is_single(agents):
    """Test a calm opening turn goes to one agent."""
    strategy = select_strategy(context(urgency=Urgency.LOW), agents)

    assert strategy.name == "single"


def test_long_low_urgency_session_is_not_single(agents):
    """Test single agent mode is reserved for short sessions."""
    history = [SessionTurn("intake_1")] * 3

    strategy = select_strategy(context(urgency=Urgency.LOW, session_history=history), agents)

    assert strategy.name != "single"


def test_high_urgency_is_parallel(agents):
    """Test urgent turns fan out to several agents at once."""
    assert select_strategy(context(urgency=Urgency.HIGH), agents).name == "parallel"


def test_rich_cultural_context_is_collaborative(agents):
    """Test detailed cultural context brings in supporting agents."""
    cultural = {"primary_culture": "Vietnamese", "language": "vi", "religion": "Buddhist"}

    strategy = select_strategy(context(urgency=Urgency.HIGH, cultural_context=cultural), agents)

    assert strategy.name == "collaborative"


def test_progress_talk_is_sequential(agents):
    """Test goal and progress discussions build on each agent's output."""
    assert select_strategy(context("Let's review my progress"), agents).name == "sequential"


def test_ties_go_to_earliest_declared(agents):
    """Test equal scores keep declaration order."""
    # Collaborative and parallel both score 0.7 here
    turn = context(urgency=Urgency.MEDIUM, max_response_time_ms=2000)

    assert select_strategy(turn, agents).name == "collaborative"


def test_single_agent_without_peers(make_agent):
    """Test a lone agent under medium urgency falls back to the best remaining score."""
    strategy = select_strategy(context(urgency=Urgency.MEDIUM), [make_agent("a")])

    assert strategy.name == "collaborative"
    assert CollaborativeOrchestration().evaluate(context(), [make_agent("a")]) == 0.4


class TestPlans:
    def test_single(self, agents):
        plan = SingleAgentOrchestration().plan(agents[0], agents[1:])

        assert plan.strategy == CoordinationStrategy.PARALLEL
        assert plan.agent_ids == ["intake_1"]

    def test_collaborative_is_hierarchical_under_primary(self, agents):
        plan = CollaborativeOrchestration().plan(agents[0], agents[1:])

        assert plan.strategy == CoordinationStrategy.HIERARCHICAL
        assert plan.coordinator_id == "intake_1"
        assert plan.agent_ids == ["intake_1", "therapy_coordinator_1", "culture_1"]

    def test_sequential_keeps_order(self, agents):
        plan = SequentialOrchestration().plan(agents[1], [agents[0]])

        assert plan.strategy == CoordinationStrategy.SEQUENTIAL
        assert plan.agent_ids == ["therapy_coordinator_1", "intake_1"]

    def test_parallel(self, agents):
        plan = ParallelOrchestration().plan(agents[0], agents[1:])

        assert plan.strategy == CoordinationStrategy.PARALLEL
        assert plan.coordinator_id is None
        assert len(plan.agent_ids) == 3

    def test_supporting_agent_flags(self):
        assert CollaborativeOrchestration.uses_supporting_agents
        assert ParallelOrchestration.uses_supporting_agents
        assert not SingleAgentOrchestration.uses_supporting_agents
        assert not SequentialOrchestration.uses_supporting_agents
