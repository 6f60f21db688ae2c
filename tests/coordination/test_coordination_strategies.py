"""Tests for coordination strategies and response synthesis."""

import asyncio

import pytest

from facet.agents.base import AgentResponse
from facet.coordination.models import CoordinationRequest, CoordinationStrategy, CoordinationTask
from facet.coordination.strategies import (
    ConsensusStrategy,
    HierarchicalStrategy,
    ParallelStrategy,
    SequentialStrategy,
    StrategyRegistry,
    consensus_score,
    find_coordinator,
    synthesize_responses,
)
from facet.errors import AgentTimeoutError, ConfigurationError


def response(agent_id, confidence=0.7, content=None, agent_type="intake"):
    return AgentResponse(
        agent_id=agent_id,
        agent_type=agent_type,
        content=content or f"{agent_id} says",
        confidence=confidence,
    )


def make_request(agent_ids, strategy=CoordinationStrategy.PARALLEL, coordinator_id=None):
    return CoordinationRequest(
        session_id="s1",
        agent_ids=list(agent_ids),
        task=CoordinationTask(description="I feel anxious"),
        strategy=strategy,
        coordinator_id=coordinator_id,
    )


class FakeAgents:
    """Stand-in for the coordinator's call path, keyed by agent id."""

    def __init__(self, confidences=None, failing=()):
        self.confidences = confidences or {}
        self.failing = set(failing)
        self.calls: list[tuple[str, CoordinationTask, str]] = []

    async def __call__(self, request, agent_id, task, round_id):
        self.calls.append((agent_id, task, round_id))
        await asyncio.sleep(0)
        if agent_id in self.failing:
            raise AgentTimeoutError(agent_id, request.timeout_ms)
        confidence = self.confidences.get(agent_id, 0.7)
        if isinstance(confidence, list):
            confidence = confidence.pop(0)
        return response(agent_id, confidence)


def test_consensus_score():
    """Test consensus score is one minus the population variance."""
    assert consensus_score([]) == 1.0
    assert consensus_score([response("a", 0.2)]) == 1.0
    assert consensus_score([response(a, 0.9) for a in "abc"]) == pytest.approx(1.0)
    assert consensus_score([response("a", 1.0), response("b", 0.0)]) == pytest.approx(0.75)
    scores = [0.9, 0.2, 0.5]
    assert consensus_score([response(str(i), c) for i, c in enumerate(scores)]) == pytest.approx(
        1 - 0.0822, abs=1e-3
    )


def test_registry_lookup():
    """Test strategies are registered under their names."""
    assert StrategyRegistry.available() == ["consensus", "hierarchical", "parallel", "sequential"]
    assert isinstance(StrategyRegistry.create("parallel"), ParallelStrategy)
    assert StrategyRegistry.create(CoordinationStrategy.CONSENSUS, threshold=0.9).threshold == 0.9

    with pytest.raises(KeyError, match="Unknown strategy"):
        StrategyRegistry.get("round_robin")


@pytest.mark.asyncio
async def test_parallel_collects_successes_and_failures():
    """Test a timed-out agent is reported without affecting the others."""
    agents = FakeAgents(failing={"b"})
    request = make_request(["a", "b", "c"])

    result = await ParallelStrategy().execute(request, agents)

    assert [r.agent_id for r in result.responses] == ["a", "c"]
    assert result.failed_agent_ids == ["b"]
    assert result.errors[0].error_type == "AgentTimeoutError"
    assert result.dispatched == 3
    assert len(result.responses) + len(result.errors) == result.dispatched
    assert result.success


@pytest.mark.asyncio
async def test_parallel_all_failed():
    """Test a run where every agent fails is unsuccessful but not raised."""
    result = await ParallelStrategy().execute(make_request(["a", "b"]), FakeAgents(failing="ab"))

    assert not result.success
    assert result.failed_agent_ids == ["a", "b"]


@pytest.mark.asyncio
async def test_sequential_runs_in_order_with_accumulated_output():
    """Test each agent sees the responses of the agents before it."""
    agents = FakeAgents(failing={"b"})
    request = make_request(["a", "b", "c"], CoordinationStrategy.SEQUENTIAL)

    result = await SequentialStrategy().execute(request, agents)

    assert [call[0] for call in agents.calls] == ["a", "b", "c"]
    positions = [call[1].metadata["sequence_position"] for call in agents.calls]
    previous = [len(call[1].metadata["previous_responses"]) for call in agents.calls]
    assert positions == [0, 1, 2]
    # The failed agent contributes nothing to later context
    assert previous == [0, 1, 1]
    assert [r.agent_id for r in result.responses] == ["a", "c"]
    assert result.failed_agent_ids == ["b"]


@pytest.mark.asyncio
async def test_hierarchical_coordinator_guides_subordinates():
    """Test the coordinator runs first and its response is passed on."""
    agents = FakeAgents()
    request = make_request(["a", "lead", "c"], CoordinationStrategy.HIERARCHICAL, "lead")

    result = await HierarchicalStrategy().execute(request, agents)

    assert agents.calls[0][0] == "lead"
    assert {call[0] for call in agents.calls[1:]} == {"a", "c"}
    for _, task, _ in agents.calls[1:]:
        assert task.metadata["coordinator_guidance"]["agent_id"] == "lead"
    assert result.coordinator_id == "lead"
    assert result.responses[0].agent_id == "lead"
    assert result.dispatched == 3


@pytest.mark.asyncio
async def test_hierarchical_failed_coordinator_still_runs_subordinates():
    """Test subordinates run without guidance when the coordinator fails."""
    agents = FakeAgents(failing={"lead"})
    request = make_request(["lead", "a"], CoordinationStrategy.HIERARCHICAL, "lead")

    result = await HierarchicalStrategy().execute(request, agents)

    assert result.failed_agent_ids == ["lead"]
    assert [r.agent_id for r in result.responses] == ["a"]
    assert "coordinator_guidance" not in agents.calls[1][1].metadata


@pytest.mark.asyncio
async def test_hierarchical_without_coordinator():
    """Test a hierarchical run with no resolvable coordinator is rejected."""
    agents = FakeAgents()

    with pytest.raises(ConfigurationError):
        await HierarchicalStrategy().execute(
            make_request(["a", "b"], CoordinationStrategy.HIERARCHICAL), agents
        )
    with pytest.raises(ConfigurationError):
        await HierarchicalStrategy().execute(
            make_request(["a", "b"], CoordinationStrategy.HIERARCHICAL, "outsider"), agents
        )
    assert agents.calls == []


def test_find_coordinator_by_role_marker():
    """Test the coordinator role marker in an agent id is used when none is given."""
    request = make_request(["intake_1", "therapy_coordinator_1"], CoordinationStrategy.HIERARCHICAL)

    assert find_coordinator(request) == "therapy_coordinator_1"


@pytest.mark.asyncio
async def test_consensus_agreement_single_round():
    """Test agreeing agents finish after one round."""
    agents = FakeAgents({"a": 0.9, "b": 0.9, "c": 0.9})

    result = await ConsensusStrategy().execute(
        make_request(["a", "b", "c"], CoordinationStrategy.CONSENSUS), agents
    )

    assert result.rounds == 1
    assert result.consensus_score == pytest.approx(1.0)
    assert len(result.responses) == 3
    assert len(agents.calls) == 3


@pytest.mark.asyncio
async def test_consensus_disagreement_runs_deliberation():
    """Test a score below the threshold triggers a second round with all responses."""
    agents = FakeAgents({"a": [1.0, 0.8], "b": [0.0, 0.8], "c": [1.0, 0.8]})

    result = await ConsensusStrategy(threshold=0.8).execute(
        make_request(["a", "b", "c"], CoordinationStrategy.CONSENSUS), agents
    )

    assert result.rounds == 2
    assert len(result.responses) == 6
    # Both rounds count towards the final score
    assert result.consensus_score == pytest.approx(consensus_score(result.responses))
    assert result.consensus_score == pytest.approx(1 - 26 / 225)
    assert result.dispatched == 6
    second_round = agents.calls[3:]
    for _, task, round_id in second_round:
        assert task.metadata["consensus_round"] == 2
        assert len(task.metadata["all_responses"]) == 3
        assert round_id.endswith("-r2")


@pytest.mark.asyncio
async def test_consensus_threshold_is_configurable():
    """Test a stricter threshold sends moderate disagreement to deliberation."""
    agents = FakeAgents({"a": 0.9, "b": 0.2, "c": 0.5})

    lenient = await ConsensusStrategy(threshold=0.8).execute(
        make_request(["a", "b", "c"], CoordinationStrategy.CONSENSUS), agents
    )
    strict = await ConsensusStrategy(threshold=0.95).execute(
        make_request(["a", "b", "c"], CoordinationStrategy.CONSENSUS), agents
    )

    assert lenient.rounds == 1
    assert strict.rounds == 2


@pytest.mark.asyncio
async def test_consensus_skips_deliberation_with_one_response():
    """Test a second round needs at least two round-one responses."""
    agents = FakeAgents({"a": 0.1}, failing={"b", "c"})

    result = await ConsensusStrategy(threshold=0.99).execute(
        make_request(["a", "b", "c"], CoordinationStrategy.CONSENSUS), agents
    )

    assert result.rounds == 1
    assert len(agents.calls) == 3


class TestSynthesis:
    def test_empty_and_single(self):
        assert synthesize_responses([], CoordinationStrategy.PARALLEL) == (
            "No agent responses received"
        )
        single = [response("a", content="only")]
        assert synthesize_responses(single, CoordinationStrategy.PARALLEL) == "only"

    def test_default_orders_by_confidence(self):
        responses = [
            response("a", 0.5, "low"),
            response("b", 0.9, "high"),
            response("c", 0.7, "mid"),
        ]

        text = synthesize_responses(responses, CoordinationStrategy.PARALLEL)

        assert text == "high mid low"

    def test_consensus_prefers_confident(self):
        responses = [
            response("a", 0.85, "sure"),
            response("b", 0.6, "maybe"),
            response("c", 0.95, "certain"),
        ]

        assert synthesize_responses(responses, CoordinationStrategy.CONSENSUS) == "certain sure"

    def test_consensus_falls_back_to_top_two(self):
        responses = [response("a", 0.5, "x"), response("b", 0.7, "y"), response("c", 0.6, "z")]

        assert synthesize_responses(responses, CoordinationStrategy.CONSENSUS) == "y z"

    def test_hierarchical_puts_coordinator_first(self):
        responses = [response("a", 0.9, "sub"), response("lead", 0.3, "guide")]

        text = synthesize_responses(responses, CoordinationStrategy.HIERARCHICAL, "lead")

        assert text == "guide sub"
