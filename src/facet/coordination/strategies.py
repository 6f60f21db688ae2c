"""Multi-agent coordination strategies and response synthesis.

Usage::

    from facet.coordination.strategies import StrategyRegistry

    strategy = StrategyRegistry.create(CoordinationStrategy.CONSENSUS)
    result = await strategy.execute(request, coordinator.call_agent)
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, ClassVar

from facet.agents.base import AgentResponse, AgentType
from facet.coordination.models import (
    AgentFailure,
    CoordinationRequest,
    CoordinationResult,
    CoordinationStrategy,
    CoordinationTask,
)
from facet.errors import ConfigurationError

logger = logging.getLogger(__name__)

# (request, agent_id, task, round_id) -> response
AgentCall = Callable[[CoordinationRequest, str, CoordinationTask, str], Awaitable[AgentResponse]]

COORDINATOR_MARKER = AgentType.THERAPY_COORDINATOR.value
DEFAULT_CONSENSUS_THRESHOLD = 0.8


def consensus_score(responses: Sequence[AgentResponse]) -> float:
    """Agreement among responses: ``1 - variance(confidences)`` clamped to [0, 1].

    Fewer than two responses are in full agreement by definition.
    """
    if len(responses) < 2:
        return 1.0
    confidences = [r.confidence for r in responses]
    mean = sum(confidences) / len(confidences)
    variance = sum((c - mean) ** 2 for c in confidences) / len(confidences)
    return min(1.0, max(0.0, 1.0 - variance))


def _dump(response: AgentResponse) -> dict[str, Any]:
    return response.model_dump(mode="json")


class StrategyRegistry:
    """Lookup of coordination strategies by name."""

    _strategies: ClassVar[dict[CoordinationStrategy, type["StrategyBase"]]] = {}

    @classmethod
    def register(cls, name: CoordinationStrategy, strategy_cls: type["StrategyBase"]) -> None:
        cls._strategies[name] = strategy_cls

    @classmethod
    def get(cls, name: CoordinationStrategy | str) -> type["StrategyBase"]:
        try:
            key = CoordinationStrategy(name)
        except ValueError:
            raise KeyError(f"Unknown strategy: {name!r}. Available: {cls.available()}") from None
        if key not in cls._strategies:
            raise KeyError(f"Unknown strategy: {name!r}. Available: {cls.available()}")
        return cls._strategies[key]

    @classmethod
    def create(cls, name: CoordinationStrategy | str, **kwargs: Any) -> "StrategyBase":
        return cls.get(name)(**kwargs)

    @classmethod
    def available(cls) -> list[str]:
        return sorted(s.value for s in cls._strategies)


def register_strategy(name: CoordinationStrategy) -> Any:
    """Class decorator that registers a strategy under *name*."""

    def decorator(cls: type) -> type:
        StrategyRegistry.register(name, cls)
        return cls

    return decorator


class StrategyBase:
    """Base for coordination strategies.

    Subclasses implement :meth:`execute`. Agent failures are collected into
    the result, never raised.
    """

    name: CoordinationStrategy

    async def execute(self, request: CoordinationRequest, call: AgentCall) -> CoordinationResult:
        raise NotImplementedError

    async def _fan_out(
        self,
        request: CoordinationRequest,
        call: AgentCall,
        agent_ids: Sequence[str],
        task: CoordinationTask,
        round_id: str,
    ) -> tuple[list[AgentResponse], list[AgentFailure]]:
        """Call agents concurrently and wait for every call to settle."""
        results = await asyncio.gather(
            *(call(request, agent_id, task, round_id) for agent_id in agent_ids),
            return_exceptions=True,
        )
        responses: list[AgentResponse] = []
        errors: list[AgentFailure] = []
        for agent_id, outcome in zip(agent_ids, results, strict=True):
            if isinstance(outcome, BaseException):
                errors.append(AgentFailure(agent_id, outcome))
            else:
                responses.append(outcome)
        return responses, errors

    async def _call_one(
        self,
        request: CoordinationRequest,
        call: AgentCall,
        agent_id: str,
        task: CoordinationTask,
        round_id: str,
    ) -> AgentResponse | AgentFailure:
        try:
            return await call(request, agent_id, task, round_id)
        except Exception as e:
            return AgentFailure(agent_id, e)

    def _result(
        self,
        request: CoordinationRequest,
        responses: list[AgentResponse],
        errors: list[AgentFailure],
        dispatched: int,
        **extra: Any,
    ) -> CoordinationResult:
        total_ms = (time.time() - request.start_time) * 1000
        if errors:
            logger.info(
                "Coordination %s (%s): %d responses, %d errors",
                request.id,
                self.name,
                len(responses),
                len(errors),
            )
        return CoordinationResult(
            coordination_id=request.id,
            strategy=self.name,
            responses=tuple(responses),
            errors=tuple(errors),
            total_time_ms=total_ms,
            dispatched=dispatched,
            **extra,
        )


@register_strategy(CoordinationStrategy.PARALLEL)
class ParallelStrategy(StrategyBase):
    """All agents at once; one failure never cancels the others."""

    name = CoordinationStrategy.PARALLEL

    async def execute(self, request: CoordinationRequest, call: AgentCall) -> CoordinationResult:
        responses, errors = await self._fan_out(
            request, call, request.agent_ids, request.task, request.id
        )
        return self._result(request, responses, errors, dispatched=len(request.agent_ids))


@register_strategy(CoordinationStrategy.SEQUENTIAL)
class SequentialStrategy(StrategyBase):
    """Agents in list order, each seeing the responses gathered so far."""

    name = CoordinationStrategy.SEQUENTIAL

    async def execute(self, request: CoordinationRequest, call: AgentCall) -> CoordinationResult:
        responses: list[AgentResponse] = []
        errors: list[AgentFailure] = []

        for position, agent_id in enumerate(request.agent_ids):
            task = request.task.with_metadata(
                previous_responses=[_dump(r) for r in responses],
                sequence_position=position,
            )
            outcome = await self._call_one(request, call, agent_id, task, request.id)
            if isinstance(outcome, AgentFailure):
                errors.append(outcome)
            else:
                responses.append(outcome)

        return self._result(request, responses, errors, dispatched=len(request.agent_ids))


def find_coordinator(request: CoordinationRequest) -> str | None:
    """Resolve the coordinator of a hierarchical run.

    An explicit ``coordinator_id`` wins; otherwise the first agent id
    carrying the coordinator role marker is used.
    """
    if request.coordinator_id is not None:
        return request.coordinator_id if request.coordinator_id in request.agent_ids else None
    for agent_id in request.agent_ids:
        if COORDINATOR_MARKER in agent_id:
            return agent_id
    return None


@register_strategy(CoordinationStrategy.HIERARCHICAL)
class HierarchicalStrategy(StrategyBase):
    """Coordinator first, then subordinates in parallel with its guidance."""

    name = CoordinationStrategy.HIERARCHICAL

    async def execute(self, request: CoordinationRequest, call: AgentCall) -> CoordinationResult:
        coordinator = find_coordinator(request)
        if coordinator is None:
            raise ConfigurationError(
                f"Hierarchical coordination {request.id} has no coordinator among "
                f"{request.agent_ids}"
            )

        responses: list[AgentResponse] = []
        errors: list[AgentFailure] = []
        task = request.task

        outcome = await self._call_one(request, call, coordinator, task, request.id)
        if isinstance(outcome, AgentFailure):
            errors.append(outcome)
        else:
            responses.append(outcome)
            task = task.with_metadata(coordinator_guidance=_dump(outcome))

        subordinates = [a for a in request.agent_ids if a != coordinator]
        if subordinates:
            sub_responses, sub_errors = await self._fan_out(
                request, call, subordinates, task, request.id
            )
            responses.extend(sub_responses)
            errors.extend(sub_errors)

        return self._result(
            request,
            responses,
            errors,
            dispatched=len(request.agent_ids),
            coordinator_id=coordinator,
        )


@register_strategy(CoordinationStrategy.CONSENSUS)
class ConsensusStrategy(StrategyBase):
    """Parallel round, plus a deliberation round when agents disagree."""

    name = CoordinationStrategy.CONSENSUS

    def __init__(self, threshold: float = DEFAULT_CONSENSUS_THRESHOLD):
        self.threshold = threshold

    async def execute(self, request: CoordinationRequest, call: AgentCall) -> CoordinationResult:
        agent_ids = request.agent_ids
        first, first_errors = await self._fan_out(request, call, agent_ids, request.task, request.id)
        score = consensus_score(first)

        if len(first) < 2 or score >= self.threshold:
            return self._result(
                request, first, first_errors, dispatched=len(agent_ids), consensus_score=score
            )

        logger.info(
            "Consensus %.2f below %.2f for %s, starting deliberation round",
            score,
            self.threshold,
            request.id,
        )
        task = request.task.with_metadata(
            consensus_round=2,
            all_responses=[_dump(r) for r in first],
        )
        # Own correlation namespace; round-one stragglers cannot resolve it
        second, second_errors = await self._fan_out(
            request, call, agent_ids, task, f"{request.id}-r2"
        )
        return self._result(
            request,
            first + second,
            first_errors + second_errors,
            dispatched=2 * len(agent_ids),
            rounds=2,
            consensus_score=consensus_score(first + second),
        )


def _by_confidence(responses: Sequence[AgentResponse]) -> list[AgentResponse]:
    # sorted() is stable, so equal confidences keep arrival order
    return sorted(responses, key=lambda r: r.confidence, reverse=True)


def synthesize_responses(
    responses: Sequence[AgentResponse],
    strategy: CoordinationStrategy,
    coordinator_id: str | None = None,
) -> str:
    """Merge several agent responses into one user-facing text.

    Args:
        responses: Agent responses to merge
        strategy: Strategy that produced them
        coordinator_id: Coordinator of a hierarchical run

    Returns:
        Synthesized text
    """
    if not responses:
        return "No agent responses received"
    if len(responses) == 1:
        return responses[0].content

    if strategy == CoordinationStrategy.CONSENSUS:
        ranked = _by_confidence(responses)
        confident = [r for r in ranked if r.confidence > 0.8]
        chosen = confident or ranked[:2]
        return " ".join(r.content for r in chosen)

    if strategy == CoordinationStrategy.HIERARCHICAL:
        lead = [
            r
            for r in responses
            if r.agent_id == coordinator_id or r.agent_type == COORDINATOR_MARKER
        ][:1]
        if lead:
            others = _by_confidence([r for r in responses if r is not lead[0]])
            return " ".join([lead[0].content, *(r.content for r in others)])

    return " ".join(r.content for r in _by_confidence(responses))
