"""Agent assignment: pick one agent for a lead from a candidate pool."""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel

from .adapters.base import AgentScorer
from .directory import AgentCandidate, ContactProfile, Deal
from .errors import AdapterError, NoAvailableAgents

logger = logging.getLogger(__name__)


class AssignmentStrategy(str, Enum):
    LEAST_LEADS = "least_leads"
    ALWAYS_ADMIN = "always_admin"
    SMART = "smart"


class AssignmentDecision(BaseModel):
    agent_id: str
    agent_name: Optional[str] = None
    strategy: AssignmentStrategy
    used_fallback: bool = False
    reason: Optional[str] = None


def eligible(candidates: Sequence[AgentCandidate]) -> List[AgentCandidate]:
    """Available agents still under their active-lead cap, in input order."""
    return [c for c in candidates if c.available_for_assignment and c.has_capacity]


def least_loaded(candidates: Sequence[AgentCandidate]) -> AgentCandidate:
    # min() keeps the first of equal loads, so ties resolve by input order.
    return min(candidates, key=lambda c: c.active_leads_count)


class AgentAssignmentResolver:
    """Selects an agent; persisting the choice is the caller's job."""

    def __init__(self, scorer: Optional[AgentScorer] = None) -> None:
        self._scorer = scorer

    async def assign(
        self,
        candidates: Sequence[AgentCandidate],
        strategy: AssignmentStrategy | str = AssignmentStrategy.LEAST_LEADS,
        deal: Optional[Deal] = None,
        profile: Optional[ContactProfile] = None,
    ) -> AssignmentDecision:
        strategy = AssignmentStrategy(strategy)
        pool = eligible(candidates)
        if not pool:
            raise NoAvailableAgents("All agents are unavailable or at capacity")

        if strategy == AssignmentStrategy.ALWAYS_ADMIN:
            return self._decide(pool[0], strategy, reason="first available agent")
        if strategy == AssignmentStrategy.LEAST_LEADS:
            return self._decide(least_loaded(pool), strategy, reason="fewest active leads")
        return await self._smart(pool, deal, profile)

    async def _smart(
        self,
        pool: List[AgentCandidate],
        deal: Optional[Deal],
        profile: Optional[ContactProfile],
    ) -> AssignmentDecision:
        strategy = AssignmentStrategy.SMART
        if self._scorer is None:
            logger.warning("No agent scorer configured, falling back to least_leads")
            return self._fallback(pool, "no scorer configured")

        try:
            selection = await self._scorer.rank(pool, deal, profile)
        except AdapterError as e:
            logger.warning(f"Agent scorer failed, falling back to least_leads: {e}")
            return self._fallback(pool, f"scorer error: {e}")

        by_id = {c.id: c for c in pool}
        chosen = by_id.get(selection.selected_agent_id)
        if chosen is None:
            logger.warning(
                f"Agent scorer returned unknown id {selection.selected_agent_id!r}, "
                "falling back to least_leads"
            )
            return self._fallback(pool, "scorer returned an invalid agent id")
        return self._decide(chosen, strategy, reason=selection.reason)

    def _fallback(self, pool: List[AgentCandidate], reason: str) -> AssignmentDecision:
        return self._decide(
            least_loaded(pool), AssignmentStrategy.SMART, used_fallback=True, reason=reason
        )

    @staticmethod
    def _decide(
        agent: AgentCandidate,
        strategy: AssignmentStrategy,
        used_fallback: bool = False,
        reason: Optional[str] = None,
    ) -> AssignmentDecision:
        logger.info(
            f"Selected agent {agent.full_name or agent.id} "
            f"(load {agent.active_leads_count}/{agent.max_active_leads}) via {strategy.value}"
        )
        return AssignmentDecision(
            agent_id=agent.id,
            agent_name=agent.full_name,
            strategy=strategy,
            used_fallback=used_fallback,
            reason=reason,
        )
