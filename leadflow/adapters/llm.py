"""LLM-backed adapters built on pydantic-ai agents."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic_ai import Agent
from pydantic_ai.models import Model

from ..directory import AgentCandidate, ContactProfile, Deal
from ..errors import AdapterError
from .base import AgentScorer, AgentSelection, StructuredExtractor

logger = logging.getLogger(__name__)

ModelRef = Union[str, Model]

EXTRACTION_PROMPT = (
    "You extract real-estate lead requirements from a client's message. "
    "Only fill fields that are explicitly mentioned or strongly implied; "
    "leave the rest empty. Detect the language from the text itself."
)

ASSIGNMENT_PROMPT = (
    "You are a lead assignment AI for a real estate agency. Match the client "
    "with the best available agent, prioritising: 1) language match "
    "2) segment match 3) budget and specialisation 4) lower current load. "
    "Return the id of exactly one of the listed agents."
)


class LeadDetails(BaseModel):
    """Flat lead attributes. Extra keys the model returns are kept."""

    model_config = ConfigDict(extra="allow")

    language: Optional[str] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    budget: Optional[float] = None
    max_budget: Optional[float] = None
    type_apartment: Optional[bool] = None
    type_villa: Optional[bool] = None
    type_townhouse: Optional[bool] = None
    feature_pool: Optional[bool] = None
    feature_sea_view: Optional[bool] = None
    main_home: Optional[bool] = None
    second_home: Optional[bool] = None


def describe_candidates(candidates: List[AgentCandidate]) -> str:
    lines = []
    for i, agent in enumerate(candidates, start=1):
        lines.append(
            f"Agent {i} (ID: {agent.id}):\n"
            f"- Name: {agent.full_name or 'Unknown'}\n"
            f"- Languages: {', '.join(agent.languages) or 'Not specified'}\n"
            f"- Specializations: {', '.join(agent.specializations) or 'General'}\n"
            f"- Experience: {agent.experience_years} years\n"
            f"- Preferred segments: {', '.join(agent.target_segments) or 'Any'}\n"
            f"- Current load: {agent.active_leads_count}/{agent.max_active_leads} leads"
        )
    return "\n\n".join(lines)


def describe_client(deal: Optional[Deal], profile: Optional[ContactProfile]) -> str:
    profile = profile or ContactProfile()
    budget = f"EUR {deal.budget_max:,.0f}" if deal and deal.budget_max else "Not specified"
    return (
        "Client profile:\n"
        f"- Nationality: {profile.nationality or 'Unknown'}\n"
        f"- Primary language: {profile.language_primary or 'Unknown'}\n"
        f"- Residence: {profile.residence_country or 'Unknown'}\n"
        f"- Classification: {profile.classification}\n\n"
        "Deal info:\n"
        f"- Segment: {(deal.segment if deal else None) or 'Unknown'}\n"
        f"- Budget: {budget}\n"
        f"- Type: {(deal.type if deal else None) or 'Unknown'}"
    )


class LlmExtractor(StructuredExtractor):
    """Structured extraction of lead details from free-text replies."""

    def __init__(self, model: ModelRef) -> None:
        self._model = model
        self._agent: Optional[Agent[None, LeadDetails]] = None

    @property
    def agent(self) -> Agent[None, LeadDetails]:
        if self._agent is None:
            self._agent = Agent(
                self._model, output_type=LeadDetails, system_prompt=EXTRACTION_PROMPT
            )
        return self._agent

    async def extract(self, raw_text: str) -> Dict[str, Any]:
        try:
            result = await self.agent.run(raw_text)
        except Exception as exc:
            raise AdapterError(f"Extraction failed: {exc}", "llm") from exc
        return result.output.model_dump(exclude_none=True)


class LlmAgentScorer(AgentScorer):
    """Ranks candidate agents for a lead with an LLM."""

    def __init__(self, model: ModelRef) -> None:
        self._model = model
        self._agent: Optional[Agent[None, AgentSelection]] = None

    @property
    def agent(self) -> Agent[None, AgentSelection]:
        if self._agent is None:
            self._agent = Agent(
                self._model, output_type=AgentSelection, system_prompt=ASSIGNMENT_PROMPT
            )
        return self._agent

    async def rank(
        self,
        candidates: List[AgentCandidate],
        deal: Optional[Deal],
        profile: Optional[ContactProfile],
    ) -> AgentSelection:
        prompt = (
            f"AVAILABLE AGENTS:\n{describe_candidates(candidates)}\n\n"
            f"CLIENT TO ASSIGN:\n{describe_client(deal, profile)}\n\n"
            "Select the best agent ID for this client."
        )
        try:
            result = await self.agent.run(prompt)
        except Exception as exc:
            raise AdapterError(f"Agent scoring failed: {exc}", "llm") from exc
        logger.debug(f"Scorer selected {result.output.selected_agent_id}: {result.output.reason}")
        return result.output
