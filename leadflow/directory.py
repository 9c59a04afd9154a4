"""CRM collaborator: contacts, deals, agents, groups and tasks.

The engine only reads and writes CRM records through ``ContactDirectory``.
``InMemoryDirectory`` backs tests and single-process deployments; a real
deployment plugs in its own CRM client implementing the same protocol.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_MAX_ACTIVE_LEADS
from .errors import ContactNotFound, LeadflowError
from .utils.timeutil import utcnow

logger = logging.getLogger(__name__)

CLOSED_DEAL_STATUSES = ("closed", "lost")


class Contact(BaseModel):
    """Contact record. Unknown CRM columns are kept as extra fields."""

    model_config = ConfigDict(extra="allow")

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    group_id: Optional[str] = None
    current_status: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    current_deal_id: Optional[str] = None
    marketing_source: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def field(self, name: str) -> Any:
        """Return a standard or extra field, ``None`` when absent."""
        return self.model_dump().get(name)


class Deal(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    contact_id: str
    segment: Optional[str] = None
    budget_max: Optional[float] = None
    type: Optional[str] = None
    status: str = "open"
    primary_agent_id: Optional[str] = None
    nurture_enabled: bool = False
    nurture_day: Optional[int] = None
    nurture_time: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ContactProfile(BaseModel):
    """Language and classification data used for agent matching."""

    nationality: Optional[str] = None
    language_primary: Optional[str] = None
    residence_country: Optional[str] = None
    a_class: Optional[bool] = None
    b_class: Optional[bool] = None
    z_class: Optional[bool] = None

    @property
    def classification(self) -> str:
        if self.a_class:
            return "A-Class (Premium)"
        if self.b_class:
            return "B-Class (Standard)"
        return "Z-Class"


class AgentProfile(BaseModel):
    id: str
    full_name: Optional[str] = None
    languages: List[str] = Field(default_factory=list)
    specializations: List[str] = Field(default_factory=list)
    target_segments: List[str] = Field(default_factory=list)
    experience_years: int = 0
    max_active_leads: int = DEFAULT_MAX_ACTIVE_LEADS
    available_for_assignment: bool = True


class AgentCandidate(AgentProfile):
    """Agent snapshot plus the load computed at assignment time."""

    active_leads_count: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.active_leads_count < self.max_active_leads


class Task(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    contact_id: str
    title: str
    status: str = "open"
    due_at: Optional[datetime] = None


class Communication(BaseModel):
    """One outbound or inbound message/call logged against a contact."""

    contact_id: str
    channel: str
    direction: str
    status: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def normalize_phone(phone: str) -> str:
    """Strip channel prefixes and formatting: ``whatsapp:+34 600-1`` -> ``+346001``."""
    if phone.startswith("whatsapp:"):
        phone = phone[len("whatsapp:"):]
    return re.sub(r"[^\d+]", "", phone)


class ContactDirectory(Protocol):
    """CRM operations the engine depends on."""

    async def get_contact(self, contact_id: str) -> Contact:
        """Return the contact or raise ``ContactNotFound``."""

    async def find_contact_by_phone(self, phone: str) -> Optional[Contact]:
        ...

    async def get_latest_deal(self, contact_id: str) -> Optional[Deal]:
        ...

    async def get_contact_profile(self, contact_id: str) -> Optional[ContactProfile]:
        ...

    async def list_agent_candidates(self) -> List[AgentCandidate]:
        """Agents with their current count of open deals."""

    async def contact_group_ids(self, contact_id: str) -> set[str]:
        ...

    async def update_contact(self, contact_id: str, fields: Dict[str, Any]) -> Contact:
        ...

    async def assign_agent(
        self, contact_id: str, agent_id: str, deal_id: Optional[str] = None
    ) -> None:
        ...

    async def create_task(
        self, contact_id: str, title: str, due_at: Optional[datetime] = None
    ) -> Task:
        ...

    async def mark_lost(self, contact_id: str) -> None:
        ...

    async def enable_nurture(self, deal_id: str, day: int, time: str) -> Deal:
        ...

    async def record_communication(self, communication: Communication) -> None:
        ...


class InMemoryDirectory(ContactDirectory):
    """Dict-backed CRM."""

    def __init__(
        self,
        contacts: Iterable[Contact] = (),
        deals: Iterable[Deal] = (),
        agents: Iterable[AgentProfile] = (),
    ) -> None:
        self.contacts: Dict[str, Contact] = {c.id: c for c in contacts}
        self.deals: Dict[str, Deal] = {d.id: d for d in deals}
        self.agents: Dict[str, AgentProfile] = {a.id: a for a in agents}
        self.profiles: Dict[str, ContactProfile] = {}
        self.group_members: Dict[str, set[str]] = {}
        self.tasks: List[Task] = []
        self.communications: List[Communication] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Seeding helpers
    def add_contact(self, contact: Contact) -> Contact:
        self.contacts[contact.id] = contact
        return contact

    def add_deal(self, deal: Deal) -> Deal:
        self.deals[deal.id] = deal
        contact = self.contacts.get(deal.contact_id)
        if contact is not None and contact.current_deal_id is None:
            contact.current_deal_id = deal.id
        return deal

    def add_agent(self, agent: AgentProfile) -> AgentProfile:
        self.agents[agent.id] = agent
        return agent

    def set_profile(self, contact_id: str, profile: ContactProfile) -> None:
        self.profiles[contact_id] = profile

    def add_to_group(self, contact_id: str, group_id: str) -> None:
        self.group_members.setdefault(contact_id, set()).add(group_id)

    # ------------------------------------------------------------------
    async def get_contact(self, contact_id: str) -> Contact:
        contact = self.contacts.get(contact_id)
        if contact is None:
            raise ContactNotFound(f"Contact not found: {contact_id}")
        return contact.model_copy(deep=True)

    async def find_contact_by_phone(self, phone: str) -> Optional[Contact]:
        wanted = normalize_phone(phone)
        for contact in self.contacts.values():
            if contact.phone and normalize_phone(contact.phone) == wanted:
                return contact.model_copy(deep=True)
        return None

    async def get_latest_deal(self, contact_id: str) -> Optional[Deal]:
        deals = [d for d in self.deals.values() if d.contact_id == contact_id]
        if not deals:
            return None
        return max(deals, key=lambda d: d.created_at).model_copy(deep=True)

    async def get_contact_profile(self, contact_id: str) -> Optional[ContactProfile]:
        return self.profiles.get(contact_id)

    async def list_agent_candidates(self) -> List[AgentCandidate]:
        load: Dict[str, int] = {}
        for deal in self.deals.values():
            if deal.primary_agent_id and deal.status not in CLOSED_DEAL_STATUSES:
                load[deal.primary_agent_id] = load.get(deal.primary_agent_id, 0) + 1
        return [
            AgentCandidate(**agent.model_dump(), active_leads_count=load.get(agent.id, 0))
            for agent in self.agents.values()
        ]

    async def contact_group_ids(self, contact_id: str) -> set[str]:
        groups = set(self.group_members.get(contact_id, set()))
        contact = self.contacts.get(contact_id)
        if contact is not None and contact.group_id:
            groups.add(contact.group_id)
        return groups

    async def update_contact(self, contact_id: str, fields: Dict[str, Any]) -> Contact:
        async with self._lock:
            contact = self.contacts.get(contact_id)
            if contact is None:
                raise ContactNotFound(f"Contact not found: {contact_id}")
            updated = Contact.model_validate({**contact.model_dump(), **fields})
            self.contacts[contact_id] = updated
            return updated.model_copy(deep=True)

    async def assign_agent(
        self, contact_id: str, agent_id: str, deal_id: Optional[str] = None
    ) -> None:
        async with self._lock:
            if deal_id and deal_id in self.deals:
                self.deals[deal_id].primary_agent_id = agent_id
            contact = self.contacts.get(contact_id)
            if contact is None:
                raise ContactNotFound(f"Contact not found: {contact_id}")
            contact.assigned_agent_id = agent_id
            contact.current_status = "assigned"
        logger.info(f"Assigned agent {agent_id} to contact {contact_id}")

    async def create_task(
        self, contact_id: str, title: str, due_at: Optional[datetime] = None
    ) -> Task:
        task = Task(contact_id=contact_id, title=title, due_at=due_at)
        self.tasks.append(task)
        return task

    async def mark_lost(self, contact_id: str) -> None:
        async with self._lock:
            contact = self.contacts.get(contact_id)
            if contact is None:
                raise ContactNotFound(f"Contact not found: {contact_id}")
            contact.current_status = "lost"
            if contact.current_deal_id and contact.current_deal_id in self.deals:
                self.deals[contact.current_deal_id].status = "lost"

    async def enable_nurture(self, deal_id: str, day: int, time: str) -> Deal:
        async with self._lock:
            deal = self.deals.get(deal_id)
            if deal is None:
                raise LeadflowError(f"Deal not found: {deal_id}")
            deal.nurture_enabled = True
            deal.nurture_day = day
            deal.nurture_time = time
            return deal.model_copy(deep=True)

    async def record_communication(self, communication: Communication) -> None:
        self.communications.append(communication)


def load_directory(path: str | Path) -> InMemoryDirectory:
    """Seed an ``InMemoryDirectory`` from a YAML file.

    The file holds ``contacts``, ``deals`` and ``agents`` lists plus optional
    ``groups`` (group id -> contact ids) and ``profiles`` (contact id -> profile).
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    directory = InMemoryDirectory(
        contacts=[Contact(**c) for c in data.get("contacts", [])],
        agents=[AgentProfile(**a) for a in data.get("agents", [])],
    )
    for deal in data.get("deals", []):
        directory.add_deal(Deal(**deal))
    for group_id, members in (data.get("groups") or {}).items():
        for contact_id in members:
            directory.add_to_group(contact_id, group_id)
    for contact_id, profile in (data.get("profiles") or {}).items():
        directory.set_profile(contact_id, ContactProfile(**profile))
    logger.info(
        f"Loaded {len(directory.contacts)} contacts and {len(directory.agents)} agents from {path}"
    )
    return directory
