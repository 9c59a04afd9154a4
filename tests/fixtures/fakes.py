"""Fake provider adapters, a controllable clock and runtime builders for tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from leadflow.adapters.base import AgentSelection, CallResult, MessageResult
from leadflow.assignment import AgentAssignmentResolver
from leadflow.config import LeadflowConfig
from leadflow.contracts import WorkflowTemplate
from leadflow.directory import AgentProfile, Contact, Deal, InMemoryDirectory
from leadflow.errors import AdapterError
from leadflow.persistence import InMemoryRunRepository, RunRepository
from leadflow.runtime import Runtime, build_runtime
from leadflow.templates import InMemoryTemplateStore
from leadflow.transports import InMemoryTransport

# Tuesday 10:00 in Madrid.
NOW = datetime(2025, 1, 7, 9, 0, tzinfo=timezone.utc)

CONTACT_PHONE = "+34600000001"


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeCallPlacer:
    def __init__(self, fail: bool = False, pause: bool = False) -> None:
        self.fail = fail
        self.pause = pause
        self.calls: List[Dict[str, Any]] = []

    async def place_call(
        self, contact: Contact, node_config: Dict[str, Any], metadata: Dict[str, Any]
    ) -> CallResult:
        if self.pause:
            await asyncio.sleep(0)
        if self.fail:
            raise AdapterError("provider unavailable", "vapi")
        self.calls.append({"contact_id": contact.id, "metadata": dict(metadata)})
        return CallResult(call_id=f"call-{len(self.calls)}")


class FakeMessageSender:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []

    async def send_message(
        self, contact: Contact, node_config: Dict[str, Any]
    ) -> MessageResult:
        if self.fail:
            raise AdapterError("twilio rejected the message", "twilio")
        self.sent.append({"contact_id": contact.id, "config": dict(node_config)})
        return MessageResult(message_id=f"SM{len(self.sent)}", delivery_status="queued")


class FakeExtractor:
    def __init__(self, result: Optional[Dict[str, Any]] = None) -> None:
        self.result = result or {"language": "es", "max_budget": 500000}
        self.texts: List[str] = []

    async def extract(self, raw_text: str) -> Dict[str, Any]:
        self.texts.append(raw_text)
        return dict(self.result)


class FakeScorer:
    def __init__(self, agent_id: Optional[str] = None, fail: bool = False) -> None:
        self.agent_id = agent_id
        self.fail = fail

    async def rank(self, candidates, deal, profile) -> AgentSelection:
        if self.fail:
            raise AdapterError("model timed out", "llm")
        return AgentSelection(selected_agent_id=self.agent_id or "", reason="best language match")


def make_template(workflow_id: str, nodes: List[dict], edges: List[dict] = ()) -> WorkflowTemplate:
    return WorkflowTemplate.model_validate(
        {"id": workflow_id, "nodes": nodes, "edges": list(edges)}
    )


def seeded_directory() -> InMemoryDirectory:
    directory = InMemoryDirectory()
    directory.add_contact(
        Contact(
            id="c1",
            first_name="Lucia",
            last_name="Perez",
            phone=CONTACT_PHONE,
            email="lucia@example.com",
        )
    )
    directory.add_deal(Deal(id="d1", contact_id="c1", segment="luxury", budget_max=900000))
    directory.add_agent(AgentProfile(id="a1", full_name="Ana", max_active_leads=5))
    directory.add_agent(AgentProfile(id="a2", full_name="Bruno", max_active_leads=10))
    return directory


def make_runtime(
    *templates: WorkflowTemplate,
    clock: Optional[FixedClock] = None,
    repository: Optional[RunRepository] = None,
    directory: Optional[InMemoryDirectory] = None,
    call_placer: Optional[FakeCallPlacer] = None,
    message_sender: Optional[FakeMessageSender] = None,
    extractor: Optional[FakeExtractor] = None,
    resolver: Optional[AgentAssignmentResolver] = None,
    config: Optional[LeadflowConfig] = None,
) -> Runtime:
    return build_runtime(
        config or LeadflowConfig(),
        repository=repository or InMemoryRunRepository(),
        templates=InMemoryTemplateStore(templates),
        directory=directory or seeded_directory(),
        transport=InMemoryTransport(),
        call_placer=call_placer or FakeCallPlacer(),
        message_sender=message_sender or FakeMessageSender(),
        extractor=extractor or FakeExtractor(),
        resolver=resolver or AgentAssignmentResolver(),
        clock=clock or FixedClock(),
    )
