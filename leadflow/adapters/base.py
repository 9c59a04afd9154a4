"""Outbound action contracts.

Adapters talk to telephony, messaging and LLM providers. They raise
``AdapterError`` on any provider failure and never touch run state.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from ..directory import AgentCandidate, Contact, ContactProfile, Deal


class CallResult(BaseModel):
    call_id: str


class MessageResult(BaseModel):
    message_id: str
    delivery_status: Optional[str] = None


class AgentSelection(BaseModel):
    """Scorer output: the chosen agent id and a short justification."""

    selected_agent_id: str
    reason: Optional[str] = None


class CallPlacer(Protocol):
    async def place_call(
        self, contact: Contact, node_config: Dict[str, Any], metadata: Dict[str, Any]
    ) -> CallResult:
        """Start an outbound call; the outcome arrives later as a provider event."""


class MessageSender(Protocol):
    async def send_message(
        self, contact: Contact, node_config: Dict[str, Any]
    ) -> MessageResult:
        """Send a template or free-text message to the contact."""


class EmailSender(Protocol):
    async def send_email(
        self, contact: Contact, node_config: Dict[str, Any]
    ) -> MessageResult:
        ...


class StructuredExtractor(Protocol):
    async def extract(self, raw_text: str) -> Dict[str, Any]:
        """Turn free text into a flat map of lead attributes."""


class AgentScorer(Protocol):
    async def rank(
        self,
        candidates: List[AgentCandidate],
        deal: Optional[Deal],
        profile: Optional[ContactProfile],
    ) -> AgentSelection:
        ...


class LoggingEmailSender(EmailSender):
    """Email sender that only records the request.

    Used until an email provider is configured.
    """

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def send_email(
        self, contact: Contact, node_config: Dict[str, Any]
    ) -> MessageResult:
        self.sent.append({"contact_id": contact.id, "config": dict(node_config)})
        return MessageResult(
            message_id=f"email-{contact.id}-{len(self.sent)}",
            delivery_status="logged",
        )


def phone_of(contact: Contact) -> Optional[str]:
    """Best phone number for a contact, including CRM ``primary_phone``/``phones``."""
    if contact.phone:
        return contact.phone
    extra = contact.model_extra or {}
    if extra.get("primary_phone"):
        return str(extra["primary_phone"])
    phones = extra.get("phones") or []
    return str(phones[0]) if phones else None


__all__ = [
    "AgentScorer",
    "AgentSelection",
    "CallPlacer",
    "CallResult",
    "EmailSender",
    "LoggingEmailSender",
    "MessageResult",
    "MessageSender",
    "StructuredExtractor",
    "phone_of",
]
