"""Outbound provider adapters."""

from .base import (
    AgentScorer,
    AgentSelection,
    CallPlacer,
    CallResult,
    EmailSender,
    LoggingEmailSender,
    MessageResult,
    MessageSender,
    StructuredExtractor,
)
from .llm import LlmAgentScorer, LlmExtractor
from .twilio import TwilioWhatsAppSender
from .vapi import VapiCallPlacer

__all__ = [
    "AgentScorer",
    "AgentSelection",
    "CallPlacer",
    "CallResult",
    "EmailSender",
    "LlmAgentScorer",
    "LlmExtractor",
    "LoggingEmailSender",
    "MessageResult",
    "MessageSender",
    "StructuredExtractor",
    "TwilioWhatsAppSender",
    "VapiCallPlacer",
]
