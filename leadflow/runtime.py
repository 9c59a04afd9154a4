"""Wire configuration into a ready-to-use set of engine components."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from .adapters import (
    LlmAgentScorer,
    LlmExtractor,
    LoggingEmailSender,
    TwilioWhatsAppSender,
    VapiCallPlacer,
)
from .adapters.base import CallPlacer, EmailSender, MessageSender, StructuredExtractor
from .assignment import AgentAssignmentResolver
from .config import LeadflowConfig, load_config
from .directory import ContactDirectory, InMemoryDirectory, load_directory
from .execute import StepExecutor
from .gateway import EventGateway
from .persistence import RunRepository, WorkflowRun, get_repository
from .sweeper import RunSweeper
from .templates import InMemoryTemplateStore, TemplateStore, load_templates
from .transports import BaseTransport, get_transport
from .utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: LeadflowConfig
    repository: RunRepository
    templates: TemplateStore
    directory: ContactDirectory
    executor: StepExecutor
    sweeper: RunSweeper
    gateway: EventGateway
    transport: BaseTransport
    clock: Clock = utcnow

    async def start_run(
        self,
        workflow_id: str,
        contact_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[WorkflowRun, bool]:
        """Return the contact's active run of ``workflow_id``, creating it if needed.

        Raises ``TemplateError`` for unknown workflows and ``ContactNotFound``
        for unknown contacts.
        """
        template = await self.templates.get_template(workflow_id)
        await self.directory.get_contact(contact_id)
        entry = template.node(template.entry_node_id())
        now = self.clock()
        run = WorkflowRun(
            workflow_id=workflow_id,
            contact_id=contact_id,
            current_node_id=entry.id,
            context=dict(context or {}),
            next_run_at=now + timedelta(minutes=entry.delay_minutes) if entry.delay_minutes else None,
            created_at=now,
            updated_at=now,
        )
        run, created = await self.repository.get_or_create_active_run(run)
        if created:
            logger.info(f"Started run {run.id} of {workflow_id} for contact {contact_id}")
        return run, created


def build_runtime(
    config: Optional[LeadflowConfig] = None,
    *,
    repository: Optional[RunRepository] = None,
    templates: Optional[TemplateStore] = None,
    directory: Optional[ContactDirectory] = None,
    transport: Optional[BaseTransport] = None,
    call_placer: Optional[CallPlacer] = None,
    message_sender: Optional[MessageSender] = None,
    email_sender: Optional[EmailSender] = None,
    extractor: Optional[StructuredExtractor] = None,
    resolver: Optional[AgentAssignmentResolver] = None,
    clock: Clock = utcnow,
) -> Runtime:
    """Build every component from ``config``; explicit arguments win."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    if templates is None:
        templates = (
            load_templates(config.templates_path)
            if config.templates_path
            else InMemoryTemplateStore()
        )
    if directory is None:
        directory = (
            load_directory(config.directory_path)
            if config.directory_path
            else InMemoryDirectory()
        )
    transport = transport or get_transport(config=config)
    resolver = resolver or AgentAssignmentResolver(LlmAgentScorer(config.llm.model))

    executor = StepExecutor(
        repository=repository,
        templates=templates,
        directory=directory,
        call_placer=call_placer or VapiCallPlacer(config.vapi),
        message_sender=message_sender or TwilioWhatsAppSender(config.twilio),
        email_sender=email_sender or LoggingEmailSender(),
        extractor=extractor or LlmExtractor(config.llm.model),
        resolver=resolver,
        clock=clock,
        lease_seconds=config.scheduler.lease_seconds,
        timezone=config.timezone,
    )
    sweeper = RunSweeper(
        repository,
        executor,
        batch_size=config.scheduler.batch_size,
        max_batch_size=config.scheduler.max_batch_size,
        clock=clock,
    )
    gateway = EventGateway(repository, directory, clock=clock)
    return Runtime(
        config=config,
        repository=repository,
        templates=templates,
        directory=directory,
        executor=executor,
        sweeper=sweeper,
        gateway=gateway,
        transport=transport,
        clock=clock,
    )
