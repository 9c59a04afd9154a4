"""Step execution engine for leadflow runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .adapters.base import (
    CallPlacer,
    EmailSender,
    MessageSender,
    StructuredExtractor,
)
from .assignment import AgentAssignmentResolver
from .constants import (
    DEFAULT_LEASE_SECONDS,
    DEFAULT_REPLY_TIMEOUT_MINUTES,
    DEFAULT_TIMEZONE,
    ERROR_CONTEXT_KEY,
)
from .contracts import (
    ActionKind,
    ActionOutcome,
    AssignOutcome,
    CallOutcome,
    EdgeCondition,
    MessageOutcome,
    RETRY_SCHEDULED,
    WAITING_FOR_CALLBACK,
    WAITING_FOR_REPLY,
    NodeDef,
    RetryPolicy,
    RunOutcome,
    RunStatus,
    TransformOutcome,
    Transition,
    WaitOutcome,
    WorkflowTemplate,
    dump_outcome,
    parse_outcome,
)
from .directory import Communication, Contact, ContactDirectory
from .errors import (
    AdapterError,
    ContactNotFound,
    LeadflowError,
    ResolverExhausted,
    StorageError,
    TemplateError,
)
from .persistence import RunRepository, WorkflowRun
from .scheduling import day_number, enforce_time_windows, get_timezone, next_smart_slot
from .templates import TemplateStore
from .utils.retry import next_retry_at
from .utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)

# A window start closer than this is treated as "now".
RESCHEDULE_TOLERANCE = timedelta(seconds=60)


@dataclass
class StepResult:
    """Decision taken for the current node, applied to the run afterwards.

    With ``condition`` set the run follows an edge; otherwise it stays on the
    node with the given ``status``/``next_run_at``.
    """

    transition: Transition
    outcome: Optional[ActionOutcome] = None
    condition: Optional[EdgeCondition] = None
    status: RunStatus = RunStatus.PENDING
    next_run_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def advance(cls, outcome: ActionOutcome, condition: EdgeCondition) -> "StepResult":
        return cls(Transition.ADVANCED, outcome=outcome, condition=condition)

    @classmethod
    def failed(cls, error: str) -> "StepResult":
        return cls(Transition.FAILED, status=RunStatus.FAILED, error=error)


def lookup_path(data: Dict[str, Any], path: str) -> Any:
    """Resolve ``"node_id.key.sub"`` against a nested mapping, ``None`` if absent."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


class StepExecutor:
    """Advances one run by exactly one node-state transition per call."""

    def __init__(
        self,
        repository: RunRepository,
        templates: TemplateStore,
        directory: ContactDirectory,
        call_placer: Optional[CallPlacer] = None,
        message_sender: Optional[MessageSender] = None,
        email_sender: Optional[EmailSender] = None,
        extractor: Optional[StructuredExtractor] = None,
        resolver: Optional[AgentAssignmentResolver] = None,
        clock: Clock = utcnow,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self._repository = repository
        self._templates = templates
        self._directory = directory
        self._call_placer = call_placer
        self._message_sender = message_sender
        self._email_sender = email_sender
        self._extractor = extractor
        self._resolver = resolver or AgentAssignmentResolver()
        self._clock = clock
        self._lease = timedelta(seconds=lease_seconds)
        self._tz = get_timezone(timezone)

    # ------------------------------------------------------------------
    async def execute_step(self, run: WorkflowRun) -> RunOutcome:
        """Claim ``run``, run its current node and persist the transition.

        Losing the claim or the final conditional write returns a
        ``skipped`` outcome. Only ``StorageError`` is raised.
        """
        if run.status.is_terminal:
            return self._skipped(run, "run is terminal")

        now = self._clock()
        claimed = await self._repository.claim_run(
            run.id, run.status, run.revision, now + self._lease
        )
        if claimed is None:
            logger.debug(f"Run {run.id} was claimed elsewhere")
            return self._skipped(run, "claim lost")

        observed_status, observed_revision = claimed.status, claimed.revision
        node: Optional[NodeDef] = None
        try:
            template = await self._templates.get_template(claimed.workflow_id)
            node = template.node(claimed.current_node_id)
            result = await self._dispatch(claimed, node, now)
            self._apply(claimed, template, node, result, now)
        except StorageError:
            raise
        except (TemplateError, ContactNotFound) as exc:
            logger.error(f"Run {claimed.id} failed: {exc}")
            result = StepResult.failed(str(exc))
            self._apply_failure(claimed, result)
        except Exception as exc:
            logger.exception(f"Unexpected error executing run {claimed.id}")
            result = StepResult.failed(f"{type(exc).__name__}: {exc}")
            self._apply_failure(claimed, result)

        saved = await self._repository.save_run(claimed, observed_status, observed_revision)
        if not saved:
            logger.info(f"Run {claimed.id} changed while executing, dropping step result")
            return self._skipped(claimed, "write lost")

        return RunOutcome(
            run_id=claimed.id,
            node_id=node.id if node else run.current_node_id,
            action=node.action.value if node else None,
            transition=result.transition,
            status=claimed.status,
            next_node_id=claimed.current_node_id if result.transition == Transition.ADVANCED else None,
            next_run_at=claimed.next_run_at,
            detail=result.error or result.detail,
        )

    # ------------------------------------------------------------------
    # Applying a decision
    def _apply(
        self,
        run: WorkflowRun,
        template: WorkflowTemplate,
        node: NodeDef,
        result: StepResult,
        now: datetime,
    ) -> None:
        if result.outcome is not None:
            result.outcome.recorded_at = now
            run.context[node.id] = dump_outcome(result.outcome)

        if result.condition is None:
            run.status = result.status
            run.next_run_at = result.next_run_at
            run.correlation_id = result.correlation_id
            return

        run.correlation_id = None
        edge = template.select_edge(node.id, result.condition)
        if edge is None:
            logger.info(f"Run {run.id} completed at node {node.id}")
            result.transition = Transition.COMPLETED
            run.status = RunStatus.COMPLETED
            run.next_run_at = None
            run.completed_at = now
            return

        target = template.node(edge.to_node)
        run.current_node_id = target.id
        run.status = RunStatus.PENDING
        run.next_run_at = (
            now + timedelta(minutes=target.delay_minutes) if target.delay_minutes > 0 else None
        )
        logger.info(
            f"Run {run.id} advanced {node.id} -> {target.id} on {result.condition.value}"
        )

    @staticmethod
    def _apply_failure(run: WorkflowRun, result: StepResult) -> None:
        run.status = RunStatus.FAILED
        run.next_run_at = None
        run.correlation_id = None
        run.context[ERROR_CONTEXT_KEY] = result.error

    @staticmethod
    def _skipped(run: WorkflowRun, detail: str) -> RunOutcome:
        return RunOutcome(
            run_id=run.id,
            node_id=run.current_node_id,
            transition=Transition.SKIPPED,
            status=run.status,
            detail=detail,
        )

    # ------------------------------------------------------------------
    # Dispatch
    async def _dispatch(self, run: WorkflowRun, node: NodeDef, now: datetime) -> StepResult:
        action = node.action
        if action == ActionKind.WAIT:
            return self._run_wait(run, node, now)

        contact = await self._directory.get_contact(run.contact_id)
        if action == ActionKind.CALL:
            return await self._run_call(run, node, contact, now)
        if action == ActionKind.SEND_WHATSAPP:
            return await self._run_whatsapp(run, node, contact, now)
        if action == ActionKind.SEND_EMAIL:
            return await self._run_email(node, contact)
        if action == ActionKind.ASSIGN_AGENT:
            return await self._run_assign(node, contact)
        if action == ActionKind.CHECK_QUALIFICATION:
            return await self._run_qualification(node, contact)
        if action == ActionKind.MARKUP_TABLE:
            return await self._run_markup(run, node, contact)
        if action == ActionKind.CREATE_TASK:
            return await self._run_create_task(node, contact, now)
        if action == ActionKind.MARK_AS_LOST:
            return await self._run_mark_lost(contact)
        if action == ActionKind.START_NURTURE:
            return await self._run_nurture(node, contact)
        raise TemplateError(f"Unsupported action {action} on node {node.id}")

    def _window_delay(self, node: NodeDef, now: datetime) -> Optional[datetime]:
        """Next allowed send time when ``now`` is outside the node's windows."""
        if not node.time_windows or node.config.get("force_immediate"):
            return None
        allowed = enforce_time_windows(now, node.time_windows, self._tz)
        if allowed > now + RESCHEDULE_TOLERANCE:
            return allowed
        return None

    # -- call -----------------------------------------------------------
    async def _run_call(
        self, run: WorkflowRun, node: NodeDef, contact: Contact, now: datetime
    ) -> StepResult:
        policy = RetryPolicy.from_config(node.config.get("retry"))
        previous = parse_outcome(run.context.get(node.id))
        if not isinstance(previous, CallOutcome):
            previous = None

        if previous is not None and previous.status == WAITING_FOR_CALLBACK:
            # Deadline passed without a provider event.
            previous.status = "no_callback"
            previous.success = False
            previous.reason = "no callback before deadline"
            return await self._resolve_call(node, contact, previous, policy, now)

        if previous is not None and previous.status != RETRY_SCHEDULED:
            return await self._resolve_call(node, contact, previous, policy, now)

        attempts = previous.attempts if previous else 0
        history = list(previous.history) if previous else []

        resume_at = self._window_delay(node, now)
        if resume_at is not None:
            logger.info(f"Run {run.id}: outside call window, rescheduling to {resume_at}")
            return StepResult(
                Transition.RESCHEDULED,
                outcome=previous,
                next_run_at=resume_at,
                detail="outside time window",
            )

        attempt = attempts + 1
        try:
            if self._call_placer is None:
                raise AdapterError("No call placer configured", "vapi")
            placed = await self._call_placer.place_call(
                contact,
                node.config,
                {"workflow_run_id": run.id, "contact_id": contact.id, "node_id": node.id},
            )
        except AdapterError as exc:
            logger.warning(f"Run {run.id}: call attempt {attempt} failed to start: {exc}")
            await self._log_communication(contact, "ai_call", "failed", {"error": str(exc)})
            failed = CallOutcome(
                success=False, status="error", reason=str(exc), attempts=attempt, history=history
            )
            return await self._resolve_call(node, contact, failed, policy, now)

        await self._log_communication(contact, "ai_call", "sent", {"call_id": placed.call_id})
        outcome = CallOutcome(
            status=WAITING_FOR_CALLBACK,
            attempts=attempt,
            call_id=placed.call_id,
            history=history,
        )
        timeout = node.config.get("callback_timeout_minutes")
        return StepResult(
            Transition.WAITING,
            outcome=outcome,
            status=RunStatus.WAITING,
            next_run_at=now + timedelta(minutes=float(timeout)) if timeout else None,
            correlation_id=placed.call_id,
        )

    async def _resolve_call(
        self,
        node: NodeDef,
        contact: Contact,
        outcome: CallOutcome,
        policy: RetryPolicy,
        now: datetime,
    ) -> StepResult:
        outcome.history = outcome.history + [
            {
                "attempt": outcome.attempts,
                "status": outcome.status,
                "success": bool(outcome.success),
                "call_id": outcome.call_id,
                "reason": outcome.reason,
            }
        ]
        if outcome.success:
            return StepResult.advance(outcome, EdgeCondition.SUCCESS)

        if outcome.attempts < policy.max_attempts:
            await self._run_intervention(policy, outcome.attempts, contact)
            retry_at = self._retry_at(policy, outcome.attempts, node, now)
            logger.info(
                f"Call attempt {outcome.attempts}/{policy.max_attempts} for contact "
                f"{contact.id} ended with {outcome.status}, retrying at {retry_at}"
            )
            retry = outcome.model_copy(
                update={"status": RETRY_SCHEDULED, "success": None, "call_id": None}
            )
            return StepResult(
                Transition.RETRY_SCHEDULED, outcome=retry, next_run_at=retry_at
            )

        return StepResult.advance(outcome, EdgeCondition.FAILURE)

    def _retry_at(
        self, policy: RetryPolicy, attempt: int, node: NodeDef, now: datetime
    ) -> datetime:
        if policy.backoff == "smart_morning_evening":
            retry_at = next_smart_slot(now, self._tz)
        else:
            retry_at = next_retry_at(
                now,
                attempt,
                policy.interval_minutes,
                exponential=policy.backoff == "exponential",
            )
        return enforce_time_windows(retry_at, node.time_windows, self._tz)

    async def _run_intervention(
        self, policy: RetryPolicy, attempt: int, contact: Contact
    ) -> None:
        intervention = policy.intervention_for(attempt)
        if intervention is None:
            return
        logger.info(f"Running {intervention.action} intervention after attempt {attempt}")
        config = intervention.model_dump(exclude_none=True)
        try:
            if intervention.action == "send_email" and self._email_sender is not None:
                await self._email_sender.send_email(contact, config)
            elif intervention.action == "send_whatsapp" and self._message_sender is not None:
                await self._message_sender.send_message(contact, config)
            elif intervention.action == "update_contact" and intervention.fields:
                await self._directory.update_contact(contact.id, intervention.fields)
        except (AdapterError, ContactNotFound) as exc:
            logger.error(f"Intervention {intervention.action} failed: {exc}")

    # -- whatsapp -------------------------------------------------------
    async def _run_whatsapp(
        self, run: WorkflowRun, node: NodeDef, contact: Contact, now: datetime
    ) -> StepResult:
        config = node.config
        previous = parse_outcome(run.context.get(node.id))
        if isinstance(previous, MessageOutcome) and previous.status in (
            WAITING_FOR_REPLY,
            "replied",
        ):
            return await self._resolve_reply(node, previous)

        resume_at = self._window_delay(node, now)
        if resume_at is not None:
            logger.info(f"Run {run.id}: outside messaging window, rescheduling to {resume_at}")
            return StepResult(
                Transition.RESCHEDULED, next_run_at=resume_at, detail="outside time window"
            )

        try:
            if self._message_sender is None:
                raise AdapterError("No message sender configured", "twilio")
            sent = await self._message_sender.send_message(contact, config)
        except AdapterError as exc:
            logger.warning(f"Run {run.id}: WhatsApp send failed: {exc}")
            await self._log_communication(contact, "whatsapp", "failed", {"error": str(exc)})
            return StepResult.advance(
                MessageOutcome(success=False, status="error", reason=str(exc)),
                EdgeCondition.FAILURE,
            )

        await self._log_communication(contact, "whatsapp", "sent", {"sid": sent.message_id})
        outcome = MessageOutcome(
            success=True,
            status="sent",
            message_id=sent.message_id,
            delivery_status=sent.delivery_status,
        )
        timeout = float(config.get("timeout_minutes") or 0)
        if not (config.get("wait_for_reply") or timeout > 0):
            return StepResult.advance(outcome, EdgeCondition.DEFAULT)

        timeout = timeout or DEFAULT_REPLY_TIMEOUT_MINUTES
        outcome.status = WAITING_FOR_REPLY
        outcome.success = None
        return StepResult(
            Transition.WAITING,
            outcome=outcome,
            status=RunStatus.WAITING,
            next_run_at=now + timedelta(minutes=timeout),
            correlation_id=sent.message_id,
        )

    async def _resolve_reply(self, node: NodeDef, outcome: MessageOutcome) -> StepResult:
        if not outcome.reply_received:
            outcome.status = "no_reply"
            outcome.success = False
            return StepResult.advance(outcome, EdgeCondition.NO_REPLY)

        outcome.status = "replied"
        outcome.success = True
        if (
            node.config.get("extract_insights")
            and self._extractor is not None
            and outcome.reply_text
            and not outcome.extracted
        ):
            try:
                outcome.extracted = await self._extractor.extract(outcome.reply_text)
            except AdapterError as exc:
                logger.warning(f"Insight extraction failed: {exc}")
        return StepResult.advance(outcome, EdgeCondition.SUCCESS)

    # -- synchronous actions -------------------------------------------
    async def _run_email(self, node: NodeDef, contact: Contact) -> StepResult:
        try:
            if self._email_sender is None:
                raise AdapterError("No email sender configured", "email")
            sent = await self._email_sender.send_email(contact, node.config)
        except AdapterError as exc:
            return StepResult.advance(
                MessageOutcome(channel="email", success=False, status="error", reason=str(exc)),
                EdgeCondition.FAILURE,
            )
        await self._log_communication(contact, "email", "sent", {"id": sent.message_id})
        return StepResult.advance(
            MessageOutcome(
                channel="email",
                success=True,
                status="sent",
                message_id=sent.message_id,
                delivery_status=sent.delivery_status,
            ),
            EdgeCondition.SUCCESS,
        )

    def _run_wait(self, run: WorkflowRun, node: NodeDef, now: datetime) -> StepResult:
        previous = parse_outcome(run.context.get(node.id))
        if isinstance(previous, WaitOutcome) and previous.resume_at is not None:
            if now >= previous.resume_at:
                previous.status = "completed"
                previous.success = True
                return StepResult.advance(previous, EdgeCondition.DEFAULT)
            return StepResult(
                Transition.RESCHEDULED, outcome=previous, next_run_at=previous.resume_at
            )

        config = node.config
        delay = timedelta(
            minutes=float(config.get("minutes") or 0),
            hours=float(config.get("hours") or 0),
            days=float(config.get("days") or 0),
        )
        if delay <= timedelta(0):
            return StepResult.advance(
                WaitOutcome(status="completed", success=True, resume_at=now),
                EdgeCondition.DEFAULT,
            )
        resume_at = now + delay
        return StepResult(
            Transition.WAIT_STARTED,
            outcome=WaitOutcome(status="waiting", resume_at=resume_at),
            next_run_at=resume_at,
        )

    async def _run_assign(self, node: NodeDef, contact: Contact) -> StepResult:
        strategy = node.config.get("strategy") or "least_leads"
        candidates = await self._directory.list_agent_candidates()
        deal = await self._directory.get_latest_deal(contact.id)
        profile = await self._directory.get_contact_profile(contact.id)
        try:
            decision = await self._resolver.assign(candidates, strategy, deal, profile)
        except ResolverExhausted as exc:
            logger.warning(f"No agent for contact {contact.id}: {exc}")
            return StepResult.advance(
                AssignOutcome(success=False, status="no_agents", reason=str(exc), strategy=strategy),
                EdgeCondition.FAILURE,
            )
        except ValueError as exc:
            raise TemplateError(f"Unknown assignment strategy {strategy!r}") from exc

        await self._directory.assign_agent(contact.id, decision.agent_id, deal.id if deal else None)
        return StepResult.advance(
            AssignOutcome(
                success=True,
                status="assigned",
                reason=decision.reason,
                agent_id=decision.agent_id,
                agent_name=decision.agent_name,
                strategy=decision.strategy.value,
                used_fallback=decision.used_fallback,
            ),
            EdgeCondition.DEFAULT,
        )

    async def _run_qualification(self, node: NodeDef, contact: Contact) -> StepResult:
        groups = [g["id"] if isinstance(g, dict) else str(g) for g in node.config.get("groups") or []]
        required = list(node.config.get("required_fields") or [])
        if not groups and not required:
            return StepResult.advance(
                TransformOutcome(success=True, status="default", reason="no criteria configured"),
                EdgeCondition.DEFAULT,
            )

        matched_group: Optional[str] = None
        if groups:
            member_of = await self._directory.contact_group_ids(contact.id)
            matched_group = next((g for g in groups if g in member_of), None)
        missing = [f for f in required if contact.field(f) in (None, "", [])]
        qualified = (not groups or matched_group is not None) and not missing

        outcome = TransformOutcome(
            success=qualified,
            status="qualified" if qualified else "not_qualified",
            payload={"matched_group": matched_group, "missing_fields": missing},
        )
        return StepResult.advance(
            outcome, EdgeCondition.SUCCESS if qualified else EdgeCondition.FAILURE
        )

    async def _run_markup(self, run: WorkflowRun, node: NodeDef, contact: Contact) -> StepResult:
        fields: Dict[str, Any] = dict(node.config.get("fields") or {})
        for field, source in (node.config.get("copy") or {}).items():
            value = lookup_path(run.context, str(source))
            if value is None:
                logger.debug(f"Nothing to copy from {source} into {field}")
                continue
            fields[field] = value
        if fields:
            await self._directory.update_contact(contact.id, fields)
        return StepResult.advance(
            TransformOutcome(success=True, status="updated", payload={"fields": fields}),
            EdgeCondition.DEFAULT,
        )

    async def _run_create_task(self, node: NodeDef, contact: Contact, now: datetime) -> StepResult:
        title = node.config.get("title") or "Follow up"
        due_at = now + timedelta(days=float(node.config.get("delay_days") or 1))
        task = await self._directory.create_task(contact.id, title, due_at)
        return StepResult.advance(
            TransformOutcome(success=True, status="created", payload={"task_id": task.id}),
            EdgeCondition.SUCCESS,
        )

    async def _run_mark_lost(self, contact: Contact) -> StepResult:
        await self._directory.mark_lost(contact.id)
        return StepResult.advance(
            TransformOutcome(success=True, status="lost"), EdgeCondition.SUCCESS
        )

    async def _run_nurture(self, node: NodeDef, contact: Contact) -> StepResult:
        deal_id = contact.current_deal_id
        if not deal_id:
            deal = await self._directory.get_latest_deal(contact.id)
            deal_id = deal.id if deal else None
        if not deal_id:
            return StepResult.advance(
                TransformOutcome(success=False, status="no_deal", reason="contact has no deal"),
                EdgeCondition.FAILURE,
            )

        if node.time_windows:
            window = node.time_windows[0]
            day = day_number(window.days[0] if window.days else None)
            at = window.start
        else:
            day = day_number(node.config.get("day") or "monday")
            at = node.config.get("time") or "09:00"

        try:
            await self._directory.enable_nurture(deal_id, day, at)
        except LeadflowError as exc:
            return StepResult.advance(
                TransformOutcome(success=False, status="error", reason=str(exc)),
                EdgeCondition.FAILURE,
            )
        return StepResult.advance(
            TransformOutcome(
                success=True,
                status="nurturing",
                payload={"deal_id": deal_id, "day": day, "time": at},
            ),
            EdgeCondition.SUCCESS,
        )

    async def _log_communication(
        self, contact: Contact, channel: str, status: str, payload: Dict[str, Any]
    ) -> None:
        await self._directory.record_communication(
            Communication(
                contact_id=contact.id,
                channel=channel,
                direction="out",
                status=status,
                payload=payload,
            )
        )
