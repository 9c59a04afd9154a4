"""Resume waiting runs from asynchronous provider events."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .contracts import (
    WAITING_FOR_CALLBACK,
    WAITING_FOR_REPLY,
    CallOutcome,
    EventResult,
    EventType,
    MessageOutcome,
    ProviderEvent,
    RunStatus,
    parse_outcome,
)
from .directory import Communication, ContactDirectory
from .errors import CorrelationMismatch
from .persistence import RunRepository, WorkflowRun
from .utils.timeutil import Clock, utcnow

logger = logging.getLogger(__name__)


class EventGateway:
    """Records provider outcomes on waiting runs and makes them due again.

    The gateway never executes a node: it only writes the outcome into
    ``context[current_node_id]`` and flips the run back to ``pending``. Every
    write is conditional on the run still being ``waiting`` at the revision
    that was read, so duplicate and late events are no-ops.
    """

    def __init__(
        self,
        repository: RunRepository,
        directory: Optional[ContactDirectory] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._clock = clock

    async def on_provider_event(self, event: ProviderEvent) -> EventResult:
        if event.event_type == EventType.MESSAGE_RECEIVED.value:
            return await self._on_reply(event)
        if event.event_type == EventType.MESSAGE_STATUS.value:
            return await self._on_delivery_status(event)
        return await self._on_call_event(event)

    # ------------------------------------------------------------------
    async def _correlate(self, event: ProviderEvent) -> Optional[WorkflowRun]:
        if event.run_id:
            run = await self._repository.get_run(event.run_id)
            if run is not None:
                return run
            logger.warning(f"Event references unknown run {event.run_id}")

        if event.correlation_id:
            run = await self._repository.find_waiting_run_by_correlation(event.correlation_id)
            if run is not None:
                return run

        if event.contact_id:
            for run in await self._repository.list_waiting_runs(event.contact_id):
                outcome = parse_outcome(run.context.get(run.current_node_id))
                if isinstance(outcome, CallOutcome) and outcome.status == WAITING_FOR_CALLBACK:
                    logger.warning(
                        f"Matched {event.event_type} for contact {event.contact_id} to run "
                        f"{run.id} by contact fallback (correlation id {event.correlation_id})"
                    )
                    return run
        return None

    async def _on_call_event(self, event: ProviderEvent) -> EventResult:
        run = await self._correlate(event)
        if run is None:
            self._log_mismatch(event)
            return EventResult(status="unmatched", detail="no waiting run for event")

        if run.status != RunStatus.WAITING:
            logger.info(f"Ignoring {event.event_type} for run {run.id} in status {run.status.value}")
            return EventResult(status="ignored", run_ids=[run.id], detail="run is not waiting")

        if not isinstance(parse_outcome(run.context.get(run.current_node_id)), CallOutcome):
            logger.info(
                f"Ignoring {event.event_type} for run {run.id}: node {run.current_node_id} is not a call"
            )
            return EventResult(status="ignored", run_ids=[run.id], detail="run is not waiting for a call")

        record = dict(run.context[run.current_node_id])
        waiting_on = record.get("call_id")
        if waiting_on and event.correlation_id and waiting_on != event.correlation_id:
            logger.info(
                f"Ignoring stale event for call {event.correlation_id}; run {run.id} waits on {waiting_on}"
            )
            return EventResult(status="ignored", run_ids=[run.id], detail="stale call id")

        record.update(
            status=event.outcome or "completed",
            success=bool(event.success),
            reason=event.reason,
            payload={**(record.get("payload") or {}), **event.payload},
        )
        if event.correlation_id and not record.get("call_id"):
            record["call_id"] = event.correlation_id
        return await self._resume(run, record, event)

    async def _on_reply(self, event: ProviderEvent) -> EventResult:
        contact_id = event.contact_id or await self._contact_from_phone(event)
        if contact_id is None:
            self._log_mismatch(event)
            return EventResult(status="unmatched", detail="unknown sender")

        if self._directory is not None:
            await self._directory.record_communication(
                Communication(
                    contact_id=contact_id,
                    channel="whatsapp",
                    direction="in",
                    status="received",
                    payload={"text": event.text, "sid": event.correlation_id},
                )
            )

        applied: List[str] = []
        for run in await self._repository.list_waiting_runs(contact_id):
            outcome = parse_outcome(run.context.get(run.current_node_id))
            if not isinstance(outcome, MessageOutcome) or outcome.status != WAITING_FOR_REPLY:
                continue
            record = dict(run.context[run.current_node_id])
            record.update(
                status="replied",
                success=True,
                reply_received=True,
                reply_text=event.text,
            )
            result = await self._resume(run, record, event)
            applied.extend(result.run_ids if result.status == "applied" else [])

        if not applied:
            logger.info(f"Reply from contact {contact_id} matched no waiting run")
            return EventResult(status="unmatched", detail="no run waiting for a reply")
        return EventResult(status="applied", run_ids=applied)

    async def _on_delivery_status(self, event: ProviderEvent) -> EventResult:
        if not event.correlation_id:
            return EventResult(status="ignored", detail="no message id")
        run = await self._repository.find_waiting_run_by_correlation(event.correlation_id)
        if run is None:
            return EventResult(status="ignored", detail="no waiting run for message")

        record = dict(run.context.get(run.current_node_id) or {})
        record["delivery_status"] = event.outcome
        run.context[run.current_node_id] = record
        # Delivery receipts update the record but do not end the wait.
        saved = await self._repository.save_run(run, RunStatus.WAITING, run.revision)
        if not saved:
            return EventResult(status="ignored", run_ids=[run.id], detail="concurrent update")
        return EventResult(status="applied", run_ids=[run.id])

    # ------------------------------------------------------------------
    async def _resume(
        self, run: WorkflowRun, record: Dict[str, Any], event: ProviderEvent
    ) -> EventResult:
        now = self._clock()
        record["recorded_at"] = now.isoformat()
        run.context[run.current_node_id] = record
        run.status = RunStatus.PENDING
        run.next_run_at = now
        run.correlation_id = None

        saved = await self._repository.save_run(run, RunStatus.WAITING, run.revision)
        if not saved:
            logger.info(f"Run {run.id} changed before {event.event_type} could be applied")
            return EventResult(status="ignored", run_ids=[run.id], detail="concurrent update")

        logger.info(f"Run {run.id} resumed by {event.event_type} ({record.get('status')})")
        return EventResult(status="applied", run_ids=[run.id])

    async def _contact_from_phone(self, event: ProviderEvent) -> Optional[str]:
        phone = event.payload.get("from")
        if not phone or self._directory is None:
            return None
        contact = await self._directory.find_contact_by_phone(str(phone))
        return contact.id if contact else None

    @staticmethod
    def _log_mismatch(event: ProviderEvent) -> None:
        error = CorrelationMismatch(
            f"{event.event_type} run_id={event.run_id} correlation_id={event.correlation_id} "
            f"contact_id={event.contact_id}"
        )
        logger.warning(f"Discarding provider event: {error}")
