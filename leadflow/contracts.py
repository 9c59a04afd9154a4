"""Core contracts for leadflow: workflow templates, node outcomes and events."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .constants import DEFAULT_RETRY_INTERVAL_MINUTES
from .errors import TemplateError

logger = logging.getLogger(__name__)


class ActionKind(str, Enum):
    CALL = "call"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_EMAIL = "send_email"
    WAIT = "wait"
    ASSIGN_AGENT = "assign_agent"
    CHECK_QUALIFICATION = "check_qualification"
    MARKUP_TABLE = "markup_table"
    CREATE_TASK = "create_task"
    MARK_AS_LOST = "mark_as_lost"
    START_NURTURE = "start_nurture"


class EdgeCondition(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NO_REPLY = "no_reply"
    DEFAULT = "default"


# Handles written by the visual editor.
_CONDITION_ALIASES = {
    "replied": EdgeCondition.SUCCESS,
    "next": EdgeCondition.DEFAULT,
    "": EdgeCondition.DEFAULT,
}

_FAILURE_CONDITIONS = {EdgeCondition.FAILURE, EdgeCondition.NO_REPLY}


class RunStatus(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


ACTIVE_STATUSES = (RunStatus.PENDING, RunStatus.WAITING)


class TimeWindow(BaseModel):
    """Allowed contact window, in the engine's local timezone."""

    days: List[str] = Field(default_factory=lambda: ["mon", "tue", "wed", "thu", "fri"])
    start: str = "09:00"
    end: str = "19:00"

    @field_validator("days")
    @classmethod
    def _lower_days(cls, value: List[str]) -> List[str]:
        return [d.lower()[:3] for d in value]


class Intervention(BaseModel):
    """Side action fired when a given call attempt fails."""

    attempt: int
    action: Literal["send_email", "send_whatsapp", "update_contact"]
    template_id: Optional[str] = None
    message: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)


class RetryPolicy(BaseModel):
    """Per-node retry settings for calls (``config.retry``)."""

    max_attempts: int = 1
    backoff: Literal["fixed", "smart_morning_evening", "exponential"] = "fixed"
    interval_minutes: float = DEFAULT_RETRY_INTERVAL_MINUTES
    interventions: List[Intervention] = Field(default_factory=list)

    @classmethod
    def from_config(cls, raw: Any) -> "RetryPolicy":
        if not raw:
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise TemplateError(f"Invalid retry policy: {exc}") from exc

    def intervention_for(self, attempt: int) -> Optional[Intervention]:
        for intervention in self.interventions:
            if intervention.attempt == attempt:
                return intervention
        return None


class NodeDef(BaseModel):
    """One action step of a workflow template."""

    id: str
    action: ActionKind
    label: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    delay_minutes: int = 0
    time_windows: List[TimeWindow] = Field(default_factory=list)


class EdgeDef(BaseModel):
    """Directed transition between two nodes, guarded by a condition."""

    from_node: str
    to_node: str
    condition: EdgeCondition = EdgeCondition.DEFAULT

    @field_validator("condition", mode="before")
    @classmethod
    def _normalise_condition(cls, value: Any) -> Any:
        if value is None:
            return EdgeCondition.DEFAULT
        if isinstance(value, str) and value.lower() in _CONDITION_ALIASES:
            return _CONDITION_ALIASES[value.lower()]
        return value

    def matches(self, condition: EdgeCondition) -> bool:
        if condition in _FAILURE_CONDITIONS:
            return self.condition in _FAILURE_CONDITIONS
        return self.condition == condition


class WorkflowTemplate(BaseModel):
    """Immutable node/edge graph authored outside the engine."""

    id: str
    name: Optional[str] = None
    start_node_id: Optional[str] = None
    nodes: List[NodeDef] = Field(default_factory=list)
    edges: List[EdgeDef] = Field(default_factory=list)

    def node(self, node_id: str) -> NodeDef:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise TemplateError(f"Node not found: {node_id} (workflow {self.id})")

    def outgoing(self, node_id: str) -> List[EdgeDef]:
        return [e for e in self.edges if e.from_node == node_id]

    def entry_node_id(self) -> str:
        """Return the node a new run starts at."""
        if self.start_node_id:
            self.node(self.start_node_id)
            return self.start_node_id
        if not self.nodes:
            raise TemplateError(f"Workflow {self.id} has no nodes")
        targets = {e.to_node for e in self.edges}
        for node in self.nodes:
            if node.id not in targets:
                return node.id
        return self.nodes[0].id

    def select_edge(self, node_id: str, condition: EdgeCondition) -> Optional[EdgeDef]:
        """Pick the edge to follow for ``condition``.

        The first edge matching the condition wins; otherwise the first
        ``default`` edge. ``None`` means the run has reached its end.
        """
        edges = self.outgoing(node_id)
        for edge in edges:
            if edge.matches(condition):
                return edge
        for edge in edges:
            if edge.condition == EdgeCondition.DEFAULT:
                return edge
        return None

    def validate_graph(self) -> List[str]:
        """Return a list of structural problems (empty when the graph is sound)."""
        problems: List[str] = []
        ids = [n.id for n in self.nodes]
        if len(ids) != len(set(ids)):
            problems.append("duplicate node ids")
        known = set(ids)
        if self.start_node_id and self.start_node_id not in known:
            problems.append(f"start node {self.start_node_id} does not exist")
        for edge in self.edges:
            if edge.from_node not in known:
                problems.append(f"edge source {edge.from_node} does not exist")
            if edge.to_node not in known:
                problems.append(f"edge target {edge.to_node} does not exist")
        if not self.nodes:
            problems.append("template has no nodes")
        return problems


# ---------------------------------------------------------------------------
# Node outcomes stored in ``WorkflowRun.context``


# Outcome statuses shared by the executor and the event gateway.
WAITING_FOR_CALLBACK = "waiting_for_callback"
WAITING_FOR_REPLY = "waiting_for_reply"
RETRY_SCHEDULED = "retry_scheduled"


class ActionOutcome(BaseModel):
    """Result of one node execution or resumption.

    Persisted as an open JSON map, so unknown keys are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    kind: str
    success: Optional[bool] = None
    status: str
    reason: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: Optional[datetime] = None


class CallOutcome(ActionOutcome):
    kind: Literal["call"] = "call"
    attempts: int = 0
    call_id: Optional[str] = None
    history: List[Dict[str, Any]] = Field(default_factory=list)


class MessageOutcome(ActionOutcome):
    kind: Literal["message"] = "message"
    channel: str = "whatsapp"
    message_id: Optional[str] = None
    delivery_status: Optional[str] = None
    reply_received: bool = False
    reply_text: Optional[str] = None
    extracted: Dict[str, Any] = Field(default_factory=dict)


class WaitOutcome(ActionOutcome):
    kind: Literal["wait"] = "wait"
    resume_at: Optional[datetime] = None


class AssignOutcome(ActionOutcome):
    kind: Literal["assign"] = "assign"
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    strategy: Optional[str] = None
    used_fallback: bool = False


class TransformOutcome(ActionOutcome):
    kind: Literal["transform"] = "transform"


NodeOutcome = Annotated[
    Union[CallOutcome, MessageOutcome, WaitOutcome, AssignOutcome, TransformOutcome],
    Field(discriminator="kind"),
]

_outcome_adapter: TypeAdapter[Any] = TypeAdapter(NodeOutcome)


def parse_outcome(raw: Any) -> Optional[ActionOutcome]:
    """Narrow a stored context entry to its outcome type.

    Returns ``None`` for empty entries and for records that do not look like
    outcomes (e.g. trigger markers written by whoever created the run).
    """
    if not raw or not isinstance(raw, dict):
        return None
    try:
        return _outcome_adapter.validate_python(raw)
    except ValidationError:
        logger.debug(f"Context entry is not a node outcome: {raw!r}")
        return None


def dump_outcome(outcome: ActionOutcome) -> Dict[str, Any]:
    return outcome.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Events and results


class EventType(str, Enum):
    CALL_ENDED = "call_ended"
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_STATUS = "message_status"


CALL_ANSWERED = "answered"

# Provider end reasons and the call outcome each one stands for.
CALL_END_REASONS = {
    "assistant-ended-call": CALL_ANSWERED,
    "customer-ended-call": CALL_ANSWERED,
    "voicemail": "voicemail",
    "busy": "busy",
    "customer-busy": "busy",
    "customer-did-not-answer": "no-answer",
    "no-answer": "no-answer",
    "silence-timed-out": "no-answer",
}
CALL_OUTCOMES = frozenset({CALL_ANSWERED, "voicemail", "busy", "no-answer", "completed"})


def call_outcome(value: Optional[str]) -> Tuple[str, bool]:
    """Normalize a call outcome or provider end reason to ``(outcome, success)``.

    Only a conversation that actually took place counts as success; unknown
    values map to ``completed``.
    """
    if value in CALL_OUTCOMES:
        outcome = value
    else:
        outcome = CALL_END_REASONS.get(value or "", "completed")
    return outcome, outcome == CALL_ANSWERED


class ProviderEvent(BaseModel):
    """Asynchronous callback from a telephony or messaging provider.

    Call events that report an ``outcome`` but no ``success`` flag get the
    flag from the outcome, so ``{"outcome": "answered"}`` is a success.
    """

    model_config = ConfigDict(extra="allow")

    event_type: str
    contact_id: Optional[str] = None
    correlation_id: Optional[str] = None
    run_id: Optional[str] = None
    outcome: Optional[str] = None
    success: Optional[bool] = None
    reason: Optional[str] = None
    text: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _derive_call_success(self) -> "ProviderEvent":
        if self.event_type in (EventType.MESSAGE_RECEIVED.value, EventType.MESSAGE_STATUS.value):
            return self
        if self.success is None and self.outcome:
            self.outcome, self.success = call_outcome(self.outcome)
        return self


class Transition(str, Enum):
    ADVANCED = "advanced"
    WAITING = "waiting"
    RETRY_SCHEDULED = "retry_scheduled"
    RESCHEDULED = "rescheduled"
    WAIT_STARTED = "wait_started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunOutcome(BaseModel):
    """What a single ``execute_step`` call did to a run."""

    run_id: str
    node_id: Optional[str] = None
    action: Optional[str] = None
    transition: Transition
    status: RunStatus
    next_node_id: Optional[str] = None
    next_run_at: Optional[datetime] = None
    detail: Optional[str] = None


class EventResult(BaseModel):
    """What the gateway did with a provider event."""

    status: Literal["applied", "ignored", "unmatched"]
    run_ids: List[str] = Field(default_factory=list)
    detail: Optional[str] = None
