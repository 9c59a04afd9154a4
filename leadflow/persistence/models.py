"""Data models for persisted run state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import RunStatus
from ..utils.timeutil import utcnow


class WorkflowRun(BaseModel):
    """One execution of a workflow template against one contact."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    contact_id: str
    status: RunStatus = RunStatus.PENDING
    current_node_id: str
    context: dict[str, Any] = Field(default_factory=dict)
    next_run_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal
