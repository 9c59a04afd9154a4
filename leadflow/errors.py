"""Error taxonomy for the leadflow engine."""

from __future__ import annotations


class LeadflowError(Exception):
    """Base class for all leadflow errors."""


class TemplateError(LeadflowError):
    """A workflow template is missing, or references a missing node or edge.

    Fatal to the run that hit it: the run is marked ``failed`` and never retried.
    """


class AdapterError(LeadflowError):
    """An outbound provider call failed (network, auth, provider rejection)."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ConcurrencyConflict(LeadflowError):
    """A conditional run update affected zero rows."""


class CorrelationMismatch(LeadflowError):
    """A provider event could not be matched to any waiting run."""


class ResolverExhausted(LeadflowError):
    """Agent assignment could not select anybody."""


class NoAvailableAgents(ResolverExhausted):
    """Every candidate agent is unavailable or at capacity."""


class StorageError(LeadflowError):
    """The run store could not be read or written."""


class DuplicateActiveRun(LeadflowError):
    """An active run already exists for the contact and workflow."""

    def __init__(self, workflow_id: str, contact_id: str) -> None:
        super().__init__(
            f"Active run already exists for workflow={workflow_id} contact={contact_id}"
        )
        self.workflow_id = workflow_id
        self.contact_id = contact_id


class ContactNotFound(LeadflowError):
    """The run's contact (or a contact referenced by an event) does not exist."""
