"""Leadflow: durable lead-nurturing workflows driven by calls, messages and sweeps."""

from .contracts import ProviderEvent, RunStatus, WorkflowTemplate
from .execute import StepExecutor
from .gateway import EventGateway
from .persistence import WorkflowRun, get_repository
from .runtime import Runtime, build_runtime
from .sweeper import RunSweeper
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ProviderEvent",
    "RunStatus",
    "WorkflowTemplate",
    "WorkflowRun",
    "StepExecutor",
    "RunSweeper",
    "EventGateway",
    "Runtime",
    "build_runtime",
    "get_repository",
    "get_transport",
]
