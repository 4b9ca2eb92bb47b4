"""Stepwise: workflow execution engine with approvals, delays and retries."""

from .approvals import ApprovalGateManager
from .contracts import WorkflowDefinition, WorkflowStep, WorkflowTrigger
from .coordinator import ExecutionCoordinator
from .definitions import WorkflowDefinitionService
from .engine import WorkflowEngine, create_engine
from .events import get_event_sink
from .models import ApprovalRequest, WorkflowExecution
from .persistence import get_repository
from .registry import REGISTRY, HandlerResult, register_handler

__version__ = "0.1.0"
__all__ = [
    "ApprovalGateManager",
    "ApprovalRequest",
    "ExecutionCoordinator",
    "WorkflowDefinition",
    "WorkflowDefinitionService",
    "WorkflowEngine",
    "WorkflowExecution",
    "WorkflowStep",
    "WorkflowTrigger",
    "HandlerResult",
    "create_engine",
    "get_event_sink",
    "get_repository",
    "register_handler",
    "REGISTRY",
]
