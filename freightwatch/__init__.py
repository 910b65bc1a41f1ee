"""freightwatch: durable freight delay notification workflows."""

from .config import FreightWatchConfig, load_config
from .contracts import (
    DelayNotificationInput,
    NotificationOutcome,
    Route,
    StepName,
    TerminalResult,
    TrafficCondition,
    TrafficSnapshot,
    classify_condition,
)
from .dispatch import LocalDispatcher, TaskDispatcher
from .execute import StepExecutor, StepWorker
from .local import LocalCluster
from .persistence import WorkflowState, get_repository
from .runtime import WorkflowHandle, WorkflowRuntime
from .steps import FreightActivities, ServiceActivities, build_simulated_activities
from .transports import get_transport
from .utils.retry import RetryPolicy, compute_backoff
from .workflow import FreightDelayWorkflow, StepInvoker

__version__ = "0.1.0"
__all__ = [
    "DelayNotificationInput",
    "FreightActivities",
    "FreightDelayWorkflow",
    "FreightWatchConfig",
    "LocalCluster",
    "LocalDispatcher",
    "NotificationOutcome",
    "RetryPolicy",
    "Route",
    "ServiceActivities",
    "StepExecutor",
    "StepInvoker",
    "StepName",
    "StepWorker",
    "TaskDispatcher",
    "TerminalResult",
    "TrafficCondition",
    "TrafficSnapshot",
    "WorkflowHandle",
    "WorkflowRuntime",
    "WorkflowState",
    "build_simulated_activities",
    "classify_condition",
    "compute_backoff",
    "get_repository",
    "get_transport",
    "load_config",
]
