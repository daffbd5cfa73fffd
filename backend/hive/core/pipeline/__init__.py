"""
Hive Pipeline
=============

The task pipeline: each stage of a task is handed to an external agent,
which reports back through the advance/fail callbacks.

Components:
- PipelineOrchestrator: task and run state machine
- AgentDispatcher: starts agents (gateway or CLI backend)
- build_prompt: per-stage agent instructions with the callback clause
- next_stage: fixed stage order
- build_dashboard: board read model
"""

from hive.core.pipeline.dashboard import build_dashboard
from hive.core.pipeline.dispatch import (
    AgentDispatcher,
    CliDispatchBackend,
    DispatchHandle,
    GatewayDispatchBackend,
    create_dispatcher,
)
from hive.core.pipeline.errors import (
    DispatchError,
    HiveError,
    InvalidTransitionError,
    RunConflictError,
    RunNotFoundError,
    StaleCallbackError,
    TaskNotFoundError,
)
from hive.core.pipeline.orchestrator import PipelineOrchestrator, TransitionResult
from hive.core.pipeline.prompts import CallbackUrls, build_prompt
from hive.core.pipeline.stages import BOARD_STAGES, PIPELINE_STAGES, next_stage

__all__ = [
    "PipelineOrchestrator",
    "TransitionResult",
    "AgentDispatcher",
    "CliDispatchBackend",
    "DispatchHandle",
    "GatewayDispatchBackend",
    "create_dispatcher",
    "CallbackUrls",
    "build_prompt",
    "BOARD_STAGES",
    "PIPELINE_STAGES",
    "next_stage",
    "build_dashboard",
    "HiveError",
    "DispatchError",
    "InvalidTransitionError",
    "RunConflictError",
    "RunNotFoundError",
    "StaleCallbackError",
    "TaskNotFoundError",
]
