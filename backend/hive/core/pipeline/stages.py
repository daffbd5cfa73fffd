"""
Stage Sequencer - fixed stage order of the pipeline.

    implement → verify → test → deploy → done

``plan`` only exists on the board: tasks wait there for a greenlight and the
pipeline never executes a plan run.
"""

from typing import Optional, Union

from hive.core.models import Stage

# Stages that produce pipeline runs, in execution order
PIPELINE_STAGES = [
    Stage.IMPLEMENT,
    Stage.VERIFY,
    Stage.TEST,
    Stage.DEPLOY,
]

# Board columns, used for dashboard grouping and greenlight gating
BOARD_STAGES = [
    Stage.PLAN,
    *PIPELINE_STAGES,
    Stage.DONE,
]

FIRST_STAGE = PIPELINE_STAGES[0]

_PIPELINE_VALUES = [s.value for s in PIPELINE_STAGES]


def stage_value(stage: Union[Stage, str, None]) -> str:
    """Plain string value of a stage, whether given as enum or string."""
    if isinstance(stage, Stage):
        return stage.value
    return (stage or "").lower()


def next_stage(stage: Union[Stage, str, None]) -> Optional[Stage]:
    """
    Get the stage that follows ``stage``.

    Returns None for ``done`` and for anything that is not a pipeline stage.
    """
    value = stage_value(stage)
    if value not in _PIPELINE_VALUES:
        return None
    idx = _PIPELINE_VALUES.index(value)
    if idx + 1 < len(PIPELINE_STAGES):
        return PIPELINE_STAGES[idx + 1]
    return Stage.DONE


def is_pipeline_stage(stage: Union[Stage, str, None]) -> bool:
    """True for stages that are executed by a worker."""
    return stage_value(stage) in _PIPELINE_VALUES


def is_terminal(stage: Union[Stage, str, None]) -> bool:
    return next_stage(stage) is None
