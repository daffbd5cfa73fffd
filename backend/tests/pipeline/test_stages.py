"""
Hive - Stage Sequencer Tests
============================
"""

import pytest

from hive.core.models import Stage
from hive.core.pipeline.stages import (
    BOARD_STAGES,
    FIRST_STAGE,
    PIPELINE_STAGES,
    is_pipeline_stage,
    is_terminal,
    next_stage,
)


class TestNextStage:
    """Fixed order: implement → verify → test → deploy → done."""

    @pytest.mark.parametrize(
        "stage,expected",
        [
            (Stage.IMPLEMENT, Stage.VERIFY),
            (Stage.VERIFY, Stage.TEST),
            (Stage.TEST, Stage.DEPLOY),
            (Stage.DEPLOY, Stage.DONE),
        ],
    )
    def test_pipeline_order(self, stage, expected):
        assert next_stage(stage) == expected

    def test_accepts_plain_strings(self):
        assert next_stage("deploy") == "done"
        assert next_stage("IMPLEMENT") == Stage.VERIFY

    def test_done_is_terminal(self):
        assert next_stage(Stage.DONE) is None
        assert next_stage("done") is None

    def test_plan_is_never_executed(self):
        """plan only exists on the board."""
        assert next_stage(Stage.PLAN) is None
        assert not is_pipeline_stage("plan")

    def test_unknown_stage_is_terminal(self):
        assert next_stage("review") is None
        assert next_stage(None) is None
        assert is_terminal("review")


class TestStageLists:
    def test_first_stage(self):
        assert FIRST_STAGE == Stage.IMPLEMENT
        assert PIPELINE_STAGES[0] == FIRST_STAGE

    def test_board_wraps_pipeline(self):
        assert BOARD_STAGES[0] == Stage.PLAN
        assert BOARD_STAGES[-1] == Stage.DONE
        assert BOARD_STAGES[1:-1] == PIPELINE_STAGES
