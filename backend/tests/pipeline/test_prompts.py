"""
Hive - Prompt Builder Tests
===========================
"""

from types import SimpleNamespace

import pytest

from hive.core.models import Stage
from hive.core.pipeline.prompts import STAGE_TEMPLATES, CallbackUrls, build_prompt


@pytest.fixture
def callbacks() -> CallbackUrls:
    return CallbackUrls.for_task("https://hive.example.com/", 42, token="tok-123")


@pytest.fixture
def task_obj():
    return SimpleNamespace(id=42, title="Add CSV export", spec="Export the report table as CSV.")


@pytest.fixture
def project_obj():
    return SimpleNamespace(name="hive-demo", repo_path="/srv/repos/hive-demo")


class TestCallbackUrls:
    def test_urls_are_scoped_to_the_task(self, callbacks):
        assert callbacks.advance == "https://hive.example.com/api/v1/hive/tasks/42/advance?token=tok-123"
        assert callbacks.fail == "https://hive.example.com/api/v1/hive/tasks/42/fail?token=tok-123"

    def test_without_token(self):
        urls = CallbackUrls.for_task("http://localhost:8000", 7)
        assert urls.advance == "http://localhost:8000/api/v1/hive/tasks/7/advance"
        assert "?" not in urls.fail


class TestBuildPrompt:
    @pytest.mark.parametrize("stage", ["implement", "verify", "test", "deploy"])
    def test_every_stage_embeds_task_and_callbacks(self, stage, task_obj, project_obj, callbacks):
        prompt = build_prompt(task_obj, project_obj, stage, callbacks=callbacks)

        assert prompt.startswith(STAGE_TEMPLATES[stage])
        assert "/srv/repos/hive-demo" in prompt
        assert "Add CSV export" in prompt
        assert "Export the report table as CSV." in prompt
        assert callbacks.advance in prompt
        assert callbacks.fail in prompt
        assert '"output"' in prompt
        assert '"error"' in prompt

    def test_stage_wording_differs(self, task_obj, project_obj, callbacks):
        prompts = {
            stage: build_prompt(task_obj, project_obj, stage, callbacks=callbacks)
            for stage in ("implement", "verify", "test", "deploy")
        }
        assert len(set(prompts.values())) == 4
        assert "IMPLEMENT agent" in prompts["implement"]
        assert "DEPLOY agent" in prompts["deploy"]

    def test_previous_output_included(self, task_obj, project_obj, callbacks):
        prompt = build_prompt(
            task_obj, project_obj, Stage.VERIFY,
            previous_output="Added export button in reports.py",
            callbacks=callbacks,
        )
        assert "## Output from the previous stage" in prompt
        assert "Added export button in reports.py" in prompt

    def test_error_context_appended_verbatim(self, task_obj, project_obj, callbacks):
        error = "pytest: 3 failed\n  test_export_empty_table"
        prompt = build_prompt(task_obj, project_obj, "test", error_context=error, callbacks=callbacks)

        assert "## Previous attempt failed" in prompt
        assert error in prompt

    def test_no_retry_section_on_first_attempt(self, task_obj, project_obj, callbacks):
        prompt = build_prompt(task_obj, project_obj, "implement", callbacks=callbacks)
        assert "Previous attempt failed" not in prompt
        assert "Output from the previous stage" not in prompt

    def test_missing_repository_notice(self, task_obj, callbacks):
        project = SimpleNamespace(name="loose", repo_path=None)
        prompt = build_prompt(task_obj, project, "implement", callbacks=callbacks)
        assert "no repository configured" in prompt

    def test_missing_spec(self, project_obj, callbacks):
        task = SimpleNamespace(id=1, title="Untitled", spec=None)
        prompt = build_prompt(task, project_obj, "implement", callbacks=callbacks)
        assert "No spec provided." in prompt

    @pytest.mark.parametrize("stage", ["plan", "done", "review"])
    def test_non_executable_stage_rejected(self, stage, task_obj, project_obj, callbacks):
        with pytest.raises(ValueError):
            build_prompt(task_obj, project_obj, stage, callbacks=callbacks)
