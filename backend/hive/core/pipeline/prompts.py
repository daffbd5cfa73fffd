"""
Prompt Builder - instruction text sent to the worker for each stage.

Every prompt carries the callback clause: the worker has no other way to
tell the orchestrator it is done, so a prompt without it leaves the task
running forever.
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Union
from urllib.parse import urlencode

from hive.core.models import Stage
from hive.core.pipeline.stages import stage_value


class _TaskLike(Protocol):
    id: int
    title: str
    spec: Optional[str]


class _ProjectLike(Protocol):
    name: str
    repo_path: Optional[str]


@dataclass(frozen=True)
class CallbackUrls:
    """The two endpoints a worker reports back to."""
    advance: str
    fail: str

    @classmethod
    def for_task(
        cls,
        base_url: str,
        task_id: int,
        token: Optional[str] = None,
        api_prefix: str = "/api/v1",
    ) -> "CallbackUrls":
        root = f"{base_url.rstrip('/')}{api_prefix}/hive/tasks/{task_id}"
        query = f"?{urlencode({'token': token})}" if token else ""
        return cls(
            advance=f"{root}/advance{query}",
            fail=f"{root}/fail{query}",
        )


# ==========================================================================
# Stage Templates
# ==========================================================================

STAGE_TEMPLATES = {
    Stage.IMPLEMENT.value: """You are the IMPLEMENT agent for a Hive pipeline task.

Work in the repository below and implement the task as specified. Make
focused changes, keep the existing code style, and commit your work on the
current branch with a descriptive message. Do not deploy anything.""",

    Stage.VERIFY.value: """You are the VERIFY agent for a Hive pipeline task.

Another agent has just implemented the task below. Review the changes in the
repository against the task spec: check that every requirement is covered,
that nothing unrelated was changed, and that the code builds. Fix small
problems yourself. If the implementation is wrong or incomplete, report a
failure explaining what is missing.""",

    Stage.TEST.value: """You are the TEST agent for a Hive pipeline task.

The task below has been implemented and verified. Run the project's test
suite and add or update tests for the new behaviour where coverage is
missing. Report a failure if any test fails and you cannot fix it without
changing the intended behaviour.""",

    Stage.DEPLOY.value: """You are the DEPLOY agent for a Hive pipeline task.

The task below has passed implementation, verification and testing. Deploy
it using the project's usual deployment procedure (build, migrate, restart
services as required) and confirm the deployed service is healthy. Report a
failure if the deployment cannot be completed or the health check fails.""",
}


CALLBACK_TEMPLATE = """## Reporting back (MANDATORY)

When you are finished you MUST report the result, otherwise the pipeline
stalls.

On success:
    curl -s -X POST '{advance_url}' \\
      -H 'Content-Type: application/json' \\
      -d '{{"output": "<short summary of what you did>"}}'

On failure:
    curl -s -X POST '{fail_url}' \\
      -H 'Content-Type: application/json' \\
      -d '{{"error": "<what went wrong>"}}'

Call exactly one of these, exactly once, as your final action."""


def build_prompt(
    task: _TaskLike,
    project: _ProjectLike,
    stage: Union[Stage, str],
    previous_output: Optional[str] = None,
    error_context: Optional[str] = None,
    *,
    callbacks: CallbackUrls,
) -> str:
    """
    Build the instruction text for one stage of one task.

    Args:
        task: Task being advanced
        project: Owning project (repository location)
        stage: Pipeline stage to run
        previous_output: Output reported by the prior stage, if any
        error_context: Error of the failed attempt being retried, if any
        callbacks: Advance and fail URLs for this task

    Returns:
        Prompt text

    Raises:
        ValueError: If ``stage`` is not an executable pipeline stage
    """
    key = stage_value(stage)
    template = STAGE_TEMPLATES.get(key)
    if template is None:
        raise ValueError(f"No prompt template for stage: {key}")

    repo = project.repo_path or "(no repository configured - ask for clarification by reporting a failure)"

    sections = [
        template,
        f"## Project\n\nName: {project.name}\nRepository: {repo}",
        f"## Task #{task.id}: {task.title}\n\n{task.spec or 'No spec provided.'}",
    ]

    if previous_output:
        sections.append(f"## Output from the previous stage\n\n{previous_output}")

    if error_context:
        sections.append(
            "## Previous attempt failed\n\n"
            "An earlier attempt at this stage reported the error below. "
            "Address it before anything else.\n\n"
            f"{error_context}"
        )

    sections.append(
        CALLBACK_TEMPLATE.format(advance_url=callbacks.advance, fail_url=callbacks.fail)
    )

    return "\n\n".join(sections) + "\n"
