from __future__ import annotations

import logging
from pathlib import Path

from relay.agents.base import Agent, AgentBackend, AgentContext
from relay.errors import AgentExecutionError
from relay.models import AgentResult, Task, task_branch

logger = logging.getLogger(__name__)

REVIEW_COMMIT_PREFIX = "review: Add TODO/FIXME comments from code review"
FIX_COMMIT_PREFIX = "fix: Address TODO/FIXME comments from code review"


class RoleAgent(Agent):
    """A prompt template bound to an agent backend."""

    role = "agent"
    system_prompt = "You are a software engineering agent working in a git repository."

    def __init__(self, backend: AgentBackend) -> None:
        self.backend = backend

    def build_instruction(self, task: Task, context: AgentContext) -> str:
        raise NotImplementedError

    def _result(self, task: Task, context: AgentContext, output: str) -> AgentResult:
        return AgentResult(
            success=True,
            branch=context.branch or task_branch(task.id),
            details={"agent": self.backend.name, "output": output[-2000:]},
        )

    async def invoke(self, task: Task, context: AgentContext) -> AgentResult:
        instruction = self.build_instruction(task, context)
        try:
            output = await self.backend.run(
                self.system_prompt,
                instruction,
                task_id=task.id,
                working_directory=context.working_directory,
            )
        except AgentExecutionError as exc:
            logger.warning("%s agent failed for task %s: %s", self.role, task.id, exc)
            return AgentResult(success=False, error=str(exc), details={"agent": self.backend.name})
        return self._result(task, context, output)


class AnalysisAgent(RoleAgent):
    role = "analysis"
    system_prompt = """
You are the requirements analyst.
Read the task and the repository, then write a feature specification:
requirements, files to modify, risks, and a step-by-step implementation plan.
Do not modify any files.
""".strip()

    def __init__(self, backend: AgentBackend, *, artifacts_dir: Path) -> None:
        super().__init__(backend)
        self.artifacts_dir = artifacts_dir

    def build_instruction(self, task: Task, context: AgentContext) -> str:
        repository = context.repository
        return (
            f"Task {task.id}: {task.title}\n\n"
            f"Description:\n{task.description or '(none)'}\n\n"
            f"Repository: {repository.slug} at {repository.path}\n\n"
            "Reply with the feature specification in Markdown."
        )

    def _result(self, task: Task, context: AgentContext, output: str) -> AgentResult:
        if not output:
            return AgentResult(success=False, error="Analysis produced no output.")
        feature_dir = self.artifacts_dir / task.id
        feature_dir.mkdir(parents=True, exist_ok=True)
        artifact = feature_dir / "feature-spec.md"
        artifact.write_text(output + "\n", encoding="utf-8")
        return AgentResult(
            success=True,
            artifact_path=str(artifact),
            details={"agent": self.backend.name, "feature_dir": str(feature_dir)},
        )


class ImplementationAgent(RoleAgent):
    role = "implementation"
    system_prompt = """
You are the implementation engineer.
Implement exactly what the task asks, following existing code style.
Commit, push the task branch, and open a pull request with the gh CLI.
""".strip()

    def build_instruction(self, task: Task, context: AgentContext) -> str:
        repository = context.repository
        branch = task_branch(task.id)
        spec_step = (
            f"0. Read the feature specification at {context.prior_artifact}.\n"
            if context.prior_artifact
            else ""
        )
        return (
            f"Task {task.id}: {task.title}\n"
            f"URL: {task.url or '(none)'}\n\n"
            f"Description:\n{task.description or '(none)'}\n\n"
            f"{spec_step}"
            f"1. git checkout {repository.base_branch} && git pull origin {repository.base_branch}\n"
            f"2. git checkout -b {branch}\n"
            "3. Implement the change and run the relevant tests.\n"
            f'4. git add . && git commit -m "feat: {task.title} (#{task.id})"\n'
            f"5. git push -u origin {branch}\n"
            f'6. gh pr create --repo {repository.slug} --base {repository.base_branch} '
            f'--head {branch} --title "[#{task.id}] {task.title}" --fill\n'
        )

    def _result(self, task: Task, context: AgentContext, output: str) -> AgentResult:
        return AgentResult(
            success=True,
            branch=task_branch(task.id),
            details={"agent": self.backend.name, "output": output[-2000:]},
        )


class ReviewAgent(RoleAgent):
    role = "review"
    system_prompt = """
You are the code reviewer.
Find correctness, maintainability, and security issues in the branch diff.
Record each finding as a TODO comment at the relevant line; do not fix anything.
""".strip()

    def build_instruction(self, task: Task, context: AgentContext) -> str:
        repository = context.repository
        branch = context.branch or task_branch(task.id)
        return (
            f"Review the changes for task {task.id}: {task.title}\n\n"
            f"1. git fetch origin && git checkout {branch} && git pull origin {branch}\n"
            f"2. Review git diff origin/{repository.base_branch}...{branch}\n"
            "3. Add TODO comments for every issue you find.\n"
            f'4. git add . && git commit -m "{REVIEW_COMMIT_PREFIX} (#{task.id})"\n'
            f"5. git push origin {branch}\n"
        )


class FixAgent(RoleAgent):
    role = "fix"
    system_prompt = """
You are the implementation engineer addressing review feedback.
Resolve every TODO/FIXME comment left by the reviewer and remove the comment.
""".strip()

    def build_instruction(self, task: Task, context: AgentContext) -> str:
        branch = context.branch or task_branch(task.id)
        return (
            f"Fix the review comments for task {task.id}: {task.title}\n\n"
            f"1. git fetch origin && git checkout {branch} && git pull origin {branch}\n"
            "2. Find the TODO/FIXME comments added by the review and address each one.\n"
            f'3. git add . && git commit -m "{FIX_COMMIT_PREFIX} (#{task.id})"\n'
            f"4. git push origin {branch}\n"
        )
