from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from relay.agents.base import Agent, AgentContext
from relay.config import RepositoryConfig
from relay.errors import StageCriticalFailure, StageNonCriticalFailure
from relay.models import (
    ANALYZING,
    CLAUDE_FIXING,
    CODEX_REVIEWING,
    COMPLETED,
    FAILED,
    IMPLEMENTING,
    MERGING,
    PR_CREATING,
    SKIPPED,
    STAGE_COMPLETED,
    AgentResult,
    Task,
)
from relay.notifications import Notifier
from relay.pipeline import PipelineStore

logger = logging.getLogger(__name__)

AGENT_STAGES = (ANALYZING, IMPLEMENTING, CODEX_REVIEWING, CLAUDE_FIXING, MERGING, PR_CREATING)
CRITICAL_STAGES = frozenset({IMPLEMENTING})


@dataclass(slots=True)
class StageOutcome:
    stage: str
    status: str
    result: AgentResult | None = None
    error: StageNonCriticalFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == COMPLETED


@dataclass(slots=True)
class RunResult:
    task_id: str
    status: str
    branch: str | None = None
    artifact_path: str | None = None
    outcomes: list[StageOutcome] = field(default_factory=list)

    def outcome(self, stage: str) -> StageOutcome | None:
        for item in self.outcomes:
            if item.stage == stage:
                return item
        return None

    @property
    def implemented(self) -> bool:
        implementation = self.outcome(IMPLEMENTING)
        return implementation is not None and implementation.succeeded


class StageRunner:
    """Executes the stage sequence for a task against the pipeline store.

    Agent errors never escape as raw exceptions. A failed critical stage marks
    the pipeline failed and raises ``StageCriticalFailure``; any other failed
    stage is recorded and the sequence continues without its output.
    """

    def __init__(
        self,
        pipelines: PipelineStore,
        agents: Mapping[str, Agent],
        notifier: Notifier,
        *,
        critical_stages: frozenset[str] = CRITICAL_STAGES,
    ) -> None:
        self.pipelines = pipelines
        self.agents = dict(agents)
        self.notifier = notifier
        self.critical_stages = critical_stages

    async def run(self, task: Task, repository: RepositoryConfig) -> RunResult:
        run = RunResult(task_id=task.id, status="in_progress")
        for stage in AGENT_STAGES:
            outcome = await self.run_stage(
                task,
                stage,
                repository,
                prior_artifact=run.artifact_path,
                branch=run.branch,
            )
            run.outcomes.append(outcome)
            result = outcome.result
            if not outcome.succeeded or result is None:
                continue
            if stage == ANALYZING and result.artifact_path:
                run.artifact_path = result.artifact_path
                self.pipelines.update_metadata(task.id, analysis_artifact=result.artifact_path)
            if stage == IMPLEMENTING and result.branch:
                run.branch = result.branch

        self.pipelines.update_stage(task.id, STAGE_COMPLETED)
        self.pipelines.complete_stage(task.id, STAGE_COMPLETED)
        self.pipelines.complete(task.id, branch=run.branch)
        await self.notifier.pipeline_completed(task.id, run.branch)
        run.status = COMPLETED
        return run

    async def run_stage(
        self,
        task: Task,
        stage: str,
        repository: RepositoryConfig,
        prior_artifact: str | None = None,
        branch: str | None = None,
    ) -> StageOutcome:
        agent = self.agents.get(stage)
        if agent is None:
            reason = "No agent configured for this stage."
            self.pipelines.skip_stage(task.id, stage, reason)
            logger.debug("Skipping %s for task %s: no agent", stage, task.id)
            return StageOutcome(stage=stage, status=SKIPPED)

        self.pipelines.update_stage(task.id, stage, agent=agent.role)
        await self.notifier.stage_started(task.id, stage)
        context = AgentContext(repository=repository, prior_artifact=prior_artifact, branch=branch)

        cause: Exception | None = None
        result: AgentResult | None = None
        try:
            result = await agent.invoke(task, context)
        except Exception as exc:
            logger.exception("Agent for %s raised on task %s", stage, task.id)
            cause = exc

        if result is not None and result.success:
            self._record_success(task.id, stage, result)
            await self.notifier.stage_completed(task.id, stage, self._summary(result))
            return StageOutcome(stage=stage, status=COMPLETED, result=result)

        if cause is not None:
            message = str(cause) or type(cause).__name__
        else:
            message = (result.error if result else None) or "Agent reported failure."
        self.pipelines.fail_stage(task.id, stage, message)

        if stage in self.critical_stages:
            self.pipelines.fail(task.id)
            logger.error("Critical stage %s failed for task %s: %s", stage, task.id, message)
            await self.notifier.stage_failed(task.id, stage, message, critical=True)
            raise StageCriticalFailure(stage, message, task_id=task.id) from cause

        logger.warning("Stage %s failed for task %s, continuing: %s", stage, task.id, message)
        await self.notifier.stage_failed(task.id, stage, message, critical=False)
        return StageOutcome(
            stage=stage,
            status=FAILED,
            result=result,
            error=StageNonCriticalFailure(stage, message),
        )

    def _record_success(self, task_id: str, stage: str, result: AgentResult) -> None:
        details = {}
        if result.branch:
            details["branch"] = result.branch
        if result.artifact_path:
            details["artifact_path"] = result.artifact_path
        pipeline = self.pipelines.complete_stage(task_id, stage, **details)
        if result.branch and result.branch not in pipeline.metadata.get("branches", []):
            self.pipelines.update_metadata(
                task_id, branches=[*pipeline.metadata.get("branches", []), result.branch]
            )
        self.pipelines.store_agent_execution(
            task_id,
            stage,
            {"agent": result.details.get("agent"), "success": True, "branch": result.branch},
        )

    @staticmethod
    def _summary(result: AgentResult) -> str:
        if result.artifact_path:
            return f"**Artifact:** `{result.artifact_path}`"
        if result.branch:
            return f"**Branch:** `{result.branch}`"
        return ""
