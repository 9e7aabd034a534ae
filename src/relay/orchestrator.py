from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta

from relay.cache import DedupCache
from relay.clients.tracker import WorkTracker
from relay.config import RelayConfig
from relay.errors import RelayError, StageCriticalFailure
from relay.models import (
    CLAUDE_FIXING,
    CODEX_REVIEWING,
    COMPLETED,
    FAILED,
    PRDiscovered,
    Task,
)
from relay.notifications import Notifier
from relay.pipeline import PipelineStore
from relay.reconcilers.pr_discovery import PRDiscoveryReconciler
from relay.reconcilers.review_cycle import ReviewFixReconciler
from relay.registry import ProcessRegistry
from relay.runner import RunResult, StageOutcome, StageRunner

logger = logging.getLogger(__name__)

RERUN_REVIEW = "rerun-review"
RERUN_FIXES = "rerun-fixes"


def parse_command(text: str | None) -> str | None:
    """Map a task comment to a rerun command, if it is one."""
    if not text:
        return None
    lowered = text.lower().strip()
    if "re-run check" in lowered or "rerun check" in lowered:
        return RERUN_REVIEW
    if "re-run fixes" in lowered or "rerun fixes" in lowered:
        return RERUN_FIXES
    return None


@dataclass(slots=True)
class IntakeOutcome:
    task_id: str
    duplicate: bool = False
    status: str | None = None
    run: RunResult | None = None
    error: str | None = None
    tracking_pr: bool = False


@dataclass(slots=True)
class LoopSpec:
    name: str
    interval_seconds: float
    tick: Callable[[], Awaitable[object]] = field(repr=False)


class Orchestrator:
    """Intake plus the periodic reconciliation loops.

    Collaborators are injected; ``relay.cli`` wires the production ones.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        tracker: WorkTracker | None,
        cache: DedupCache,
        comment_cache: DedupCache,
        pipelines: PipelineStore,
        runner: StageRunner,
        pr_discovery: PRDiscoveryReconciler,
        review_cycle: ReviewFixReconciler,
        registry: ProcessRegistry,
        notifier: Notifier,
        events: asyncio.Queue[PRDiscovered],
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.cache = cache
        self.comment_cache = comment_cache
        self.pipelines = pipelines
        self.runner = runner
        self.pr_discovery = pr_discovery
        self.review_cycle = review_cycle
        self.registry = registry
        self.notifier = notifier
        self.events = events
        self._intake_running = False

    async def intake(self, task: Task) -> IntakeOutcome:
        # Claim the task before any await so an overlapping poll sees it.
        if self.cache.has(task.id):
            logger.debug("Task %s already picked up", task.id)
            return IntakeOutcome(task_id=task.id, duplicate=True)
        self.cache.add(task)

        repository = self.config.repository
        logger.info("Picked up task %s: %s", task.id, task.title)
        self.pipelines.create(task, repository=repository.slug)
        try:
            run = await self.runner.run(task, repository)
        except StageCriticalFailure as exc:
            logger.error("Pipeline for task %s aborted: %s", task.id, exc)
            return IntakeOutcome(task_id=task.id, status=FAILED, error=exc.reason)

        outcome = IntakeOutcome(task_id=task.id, status=COMPLETED, run=run)
        if run.implemented and run.branch:
            self.pr_discovery.track(
                task.id, task.title, run.branch, repository.owner, repository.repo
            )
            outcome.tracking_pr = True
        return outcome

    async def poll_intake(self) -> list[IntakeOutcome]:
        if self._intake_running:
            logger.debug("Intake poll already running")
            return []
        if self.tracker is None:
            return []
        self._intake_running = True
        try:
            tasks = await self.tracker.fetch_assigned()
            outcomes: list[IntakeOutcome] = []
            for task in tasks:
                try:
                    await self.check_commands(task.id)
                    outcomes.append(await self.intake(task))
                except RelayError:
                    logger.exception("Intake failed for task %s", task.id)
            return outcomes
        finally:
            self._intake_running = False

    async def check_commands(self, task_id: str) -> list[str]:
        """Run rerun commands found in new comments on an already processed task."""
        if self.tracker is None or not self.cache.has(task_id):
            return []
        executed: list[str] = []
        for comment in await self.tracker.fetch_comments(task_id):
            if self.config.tracker.bot_user_id and comment.author_id == self.config.tracker.bot_user_id:
                continue
            command = parse_command(comment.text)
            if command is None or self.comment_cache.has(comment.id):
                continue
            self.comment_cache.add(Task(id=comment.id, title=task_id, description=comment.text))
            logger.info("Command %s on task %s", command, task_id)
            if command == RERUN_REVIEW:
                await self.rerun_review(task_id)
            else:
                await self.rerun_fixes(task_id)
            executed.append(command)
        return executed

    async def _rerun(self, task_id: str, stage: str) -> StageOutcome:
        branch = self.pipelines.implemented_branch(task_id)
        pipeline = self.pipelines.require(task_id)
        task = Task(
            id=task_id,
            title=pipeline.task_name,
            description=str(pipeline.metadata.get("task_description") or ""),
            url=str(pipeline.metadata.get("task_url") or ""),
        )
        outcome = await self.runner.run_stage(
            task, stage, self.config.repository, branch=branch
        )
        error = outcome.error.reason if outcome.error is not None else None
        await self.notifier.rerun_finished(task_id, stage, error)
        return outcome

    async def rerun_review(self, task_id: str) -> StageOutcome:
        return await self._rerun(task_id, CODEX_REVIEWING)

    async def rerun_fixes(self, task_id: str) -> StageOutcome:
        return await self._rerun(task_id, CLAUDE_FIXING)

    def drain_pr_events(self) -> int:
        started = 0
        while True:
            try:
                event = self.events.get_nowait()
            except asyncio.QueueEmpty:
                return started
            try:
                if self.review_cycle.start_cycle(event):
                    started += 1
            finally:
                self.events.task_done()

    async def reconcile_prs(self) -> None:
        await self.pr_discovery.tick()
        self.drain_pr_events()

    def _forget_finished_processes(self) -> int:
        """Drop registry entries of tasks that will not launch agents again."""
        forgotten = 0
        for task_id in self.registry.task_ids():
            if any(entry.status == "running" for entry in self.registry.processes(task_id)):
                continue
            if self.review_cycle.get(task_id) is not None:
                continue
            pipeline = self.pipelines.get(task_id)
            if pipeline is not None and not pipeline.is_terminal:
                continue
            forgotten += self.registry.forget(task_id)
        return forgotten

    async def housekeeping(self) -> dict[str, int]:
        swept = self.registry.sweep_dead()
        forgotten = self._forget_finished_processes()
        expired = self.cache.sweep() + self.comment_cache.sweep()
        removed = self.pipelines.cleanup(timedelta(days=self.config.cache.pipeline_retention_days))
        return {
            "processes": swept,
            "forgotten": forgotten,
            "cache_entries": expired,
            "pipelines": removed,
        }

    def loops(self) -> list[LoopSpec]:
        polling = self.config.polling
        return [
            LoopSpec("intake", polling.intake_interval_seconds, self.poll_intake),
            LoopSpec("pr-discovery", polling.pr_interval_seconds, self.reconcile_prs),
            LoopSpec("review-cycle", polling.review_interval_seconds, self.review_cycle.tick),
            LoopSpec("housekeeping", polling.housekeeping_interval_seconds, self.housekeeping),
        ]

    async def _run_loop(self, spec: LoopSpec, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await spec.tick()
            except Exception:
                logger.exception("%s loop iteration failed", spec.name)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=spec.interval_seconds)
            except TimeoutError:
                continue

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info("Controller started for %s", self.config.repository.slug)
        loops = [
            asyncio.create_task(self._run_loop(spec, stop_event), name=spec.name)
            for spec in self.loops()
        ]
        try:
            await stop_event.wait()
        finally:
            for task in loops:
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            killed = self.registry.kill_all()
            logger.info("Controller stopped; signalled %d agent processes", killed)
