from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from relay.clients.vcs import VcsHost
from relay.config import RepositoryConfig
from relay.errors import PipelineNotFoundError, ReconciliationQueryError
from relay.models import (
    CLAUDE_FIXING,
    CODEX_REVIEWING,
    WAITING_FOR_FIXES,
    WAITING_FOR_REVIEW,
    Clock,
    CommitCheck,
    PRDiscovered,
    ReviewCycleEntry,
    Task,
    to_iso,
    utcnow,
)
from relay.notifications import Notifier
from relay.pipeline import PipelineStore
from relay.runner import StageRunner
from relay.state.base import REVIEW_CYCLES, Record, StateStore

logger = logging.getLogger(__name__)


class ReviewFixReconciler:
    """Drives the review -> fix loop of an open pull request from its commits.

    A review commit observed while waiting for a review moves the cycle to
    waiting for fixes, counts an iteration and starts the fix agent. A fix
    commit either sends the branch back for review or, once ``max_iterations``
    reviews happened, ends the cycle by removing its entry. Any other commit
    only advances ``last_commit_sha``.
    """

    def __init__(
        self,
        store: StateStore,
        host: VcsHost,
        notifier: Notifier,
        pipelines: PipelineStore,
        runner: StageRunner,
        repository: RepositoryConfig,
        *,
        max_iterations: int = 3,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.host = host
        self.notifier = notifier
        self.pipelines = pipelines
        self.runner = runner
        self.repository = repository
        self.max_iterations = max_iterations
        self.clock = clock
        self._running = False

    def start_cycle(self, event: PRDiscovered) -> bool:
        entry = ReviewCycleEntry(
            task_id=event.task_id,
            task_name=event.task_name,
            branch=event.branch,
            pr_number=event.pr_number,
            pr_url=event.pr_url,
            started_at=to_iso(self.clock()),
            owner=event.owner or self.repository.owner,
            repo=event.repo or self.repository.repo,
            stage=WAITING_FOR_REVIEW,
            iteration=0,
            max_iterations=self.max_iterations,
        )
        created = False

        def _updater(current: Record | None) -> Record:
            nonlocal created
            created = current is None
            return entry.to_dict() if created else current

        self.store.update(REVIEW_CYCLES, event.task_id, _updater)
        if created:
            logger.info("Started review cycle for task %s (PR #%s)", event.task_id, event.pr_number)
        else:
            logger.info("Review cycle for task %s already active", event.task_id)
        return created

    def get(self, task_id: str) -> ReviewCycleEntry | None:
        record = self.store.get(REVIEW_CYCLES, task_id)
        return ReviewCycleEntry.from_dict(record) if record is not None else None

    def cycles(self) -> list[ReviewCycleEntry]:
        return [
            ReviewCycleEntry.from_dict(record) for record in self.store.all(REVIEW_CYCLES).values()
        ]

    @staticmethod
    def classify(message: str) -> CommitCheck:
        # The predicates overlap ("fix: ... TODO" is both); the current stage decides.
        return CommitCheck(
            is_new=True,
            message=message,
            is_review="review:" in message or "TODO" in message,
            is_fix="fix:" in message and "TODO" in message,
        )

    async def check_commit(self, entry: ReviewCycleEntry) -> CommitCheck:
        commit = await self.host.latest_commit(entry.owner, entry.repo, entry.branch)
        if commit is None:
            return CommitCheck(is_new=False)
        if entry.last_commit_sha is None or commit.sha == entry.last_commit_sha:
            return CommitCheck(is_new=False, sha=commit.sha, message=commit.message)
        check = self.classify(commit.message)
        check.sha = commit.sha
        return check

    def _save(self, task_id: str, **changes: Any) -> ReviewCycleEntry | None:
        changes["last_checked_at"] = to_iso(self.clock())

        def _updater(current: Record | None) -> Record | None:
            if current is None:
                return None
            return {**current, **changes}

        record = self.store.update(REVIEW_CYCLES, task_id, _updater)
        return ReviewCycleEntry.from_dict(record) if record is not None else None

    async def tick(self) -> None:
        if self._running:
            logger.debug("Review cycle tick already running")
            return
        self._running = True
        try:
            for entry in self.cycles():
                try:
                    await self._reconcile(entry)
                except ReconciliationQueryError as exc:
                    logger.info("Commit lookup for task %s failed: %s", entry.task_id, exc)
                except Exception:
                    logger.exception("Review cycle failed for task %s", entry.task_id)
        finally:
            self._running = False

    async def _reconcile(self, entry: ReviewCycleEntry) -> None:
        check = await self.check_commit(entry)
        if not check.is_new:
            if entry.last_commit_sha is None and check.sha:
                self._save(entry.task_id, last_commit_sha=check.sha)
            else:
                self._save(entry.task_id)
            return

        if entry.stage == WAITING_FOR_REVIEW and check.is_review:
            await self._review_landed(entry, check)
        elif entry.stage == WAITING_FOR_FIXES and check.is_fix:
            await self._fixes_landed(entry, check)
        else:
            logger.debug(
                "Commit %s on %s does not advance stage %s", check.sha, entry.branch, entry.stage
            )
            self._save(entry.task_id, last_commit_sha=check.sha)

    async def _review_landed(self, entry: ReviewCycleEntry, check: CommitCheck) -> None:
        iteration = min(entry.iteration + 1, entry.max_iterations)
        updated = self._save(
            entry.task_id,
            stage=WAITING_FOR_FIXES,
            iteration=iteration,
            last_commit_sha=check.sha,
        )
        if updated is None:
            return
        logger.info("Review %d/%d landed for task %s", iteration, entry.max_iterations, entry.task_id)
        self._mirror_iterations(entry.task_id, iteration)
        await self.notifier.review_complete(entry.task_id, iteration, entry.max_iterations)
        await self.runner.run_stage(
            self._task(entry), CLAUDE_FIXING, self._repository(entry), branch=entry.branch
        )

    async def _fixes_landed(self, entry: ReviewCycleEntry, check: CommitCheck) -> None:
        await self.notifier.fixes_applied(entry.task_id, entry.iteration, entry.max_iterations)
        if entry.iteration < entry.max_iterations:
            if self._save(entry.task_id, stage=WAITING_FOR_REVIEW, last_commit_sha=check.sha) is None:
                return
            logger.info(
                "Starting review %d for task %s", entry.iteration + 1, entry.task_id
            )
            await self.runner.run_stage(
                self._task(entry), CODEX_REVIEWING, self._repository(entry), branch=entry.branch
            )
            return

        self.store.delete(REVIEW_CYCLES, entry.task_id)
        logger.info(
            "Review cycle complete for task %s after %d iterations", entry.task_id, entry.iteration
        )
        await self.notifier.review_cycle_complete(entry.task_id, entry.iteration)

    def _mirror_iterations(self, task_id: str, iteration: int) -> None:
        try:
            self.pipelines.update_metadata(task_id, review_iterations=iteration)
        except PipelineNotFoundError:
            logger.warning("No pipeline for task %s in review cycle", task_id)

    @staticmethod
    def _task(entry: ReviewCycleEntry) -> Task:
        return Task(id=entry.task_id, title=entry.task_name)

    def _repository(self, entry: ReviewCycleEntry) -> RepositoryConfig:
        return replace(
            self.repository,
            owner=entry.owner or self.repository.owner,
            repo=entry.repo or self.repository.repo,
        )
