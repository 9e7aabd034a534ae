from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from relay.clients.vcs import VcsHost
from relay.errors import PipelineNotFoundError, PRDiscoveryTimeout, ReconciliationQueryError
from relay.models import (
    Clock,
    PRDiscovered,
    PRTrackingEntry,
    PullRequest,
    parse_iso,
    to_iso,
    utcnow,
)
from relay.notifications import Notifier
from relay.pipeline import PipelineStore
from relay.state.base import PR_TRACKING, Record, StateStore

logger = logging.getLogger(__name__)


class PRDiscoveryReconciler:
    """Polls the VCS host until a tracked branch has a pull request.

    Every tracking entry ends exactly once, either found or timed out, and is
    removed from the store in both cases. A found pull request is published as
    ``PRDiscovered`` on ``events`` after its entry was removed.
    """

    def __init__(
        self,
        store: StateStore,
        host: VcsHost,
        notifier: Notifier,
        pipelines: PipelineStore,
        events: asyncio.Queue[PRDiscovered],
        *,
        timeout: timedelta = timedelta(minutes=30),
        pr_found_status: str | None = "can be checked",
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.host = host
        self.notifier = notifier
        self.pipelines = pipelines
        self.events = events
        self.timeout = timeout
        self.pr_found_status = pr_found_status
        self.clock = clock
        self._running = False

    def track(self, task_id: str, task_name: str, branch: str, owner: str, repo: str) -> PRTrackingEntry:
        entry = PRTrackingEntry(
            task_id=task_id,
            task_name=task_name,
            branch=branch,
            started_at=to_iso(self.clock()),
            owner=owner,
            repo=repo,
        )

        def _updater(current: Record | None) -> Record:
            return current if current is not None else entry.to_dict()

        stored = PRTrackingEntry.from_dict(self.store.update(PR_TRACKING, task_id, _updater))
        logger.info("Tracking pull request for task %s on %s", task_id, stored.branch)
        return stored

    def tracked(self) -> list[PRTrackingEntry]:
        return [PRTrackingEntry.from_dict(record) for record in self.store.all(PR_TRACKING).values()]

    def untrack(self, task_id: str) -> bool:
        return self.store.delete(PR_TRACKING, task_id)

    async def tick(self) -> None:
        if self._running:
            logger.debug("PR discovery tick already running")
            return
        self._running = True
        try:
            for entry in self.tracked():
                try:
                    await self._reconcile(entry)
                except Exception:
                    logger.exception("PR discovery failed for task %s", entry.task_id)
        finally:
            self._running = False

    async def _reconcile(self, entry: PRTrackingEntry) -> None:
        now = self.clock()
        elapsed = now - parse_iso(entry.started_at)
        if elapsed > self.timeout:
            if not self.untrack(entry.task_id):
                return
            expired = PRDiscoveryTimeout(
                entry.task_id, elapsed.total_seconds(), self.timeout.total_seconds()
            )
            logger.warning("%s", expired)
            await self.notifier.pr_timeout(entry.task_id, self.timeout.total_seconds())
            return

        try:
            pull_request = await self.host.find_pull_request(entry.owner, entry.repo, entry.branch)
        except ReconciliationQueryError as exc:
            # Expected while the branch is not pushed yet; only elapsed time expires an entry.
            logger.info("PR lookup for task %s failed: %s", entry.task_id, exc)
            return

        if pull_request is None:
            self._touch(entry.task_id)
            return
        await self._found(entry, pull_request)

    def _touch(self, task_id: str) -> None:
        checked_at = to_iso(self.clock())

        def _updater(current: Record | None) -> Record | None:
            if current is None:
                return None
            return {**current, "last_checked_at": checked_at}

        self.store.update(PR_TRACKING, task_id, _updater)

    async def _found(self, entry: PRTrackingEntry, pull_request: PullRequest) -> None:
        logger.info(
            "Found PR #%s for task %s: %s", pull_request.number, entry.task_id, pull_request.url
        )
        await self.notifier.pr_found(entry.task_id, pull_request)
        if self.pr_found_status:
            await self.notifier.set_status(entry.task_id, self.pr_found_status)
        try:
            self.pipelines.update_metadata(
                entry.task_id, pr_number=pull_request.number, pr_url=pull_request.url
            )
        except PipelineNotFoundError:
            logger.warning("No pipeline for task %s while recording its PR", entry.task_id)

        if not self.untrack(entry.task_id):
            return
        await self.events.put(
            PRDiscovered(
                task_id=entry.task_id,
                task_name=entry.task_name,
                pr_number=pull_request.number,
                pr_url=pull_request.url,
                branch=entry.branch,
                owner=entry.owner,
                repo=entry.repo,
            )
        )
