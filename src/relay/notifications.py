from __future__ import annotations

import logging

from relay.clients.tracker import WorkTracker
from relay.errors import TrackerError
from relay.models import STAGE_NAMES, PullRequest

logger = logging.getLogger(__name__)


class Notifier:
    """Posts progress comments on the tracked task.

    Delivery is best effort: a tracker failure is logged and reported as
    False, never raised into the pipeline.
    """

    def __init__(self, tracker: WorkTracker | None) -> None:
        self.tracker = tracker

    async def send(self, task_id: str, text: str) -> bool:
        if self.tracker is None:
            logger.info("[%s] %s", task_id, text.splitlines()[0])
            return False
        try:
            await self.tracker.add_comment(task_id, text)
        except TrackerError as exc:
            logger.warning("Comment for task %s not delivered: %s", task_id, exc)
            return False
        return True

    async def set_status(self, task_id: str, status: str) -> bool:
        if self.tracker is None:
            return False
        try:
            await self.tracker.update_status(task_id, status)
        except TrackerError as exc:
            logger.warning("Status update for task %s failed: %s", task_id, exc)
            return False
        return True

    async def stage_started(self, task_id: str, stage: str) -> bool:
        return await self.send(task_id, f"**{STAGE_NAMES.get(stage, stage)} started**")

    async def stage_completed(self, task_id: str, stage: str, summary: str = "") -> bool:
        text = f"**{STAGE_NAMES.get(stage, stage)} complete**"
        if summary:
            text += f"\n\n{summary}"
        return await self.send(task_id, text)

    async def stage_failed(self, task_id: str, stage: str, error: str, *, critical: bool) -> bool:
        name = STAGE_NAMES.get(stage, stage)
        if critical:
            text = f"**{name} failed**\n\nError: {error}\n\nThe pipeline has been stopped."
        else:
            text = f"**{name} failed**\n\nError: {error}\n\nContinuing without it."
        return await self.send(task_id, text)

    async def pipeline_completed(self, task_id: str, branch: str | None) -> bool:
        text = "**Workflow Complete**\n\nAll automated stages have finished."
        if branch:
            text += f"\n\n**Branch:** `{branch}`"
        return await self.send(task_id, text)

    async def pr_found(self, task_id: str, pull_request: PullRequest) -> bool:
        return await self.send(
            task_id,
            "**Pull Request Created**\n\n"
            f"**PR #{pull_request.number}:** {pull_request.url}\n\n"
            "Implementation complete and ready for review.",
        )

    async def pr_timeout(self, task_id: str, timeout_seconds: float) -> bool:
        return await self.send(
            task_id,
            "**Timeout Warning**\n\n"
            f"No Pull Request detected after {timeout_seconds / 60:.0f} minutes.\n\n"
            "Check the agent logs for its status.",
        )

    async def review_complete(self, task_id: str, iteration: int, max_iterations: int) -> bool:
        return await self.send(
            task_id,
            "**Code Review Complete**\n\n"
            "The reviewer added TODO comments to the branch.\n\n"
            f"**Next:** fixing the TODO comments (iteration {iteration}/{max_iterations}).",
        )

    async def fixes_applied(self, task_id: str, iteration: int, max_iterations: int) -> bool:
        return await self.send(
            task_id,
            "**TODO Comments Fixed**\n\n"
            "The review comments have been addressed.\n\n"
            f"**Iteration:** {iteration}/{max_iterations}",
        )

    async def review_cycle_complete(self, task_id: str, iterations: int) -> bool:
        return await self.send(
            task_id,
            "**Review Cycle Complete**\n\n"
            "All review iterations finished. The PR is ready for final review.\n\n"
            f"**Total Iterations:** {iterations}",
        )

    async def rerun_finished(self, task_id: str, stage: str, error: str | None = None) -> bool:
        name = STAGE_NAMES.get(stage, stage)
        if error:
            return await self.send(task_id, f"**{name} Re-run Failed**\n\nError: {error}")
        return await self.send(task_id, f"**{name} Re-run Complete**")
