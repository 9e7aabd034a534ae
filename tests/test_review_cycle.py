import asyncio
from pathlib import Path

import pytest

from fakes import BlockingAgent, FakeAgent, FakeClock, FakeHost, FakeTracker
from relay.config import RepositoryConfig
from relay.models import (
    CLAUDE_FIXING,
    CODEX_REVIEWING,
    WAITING_FOR_FIXES,
    WAITING_FOR_REVIEW,
    Commit,
    PRDiscovered,
    Task,
)
from relay.notifications import Notifier
from relay.pipeline import PipelineStore
from relay.reconcilers import ReviewFixReconciler
from relay.runner import StageRunner
from relay.state import JsonStateStore

REVIEW_MESSAGE = "review: Add TODO/FIXME comments from code review (#42)"
FIX_MESSAGE = "fix: Address TODO/FIXME comments from code review (#42)"


class Harness:
    def __init__(self, tmp_path: Path, fix_agent: FakeAgent | None = None) -> None:
        self.clock = FakeClock()
        self.store = JsonStateStore(tmp_path)
        self.host = FakeHost()
        self.tracker = FakeTracker()
        notifier = Notifier(self.tracker)
        self.pipelines = PipelineStore(self.store, clock=self.clock)
        self.review_agent = FakeAgent("review")
        self.fix_agent = fix_agent or FakeAgent("fix")
        runner = StageRunner(
            self.pipelines,
            {CODEX_REVIEWING: self.review_agent, CLAUDE_FIXING: self.fix_agent},
            notifier,
        )
        self.reconciler = ReviewFixReconciler(
            self.store,
            self.host,
            notifier,
            self.pipelines,
            runner,
            RepositoryConfig(owner="acme", repo="widgets"),
            max_iterations=3,
            clock=self.clock,
        )

    def start(self, task_id: str = "42") -> None:
        self.pipelines.create(Task(id=task_id, title="Add login"), repository="acme/widgets")
        self.reconciler.start_cycle(
            PRDiscovered(
                task_id=task_id,
                task_name="Add login",
                pr_number=7,
                pr_url="https://gh/pull/7",
                branch=f"task-{task_id}",
                owner="acme",
                repo="widgets",
            )
        )

    def push(self, sha: str, message: str, task_id: str = "42") -> None:
        self.host.commits[f"task-{task_id}"] = Commit(sha=sha, message=message)
        self.clock.advance(seconds=30)
        asyncio.run(self.reconciler.tick())


@pytest.mark.parametrize(
    ("message", "is_review", "is_fix"),
    [
        (REVIEW_MESSAGE, True, False),
        (FIX_MESSAGE, True, True),
        ("fix: resolved notes", False, False),
        ("feat: add login", False, False),
        ("chore: remove stale TODO", True, False),
    ],
)
def test_classify(message: str, is_review: bool, is_fix: bool) -> None:
    check = ReviewFixReconciler.classify(message)

    assert (check.is_review, check.is_fix) == (is_review, is_fix)


def test_full_cycle_stops_after_max_iterations(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start()
    harness.push("base", "feat: add login")

    for iteration in range(1, 4):
        harness.push(f"review-{iteration}", REVIEW_MESSAGE)
        entry = harness.reconciler.get("42")
        assert entry.stage == WAITING_FOR_FIXES
        assert entry.iteration == iteration
        assert len(harness.fix_agent.calls) == iteration

        harness.push(f"fix-{iteration}", FIX_MESSAGE)

    assert harness.reconciler.get("42") is None
    assert len(harness.review_agent.calls) == 2
    assert harness.pipelines.require("42").metadata["review_iterations"] == 3
    texts = harness.tracker.texts("42")
    assert texts[-1].startswith("**Review Cycle Complete**")
    assert "**Total Iterations:** 3" in texts[-1]
    assert sum(text.startswith("**TODO Comments Fixed**") for text in texts) == 3


def test_fix_commit_returns_cycle_to_review(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start()
    harness.push("base", "feat: add login")
    harness.push("review-1", REVIEW_MESSAGE)

    harness.push("fix-1", FIX_MESSAGE)

    entry = harness.reconciler.get("42")
    assert entry.stage == WAITING_FOR_REVIEW
    assert entry.iteration == 1
    assert entry.last_commit_sha == "fix-1"
    _task_id, context = harness.review_agent.calls[0]
    assert context.branch == "task-42"
    assert context.repository.slug == "acme/widgets"


def test_first_observation_only_records_sha(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start()

    harness.push("review-1", REVIEW_MESSAGE)

    entry = harness.reconciler.get("42")
    assert entry.stage == WAITING_FOR_REVIEW
    assert entry.iteration == 0
    assert entry.last_commit_sha == "review-1"
    assert harness.fix_agent.calls == []


def test_same_sha_is_not_new(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start()
    harness.push("base", "feat: add login")
    harness.push("review-1", REVIEW_MESSAGE)

    harness.push("review-1", REVIEW_MESSAGE)

    entry = harness.reconciler.get("42")
    assert entry.iteration == 1
    assert entry.last_checked_at == "2024-01-01T12:01:30.000+00:00"
    assert len(harness.fix_agent.calls) == 1


def test_unrelated_commit_only_advances_sha(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start()
    harness.push("base", "feat: add login")
    harness.push("review-1", REVIEW_MESSAGE)

    harness.push("other", "fix: resolved notes")

    entry = harness.reconciler.get("42")
    assert entry.stage == WAITING_FOR_FIXES
    assert entry.iteration == 1
    assert entry.last_commit_sha == "other"


def test_start_cycle_is_idempotent(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start()
    harness.push("base", "feat: add login")

    created = harness.reconciler.start_cycle(
        PRDiscovered(task_id="42", task_name="Add login", pr_number=7, pr_url="x", branch="task-42")
    )

    assert created is False
    assert harness.reconciler.get("42").last_commit_sha == "base"


def test_query_error_is_isolated_per_entry(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.start("1")
    harness.start("2")
    harness.host.failing_branches.add("task-1")
    harness.push("base", "feat: add login", task_id="2")

    harness.push("review-1", REVIEW_MESSAGE, task_id="2")

    assert harness.reconciler.get("1").last_commit_sha is None
    assert harness.reconciler.get("2").stage == WAITING_FOR_FIXES


def test_overlapping_tick_is_skipped_while_fixes_run(tmp_path: Path) -> None:
    fix_agent = BlockingAgent("fix")
    harness = Harness(tmp_path, fix_agent)
    harness.start()
    harness.push("base", "feat: add login")
    harness.host.commits["task-42"] = Commit(sha="review-1", message=REVIEW_MESSAGE)

    async def scenario() -> int:
        first = asyncio.create_task(harness.reconciler.tick())
        await fix_agent.started.wait()
        queries = harness.host.commit_queries
        await harness.reconciler.tick()
        skipped = harness.host.commit_queries - queries
        fix_agent.release.set()
        await first
        return skipped

    assert asyncio.run(scenario()) == 0
    assert len(fix_agent.calls) == 1
    assert harness.reconciler.get("42").stage == WAITING_FOR_FIXES

    asyncio.run(harness.reconciler.tick())
    assert harness.host.commit_queries == 3
