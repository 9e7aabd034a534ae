import asyncio
from datetime import timedelta
from pathlib import Path

from fakes import FakeClock, FakeHost, FakeTracker
from relay.models import PRDiscovered, PullRequest, Task
from relay.notifications import Notifier
from relay.pipeline import PipelineStore
from relay.reconcilers import PRDiscoveryReconciler
from relay.state import PR_TRACKING, JsonStateStore


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.clock = FakeClock()
        self.store = JsonStateStore(tmp_path)
        self.host = FakeHost()
        self.tracker = FakeTracker()
        self.pipelines = PipelineStore(self.store, clock=self.clock)
        self.events: asyncio.Queue[PRDiscovered] = asyncio.Queue()
        self.reconciler = PRDiscoveryReconciler(
            self.store,
            self.host,
            Notifier(self.tracker),
            self.pipelines,
            self.events,
            timeout=timedelta(minutes=30),
            clock=self.clock,
        )

    def track(self, task_id: str = "42") -> None:
        self.pipelines.create(Task(id=task_id, title="Add login"), repository="acme/widgets")
        self.reconciler.track(task_id, "Add login", f"task-{task_id}", "acme", "widgets")


def test_found_pull_request_is_published_and_untracked(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track()
    harness.host.pull_requests["task-42"] = PullRequest(number=7, url="https://gh/acme/widgets/pull/7")

    asyncio.run(harness.reconciler.tick())

    assert harness.reconciler.tracked() == []
    event = harness.events.get_nowait()
    assert event == PRDiscovered(
        task_id="42",
        task_name="Add login",
        pr_number=7,
        pr_url="https://gh/acme/widgets/pull/7",
        branch="task-42",
        owner="acme",
        repo="widgets",
    )
    metadata = harness.pipelines.require("42").metadata
    assert metadata["pr_number"] == 7
    assert metadata["pr_url"] == "https://gh/acme/widgets/pull/7"
    assert harness.tracker.statuses == [("42", "can be checked")]
    assert harness.tracker.texts("42")[0].startswith("**Pull Request Created**")


def test_missing_pull_request_touches_entry(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track()
    harness.clock.advance(minutes=1)

    asyncio.run(harness.reconciler.tick())

    (entry,) = harness.reconciler.tracked()
    assert entry.last_checked_at == "2024-01-01T12:01:00.000+00:00"
    assert harness.events.empty()


def test_query_error_keeps_entry(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track()
    harness.host.failing_branches.add("task-42")

    asyncio.run(harness.reconciler.tick())

    (entry,) = harness.reconciler.tracked()
    assert entry.last_checked_at is None
    assert harness.tracker.posted == []


def test_entry_times_out_after_thirty_minutes(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track()
    harness.host.pull_requests["task-42"] = PullRequest(number=7, url="https://gh/pull/7")
    harness.clock.advance(minutes=31)

    asyncio.run(harness.reconciler.tick())

    assert harness.store.get(PR_TRACKING, "42") is None
    assert harness.host.pr_queries == 0
    assert harness.events.empty()
    (text,) = harness.tracker.texts("42")
    assert text.startswith("**Timeout Warning**")
    assert "after 30 minutes" in text


def test_track_is_idempotent(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track()
    harness.clock.advance(minutes=5)

    again = harness.reconciler.track("42", "Add login", "task-42", "acme", "widgets")

    assert again.started_at == "2024-01-01T12:00:00.000+00:00"
    assert len(harness.reconciler.tracked()) == 1


def test_one_failing_entry_does_not_block_others(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track("1")
    harness.track("2")
    harness.host.failing_branches.add("task-1")
    harness.host.pull_requests["task-2"] = PullRequest(number=9, url="https://gh/pull/9")

    asyncio.run(harness.reconciler.tick())

    assert [entry.task_id for entry in harness.reconciler.tracked()] == ["1"]
    assert harness.events.get_nowait().task_id == "2"


def test_overlapping_tick_is_skipped(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.track()
    harness.reconciler._running = True

    asyncio.run(harness.reconciler.tick())

    assert harness.host.pr_queries == 0


def test_tracker_failure_does_not_lose_the_event(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.tracker.fail_comments = True
    harness.track()
    harness.host.pull_requests["task-42"] = PullRequest(number=7, url="https://gh/pull/7")

    asyncio.run(harness.reconciler.tick())

    assert harness.events.get_nowait().pr_number == 7
    assert harness.reconciler.tracked() == []
