import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from fakes import FakeAgent, FakeClock, FakeHost, FakeTracker
from relay.cache import DedupCache
from relay.cli import cli
from relay.config import load_config
from relay.models import (
    ANALYZING,
    CLAUDE_FIXING,
    CODEX_REVIEWING,
    IMPLEMENTING,
    AgentResult,
    PullRequest,
    Task,
)
from relay.pipeline import PipelineStore
from relay.state import JsonStateStore

TASK = Task(id="42", title="Add login", description="OAuth flow")


def _seed(root: Path) -> PipelineStore:
    store = JsonStateStore(root / ".relay" / "state")
    clock = FakeClock()
    pipelines = PipelineStore(store, clock=clock)
    pipelines.create(TASK, repository="acme/widgets")
    pipelines.create(Task(id="7", title="Old task"))
    pipelines.complete("7")
    DedupCache(store, clock=clock).add(TASK)
    return pipelines


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CLICKUP_API_KEY", raising=False)
    return tmp_path


def test_init_writes_config(workspace: Path) -> None:
    result = CliRunner().invoke(
        cli, ["init", "--owner", "acme", "--repo", "widgets", "--storage", "sqlite"]
    )

    assert result.exit_code == 0, result.output
    assert "Repository: acme/widgets" in result.output
    config = load_config(workspace / "relay.toml")
    assert config.repository.slug == "acme/widgets"
    assert config.storage.backend == "sqlite"
    assert (workspace / ".relay" / "state" / "relay.db").exists()


def test_init_rejects_invalid_config(workspace: Path) -> None:
    (workspace / "relay.toml").write_text("[storage]\nbackend = 'redis'\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code != 0
    assert "Unsupported storage backend" in result.output


def test_status_reports_summary_and_full_record(workspace: Path) -> None:
    _seed(workspace)
    runner = CliRunner()

    summary = runner.invoke(cli, ["status", "42"])
    full = runner.invoke(cli, ["status", "42", "--verbose"])

    assert summary.exit_code == 0, summary.output
    payload = json.loads(summary.output)
    assert payload["status"] == "in_progress"
    assert payload["progress"] == 12
    assert full.exit_code == 0
    assert json.loads(full.output)["stages"][0]["stage"] == "detected"


def test_status_of_unknown_task_fails(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["status", "missing"])

    assert result.exit_code != 0
    assert "Pipeline not found for task missing" in result.output


def test_active_lists_in_progress_pipelines(workspace: Path) -> None:
    runner = CliRunner()
    empty = runner.invoke(cli, ["active"])
    _seed(workspace)
    listed = runner.invoke(cli, ["active"])

    assert empty.output.strip() == "No active pipelines."
    lines = listed.output.strip().splitlines()
    assert len(lines) == 1
    assert lines[0].startswith("42")
    assert lines[0].endswith("Add login")


def test_cleanup_and_sweep_remove_old_records(workspace: Path) -> None:
    _seed(workspace)
    runner = CliRunner()

    cleanup = runner.invoke(cli, ["cleanup", "--days", "7"])
    sweep = runner.invoke(cli, ["sweep"])

    assert cleanup.output.strip() == "Removed 1 pipelines finished more than 7 days ago."
    assert sweep.output.strip() == "Removed 1 expired cache entries."
    assert runner.invoke(cli, ["status", "7"]).exit_code != 0


def test_run_requires_tracker_token(workspace: Path) -> None:
    result = CliRunner().invoke(cli, ["run", "--once"])

    assert result.exit_code != 0
    assert "CLICKUP_API_KEY" in result.output


def test_rerun_review_needs_implemented_branch(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _seed(workspace)
    monkeypatch.setenv("CLICKUP_API_KEY", "pk_test")

    result = CliRunner().invoke(cli, ["rerun-review", "42"])

    assert result.exit_code != 0
    assert "no completed implementation stage" in result.output


def test_run_once_drives_task_to_review_cycle(
    workspace: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    tracker = FakeTracker([TASK])
    host = FakeHost()
    host.pull_requests["task-42"] = PullRequest(number=7, url="https://gh/pull/7")
    agents = {
        ANALYZING: FakeAgent("analysis", result=AgentResult(success=True, artifact_path="a.md")),
        IMPLEMENTING: FakeAgent("implementation", result=AgentResult(success=True, branch="task-42")),
        CODEX_REVIEWING: FakeAgent("review"),
        CLAUDE_FIXING: FakeAgent("fix"),
    }
    monkeypatch.setattr("relay.cli.ClickUpClient", lambda config: tracker)
    monkeypatch.setattr("relay.cli.GitHubCliHost", lambda timeout_seconds: host)
    monkeypatch.setattr("relay.cli._build_agents", lambda config, registry, root: agents)
    runner = CliRunner()
    assert runner.invoke(cli, ["init", "--owner", "acme", "--repo", "widgets"]).exit_code == 0

    result = runner.invoke(cli, ["run", "--once"])

    assert result.exit_code == 0, result.output
    summary = json.loads(result.output[result.output.index("{") :])
    assert summary["picked_up"] == ["42"]
    assert summary["failed"] == []
    assert tracker.statuses == [("42", "can be checked")]
    status = json.loads(runner.invoke(cli, ["status", "42", "--verbose"]).output)
    assert status["status"] == "completed"
    assert status["metadata"]["pr_number"] == 7
