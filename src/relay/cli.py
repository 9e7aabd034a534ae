from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

import click

from relay.agents import (
    Agent,
    AgentBackend,
    AnalysisAgent,
    ClaudeCliBackend,
    CodexCliBackend,
    FixAgent,
    ImplementationAgent,
    OpenAIBackend,
    ResilientBackend,
    RetryPolicy,
    ReviewAgent,
)
from relay.cache import DedupCache
from relay.clients import ClickUpClient, GitHubCliHost, WorkTracker
from relay.config import AgentBackendName, RelayConfig, load_config, save_config
from relay.errors import RelayError
from relay.models import ANALYZING, CLAUDE_FIXING, CODEX_REVIEWING, IMPLEMENTING, PRDiscovered
from relay.notifications import Notifier
from relay.orchestrator import Orchestrator
from relay.pipeline import PipelineStore
from relay.reconcilers import PRDiscoveryReconciler, ReviewFixReconciler
from relay.registry import ProcessRegistry
from relay.runner import StageRunner
from relay.state import PROCESSED_COMMENTS, StateStore, open_state_store

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: RelayConfig
    store: StateStore
    pipelines: PipelineStore
    cache: DedupCache
    tracker: WorkTracker | None
    orchestrator: Orchestrator


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _record_backend_event(event: dict[str, Any]) -> None:
    name = event.get("event", "")
    if name in {"backend_attempt_failed", "backend_retry"}:
        logger.info("agent event %s", json.dumps(event, ensure_ascii=False, default=str))
    else:
        logger.debug("agent event %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_single_backend(
    name: AgentBackendName, config: RelayConfig, registry: ProcessRegistry
) -> AgentBackend:
    if name == "codex":
        return CodexCliBackend(
            config.agents.codex_binary, registry=registry, event_hook=_record_backend_event
        )
    return ClaudeCliBackend(
        config.agents.claude_binary, registry=registry, event_hook=_record_backend_event
    )


def _build_agents(config: RelayConfig, registry: ProcessRegistry, root: Path) -> dict[str, Agent]:
    agents_config = config.agents
    policy = RetryPolicy(
        max_retries=max(0, int(agents_config.max_retries)),
        backoff_seconds=max(0.0, float(agents_config.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(agents_config.timeout_seconds)),
    )
    primary = _build_single_backend(agents_config.primary, config, registry)
    fallback = _build_single_backend(agents_config.fallback, config, registry)
    backend = ResilientBackend(primary, fallback, policy, event_hook=_record_backend_event)
    # Reviews prefer the other agent so a change is not reviewed by its author.
    review_backend = ResilientBackend(fallback, primary, policy, event_hook=_record_backend_event)

    if agents_config.analysis_backend == "openai":
        analysis_backend: AgentBackend = ResilientBackend(
            OpenAIBackend(model=agents_config.analysis_model),
            primary,
            policy,
            event_hook=_record_backend_event,
        )
    else:
        analysis_backend = backend

    artifacts_dir = Path(agents_config.artifacts_dir)
    if not artifacts_dir.is_absolute():
        artifacts_dir = root / artifacts_dir
    return {
        ANALYZING: AnalysisAgent(analysis_backend, artifacts_dir=artifacts_dir),
        IMPLEMENTING: ImplementationAgent(backend),
        CODEX_REVIEWING: ReviewAgent(review_backend),
        CLAUDE_FIXING: FixAgent(backend),
    }


def _load_runtime(root: Path, config_path: Path, *, with_tracker: bool = False) -> Runtime:
    config = load_config(config_path)
    tracker: WorkTracker | None = ClickUpClient(config.tracker) if with_tracker else None
    store = open_state_store(config.storage, root)

    registry = ProcessRegistry(poll_interval_seconds=config.polling.process_poll_seconds)
    notifier = Notifier(tracker)
    pipelines = PipelineStore(store, max_review_iterations=config.review.max_iterations)
    cache = DedupCache(store, ttl=timedelta(days=config.cache.ttl_days))
    comment_cache = DedupCache(
        store, ttl=timedelta(days=config.cache.ttl_days), collection=PROCESSED_COMMENTS
    )
    runner = StageRunner(pipelines, _build_agents(config, registry, root), notifier)
    host = GitHubCliHost(timeout_seconds=config.polling.host_timeout_seconds)
    events: asyncio.Queue[PRDiscovered] = asyncio.Queue()
    pr_discovery = PRDiscoveryReconciler(
        store,
        host,
        notifier,
        pipelines,
        events,
        timeout=timedelta(seconds=config.polling.pr_timeout_seconds),
        pr_found_status=config.tracker.pr_found_status or None,
    )
    review_cycle = ReviewFixReconciler(
        store,
        host,
        notifier,
        pipelines,
        runner,
        config.repository,
        max_iterations=config.review.max_iterations,
    )
    orchestrator = Orchestrator(
        config,
        tracker=tracker,
        cache=cache,
        comment_cache=comment_cache,
        pipelines=pipelines,
        runner=runner,
        pr_discovery=pr_discovery,
        review_cycle=review_cycle,
        registry=registry,
        notifier=notifier,
        events=events,
    )
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=store,
        pipelines=pipelines,
        cache=cache,
        tracker=tracker,
        orchestrator=orchestrator,
    )


def _runtime_or_fail(config_value: str, *, with_tracker: bool = False) -> Runtime:
    root = Path.cwd().resolve()
    try:
        return _load_runtime(
            root, _resolve_config_path(root, config_value), with_tracker=with_tracker
        )
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc


async def _close(runtime: Runtime) -> None:
    if runtime.tracker is not None:
        await runtime.tracker.aclose()
    runtime.store.close()


async def _serve(runtime: Runtime) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    try:
        await runtime.orchestrator.run_forever(stop_event)
    finally:
        await _close(runtime)


async def _run_once(runtime: Runtime) -> dict[str, Any]:
    orchestrator = runtime.orchestrator
    try:
        outcomes = await orchestrator.poll_intake()
        await orchestrator.reconcile_prs()
        await orchestrator.review_cycle.tick()
        swept = await orchestrator.housekeeping()
    finally:
        await _close(runtime)
    return {
        "picked_up": [item.task_id for item in outcomes if not item.duplicate],
        "failed": [item.task_id for item in outcomes if item.status == "failed"],
        "housekeeping": swept,
    }


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at DEBUG level.")
def cli(verbose: bool) -> None:
    """Relay: task-to-pull-request orchestrator."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


@cli.command("init")
@click.option("--owner", default=None)
@click.option("--repo", default=None)
@click.option("--storage", type=click.Choice(["json", "sqlite"]), default=None)
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def init_command(
    owner: str | None, repo: str | None, storage: str | None, config_value: str
) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    try:
        config = load_config(config_path)
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    if owner:
        config.repository.owner = owner
    if repo:
        config.repository.repo = repo
    if storage:
        config.storage.backend = storage  # type: ignore[assignment]
    save_config(config_path, config)
    store = open_state_store(config.storage, root)
    store.close()

    click.echo(f"Initialized relay in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Repository: {config.repository.slug}")
    click.echo(f"State backend: {config.storage.backend} ({config.storage.path})")


@cli.command("run")
@click.option("--once", is_flag=True, default=False, help="Run every loop a single time.")
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def run_command(once: bool, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value, with_tracker=True)
    if once:
        try:
            summary = asyncio.run(_run_once(runtime))
        except RelayError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(json.dumps(summary, ensure_ascii=False, indent=2))
        return
    click.echo(f"Watching tasks for {runtime.config.repository.slug} (Ctrl+C to stop)")
    asyncio.run(_serve(runtime))


@cli.command("status")
@click.argument("task_id")
@click.option("--verbose", "show_all", is_flag=True, default=False)
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def status_command(task_id: str, show_all: bool, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    try:
        if show_all:
            payload = runtime.pipelines.require(task_id).to_dict()
        else:
            payload = runtime.pipelines.summary(task_id)
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.store.close()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("active")
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def active_command(config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    active = runtime.pipelines.get_active()
    runtime.store.close()
    if not active:
        click.echo("No active pipelines.")
        return
    for pipeline in active:
        click.echo(f"{pipeline.task_id:<12} {pipeline.current_stage:<16} {pipeline.task_name}")


@cli.command("cleanup")
@click.option("--days", default=None, type=int, help="Retention in days (defaults to config).")
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def cleanup_command(days: int | None, config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    retention = days if days is not None else runtime.config.cache.pipeline_retention_days
    removed = runtime.pipelines.cleanup(timedelta(days=retention))
    runtime.store.close()
    click.echo(f"Removed {removed} pipelines finished more than {retention} days ago.")


def _rerun(config_value: str, task_id: str, review: bool) -> None:
    runtime = _runtime_or_fail(config_value, with_tracker=True)
    orchestrator = runtime.orchestrator

    async def _go():
        try:
            if review:
                return await orchestrator.rerun_review(task_id)
            return await orchestrator.rerun_fixes(task_id)
        finally:
            await _close(runtime)

    try:
        outcome = asyncio.run(_go())
    except RelayError as exc:
        raise click.ClickException(str(exc)) from exc
    if outcome.error is not None:
        raise click.ClickException(outcome.error.reason)
    click.echo(f"{outcome.stage}: {outcome.status}")


@cli.command("rerun-review")
@click.argument("task_id")
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def rerun_review_command(task_id: str, config_value: str) -> None:
    _rerun(config_value, task_id, review=True)


@cli.command("rerun-fixes")
@click.argument("task_id")
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def rerun_fixes_command(task_id: str, config_value: str) -> None:
    _rerun(config_value, task_id, review=False)


@cli.command("sweep")
@click.option("--config", "config_value", default="relay.toml", show_default=True)
def sweep_command(config_value: str) -> None:
    runtime = _runtime_or_fail(config_value)
    removed = runtime.cache.sweep() + runtime.orchestrator.comment_cache.sweep()
    runtime.store.close()
    click.echo(f"Removed {removed} expired cache entries.")
