from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from relay.errors import PipelineNotFoundError, StageNotReadyError
from relay.models import (
    COMPLETED,
    DETECTED,
    FAILED,
    IMPLEMENTING,
    IN_PROGRESS,
    SKIPPED,
    STAGE_NAMES,
    STAGE_SEQUENCE,
    Clock,
    ErrorEntry,
    Pipeline,
    StageEntry,
    Task,
    elapsed_ms,
    parse_iso,
    to_iso,
    utcnow,
)
from relay.state.base import PIPELINES, Record, StateStore

logger = logging.getLogger(__name__)

Mutator = Callable[[Pipeline, str], None]


class PipelineStore:
    """Per-task pipeline state machine persisted through a ``StateStore``.

    Every mutating method is one ``StateStore.update`` call, so the load,
    mutation and write of a pipeline record never straddle an ``await``.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        clock: Clock = utcnow,
        max_review_iterations: int = 3,
    ) -> None:
        self.store = store
        self.clock = clock
        self.max_review_iterations = max_review_iterations

    def _now(self) -> str:
        return to_iso(self.clock())

    def _mutate(self, task_id: str, mutator: Mutator) -> Pipeline:
        def _updater(current: Record | None) -> Record:
            if current is None:
                raise PipelineNotFoundError(task_id)
            pipeline = Pipeline.from_dict(current)
            now = self._now()
            mutator(pipeline, now)
            pipeline.updated_at = now
            return pipeline.to_dict()

        return Pipeline.from_dict(self.store.update(PIPELINES, task_id, _updater))

    def create(self, task: Task, repository: str | None = None) -> Pipeline:
        now = self._now()
        pipeline = Pipeline(
            task_id=task.id,
            task_name=task.title,
            current_stage=DETECTED,
            status=IN_PROGRESS,
            created_at=now,
            updated_at=now,
            stages=[
                StageEntry(
                    name=STAGE_NAMES[DETECTED],
                    stage=DETECTED,
                    status=COMPLETED,
                    started_at=now,
                    completed_at=now,
                    duration_ms=0,
                )
            ],
            metadata={
                "repository": repository,
                "task_url": task.url,
                "task_description": task.description,
                "pr_number": None,
                "pr_url": None,
                "review_iterations": 0,
                "max_review_iterations": self.max_review_iterations,
                "branches": [],
                "agent_execution": {},
            },
        )
        self.store.put(PIPELINES, task.id, pipeline.to_dict())
        logger.info("Created pipeline for task %s", task.id)
        return pipeline

    def get(self, task_id: str) -> Pipeline | None:
        record = self.store.get(PIPELINES, task_id)
        return Pipeline.from_dict(record) if record is not None else None

    def require(self, task_id: str) -> Pipeline:
        pipeline = self.get(task_id)
        if pipeline is None:
            raise PipelineNotFoundError(task_id)
        return pipeline

    def update_stage(
        self, task_id: str, stage: str, name: str | None = None, **details: Any
    ) -> Pipeline:
        def _mutator(pipeline: Pipeline, now: str) -> None:
            entry = pipeline.find_stage(stage)
            if entry is None:
                entry = StageEntry(
                    name=name or STAGE_NAMES.get(stage, stage),
                    stage=stage,
                    status=IN_PROGRESS,
                    started_at=now,
                )
                pipeline.stages.append(entry)
            else:
                # Re-entry: the entry describes the current attempt only.
                entry.status = IN_PROGRESS
                entry.started_at = now
                entry.completed_at = None
                entry.duration_ms = None
                entry.error = None
                if name:
                    entry.name = name
            entry.details.update(details)
            pipeline.current_stage = stage

        return self._mutate(task_id, _mutator)

    def complete_stage(self, task_id: str, stage: str, **result: Any) -> Pipeline:
        def _mutator(pipeline: Pipeline, now: str) -> None:
            entry = pipeline.find_stage(stage)
            if entry is None:
                logger.warning("complete_stage(%s) on task %s with no stage entry", stage, task_id)
                return
            entry.status = COMPLETED
            entry.completed_at = now
            entry.duration_ms = elapsed_ms(entry.started_at, now)
            entry.details.update(result)

        return self._mutate(task_id, _mutator)

    def fail_stage(self, task_id: str, stage: str, error: BaseException | str) -> Pipeline:
        message = str(error)

        def _mutator(pipeline: Pipeline, now: str) -> None:
            entry = pipeline.find_stage(stage)
            if entry is not None:
                entry.status = FAILED
                entry.completed_at = now
                entry.duration_ms = elapsed_ms(entry.started_at, now)
                entry.error = message
            pipeline.errors.append(ErrorEntry(stage=stage, error=message, timestamp=now))

        return self._mutate(task_id, _mutator)

    def skip_stage(self, task_id: str, stage: str, reason: str) -> Pipeline:
        def _mutator(pipeline: Pipeline, now: str) -> None:
            entry = pipeline.find_stage(stage)
            if entry is None:
                entry = StageEntry(
                    name=STAGE_NAMES.get(stage, stage),
                    stage=stage,
                    status=SKIPPED,
                    started_at=now,
                )
                pipeline.stages.append(entry)
            entry.status = SKIPPED
            entry.started_at = now
            entry.completed_at = now
            entry.duration_ms = 0
            entry.error = None
            entry.details["reason"] = reason
            pipeline.current_stage = stage

        return self._mutate(task_id, _mutator)

    def update_metadata(self, task_id: str, **data: Any) -> Pipeline:
        def _mutator(pipeline: Pipeline, _now: str) -> None:
            pipeline.metadata.update(data)

        return self._mutate(task_id, _mutator)

    def store_agent_execution(self, task_id: str, agent: str, info: dict[str, Any]) -> Pipeline:
        def _mutator(pipeline: Pipeline, now: str) -> None:
            executions = pipeline.metadata.setdefault("agent_execution", {})
            executions[agent] = {**info, "started_at": info.get("started_at") or now}

        return self._mutate(task_id, _mutator)

    def complete(self, task_id: str, **result: Any) -> Pipeline:
        def _mutator(pipeline: Pipeline, now: str) -> None:
            pipeline.status = COMPLETED
            pipeline.completed_at = now
            pipeline.total_duration_ms = elapsed_ms(pipeline.created_at, now)
            pipeline.metadata.update(result)

        pipeline = self._mutate(task_id, _mutator)
        logger.info("Pipeline for task %s completed", task_id)
        return pipeline

    def fail(self, task_id: str, error: BaseException | str | None = None) -> Pipeline:
        def _mutator(pipeline: Pipeline, now: str) -> None:
            pipeline.status = FAILED
            pipeline.failed_at = now
            pipeline.total_duration_ms = elapsed_ms(pipeline.created_at, now)
            if error is not None:
                pipeline.errors.append(
                    ErrorEntry(stage=pipeline.current_stage, error=str(error), timestamp=now)
                )

        pipeline = self._mutate(task_id, _mutator)
        logger.warning("Pipeline for task %s failed at %s", task_id, pipeline.current_stage)
        return pipeline

    def all(self) -> list[Pipeline]:
        return [Pipeline.from_dict(record) for record in self.store.all(PIPELINES).values()]

    def get_active(self) -> list[Pipeline]:
        return [pipeline for pipeline in self.all() if pipeline.status == IN_PROGRESS]

    def cleanup(self, max_age: timedelta = timedelta(days=7)) -> int:
        cutoff: datetime = self.clock() - max_age

        def _expired(record: Record) -> bool:
            pipeline = Pipeline.from_dict(record)
            if not pipeline.is_terminal:
                return False
            finished = pipeline.completed_at or pipeline.failed_at
            return bool(finished) and parse_iso(str(finished)) < cutoff

        removed = self.store.delete_where(PIPELINES, _expired)
        if removed:
            logger.info("Removed %d finished pipelines older than %s", removed, max_age)
        return removed

    def summary(self, task_id: str) -> dict[str, Any]:
        pipeline = self.require(task_id)
        completed = sum(
            1
            for entry in pipeline.stages
            if entry.status == COMPLETED and entry.stage in STAGE_SEQUENCE
        )
        finished = pipeline.completed_at or pipeline.failed_at or self._now()
        return {
            "task_id": pipeline.task_id,
            "task_name": pipeline.task_name,
            "current_stage": pipeline.current_stage,
            "status": pipeline.status,
            "progress": round(completed / len(STAGE_SEQUENCE) * 100),
            "duration_ms": elapsed_ms(pipeline.created_at, finished),
            "review_iterations": int(pipeline.metadata.get("review_iterations") or 0),
            "has_errors": bool(pipeline.errors),
        }

    def implemented_branch(self, task_id: str) -> str:
        pipeline = self.require(task_id)
        entry = pipeline.find_stage(IMPLEMENTING)
        if entry is None or entry.status != COMPLETED:
            raise StageNotReadyError(
                f"Task {task_id} has no completed implementation stage."
            )
        branch = entry.details.get("branch")
        if not branch:
            raise StageNotReadyError(f"Task {task_id} implementation recorded no branch.")
        return str(branch)
