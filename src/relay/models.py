from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

Clock = Callable[[], datetime]

ReviewStage = Literal["waiting_for_codex_review", "waiting_for_claude_fixes"]

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"

DETECTED = "detected"
ANALYZING = "analyzing"
IMPLEMENTING = "implementing"
CODEX_REVIEWING = "codex_reviewing"
CLAUDE_FIXING = "claude_fixing"
MERGING = "merging"
PR_CREATING = "pr_creating"
STAGE_COMPLETED = "completed"

STAGE_SEQUENCE = (
    DETECTED,
    ANALYZING,
    IMPLEMENTING,
    CODEX_REVIEWING,
    CLAUDE_FIXING,
    MERGING,
    PR_CREATING,
    STAGE_COMPLETED,
)

STAGE_NAMES = {
    DETECTED: "Detection",
    ANALYZING: "Analysis",
    IMPLEMENTING: "Implementation",
    CODEX_REVIEWING: "Code Review",
    CLAUDE_FIXING: "Review Fixes",
    MERGING: "Merge",
    PR_CREATING: "Pull Request",
    STAGE_COMPLETED: "Completion",
}

WAITING_FOR_REVIEW: ReviewStage = "waiting_for_codex_review"
WAITING_FOR_FIXES: ReviewStage = "waiting_for_claude_fixes"


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="milliseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def elapsed_ms(start: str, end: str) -> int:
    delta = parse_iso(end) - parse_iso(start)
    return max(0, int(delta.total_seconds() * 1000))


def task_branch(task_id: str) -> str:
    return f"task-{task_id}"


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "url": self.url,
        }


@dataclass(slots=True)
class CacheEntry:
    id: str
    title: str
    description: str
    detected_at: str
    expires_at: str

    def is_expired(self, now: datetime) -> bool:
        return parse_iso(self.expires_at) < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "detected_at": self.detected_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CacheEntry:
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            detected_at=str(payload["detected_at"]),
            expires_at=str(payload["expires_at"]),
        )


@dataclass(slots=True)
class StageEntry:
    name: str
    stage: str
    status: str
    started_at: str
    completed_at: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "stage": self.stage,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StageEntry:
        return cls(
            name=str(payload.get("name") or payload["stage"]),
            stage=str(payload["stage"]),
            status=str(payload["status"]),
            started_at=str(payload["started_at"]),
            completed_at=payload.get("completed_at"),
            duration_ms=payload.get("duration_ms"),
            error=payload.get("error"),
            details=dict(payload.get("details") or {}),
        )


@dataclass(slots=True)
class ErrorEntry:
    stage: str
    error: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "error": self.error, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ErrorEntry:
        return cls(
            stage=str(payload["stage"]),
            error=str(payload["error"]),
            timestamp=str(payload["timestamp"]),
        )


@dataclass(slots=True)
class Pipeline:
    task_id: str
    task_name: str
    current_stage: str
    status: str
    created_at: str
    updated_at: str
    completed_at: str | None = None
    failed_at: str | None = None
    total_duration_ms: int | None = None
    stages: list[StageEntry] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    errors: list[ErrorEntry] = field(default_factory=list)

    def find_stage(self, stage: str) -> StageEntry | None:
        for entry in self.stages:
            if entry.stage == stage:
                return entry
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in {COMPLETED, FAILED}

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "current_stage": self.current_stage,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "total_duration_ms": self.total_duration_ms,
            "stages": [entry.to_dict() for entry in self.stages],
            "metadata": dict(self.metadata),
            "errors": [entry.to_dict() for entry in self.errors],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Pipeline:
        return cls(
            task_id=str(payload["task_id"]),
            task_name=str(payload.get("task_name") or ""),
            current_stage=str(payload["current_stage"]),
            status=str(payload["status"]),
            created_at=str(payload["created_at"]),
            updated_at=str(payload["updated_at"]),
            completed_at=payload.get("completed_at"),
            failed_at=payload.get("failed_at"),
            total_duration_ms=payload.get("total_duration_ms"),
            stages=[StageEntry.from_dict(item) for item in payload.get("stages") or []],
            metadata=dict(payload.get("metadata") or {}),
            errors=[ErrorEntry.from_dict(item) for item in payload.get("errors") or []],
        )


@dataclass(slots=True)
class PRTrackingEntry:
    task_id: str
    task_name: str
    branch: str
    started_at: str
    owner: str
    repo: str
    last_checked_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "branch": self.branch,
            "started_at": self.started_at,
            "owner": self.owner,
            "repo": self.repo,
            "last_checked_at": self.last_checked_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PRTrackingEntry:
        return cls(
            task_id=str(payload["task_id"]),
            task_name=str(payload.get("task_name") or ""),
            branch=str(payload["branch"]),
            started_at=str(payload["started_at"]),
            owner=str(payload.get("owner") or ""),
            repo=str(payload.get("repo") or ""),
            last_checked_at=payload.get("last_checked_at"),
        )


@dataclass(slots=True)
class ReviewCycleEntry:
    task_id: str
    task_name: str
    branch: str
    pr_number: int
    pr_url: str
    started_at: str
    owner: str
    repo: str
    stage: str = WAITING_FOR_REVIEW
    iteration: int = 0
    max_iterations: int = 3
    last_commit_sha: str | None = None
    last_checked_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "branch": self.branch,
            "pr_number": self.pr_number,
            "pr_url": self.pr_url,
            "started_at": self.started_at,
            "owner": self.owner,
            "repo": self.repo,
            "stage": self.stage,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "last_commit_sha": self.last_commit_sha,
            "last_checked_at": self.last_checked_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ReviewCycleEntry:
        return cls(
            task_id=str(payload["task_id"]),
            task_name=str(payload.get("task_name") or ""),
            branch=str(payload["branch"]),
            pr_number=int(payload.get("pr_number") or 0),
            pr_url=str(payload.get("pr_url") or ""),
            started_at=str(payload["started_at"]),
            owner=str(payload.get("owner") or ""),
            repo=str(payload.get("repo") or ""),
            stage=str(payload.get("stage") or WAITING_FOR_REVIEW),
            iteration=int(payload.get("iteration") or 0),
            max_iterations=int(payload.get("max_iterations") or 3),
            last_commit_sha=payload.get("last_commit_sha"),
            last_checked_at=payload.get("last_checked_at"),
        )


@dataclass(slots=True)
class ProcessEntry:
    pid: int | None
    label: str
    registered_at: str
    status: str = "running"
    completed_at: str | None = None
    failed_at: str | None = None
    error: str | None = None


@dataclass(slots=True)
class AgentResult:
    success: bool
    branch: str | None = None
    artifact_path: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PullRequest:
    number: int
    url: str
    state: str = "OPEN"


@dataclass(slots=True)
class Commit:
    sha: str
    message: str


@dataclass(slots=True, frozen=True)
class PRDiscovered:
    task_id: str
    task_name: str
    pr_number: int
    pr_url: str
    branch: str
    owner: str = ""
    repo: str = ""


@dataclass(slots=True)
class CommitCheck:
    is_new: bool
    sha: str | None = None
    message: str | None = None
    is_review: bool = False
    is_fix: bool = False


@dataclass(slots=True)
class Comment:
    id: str
    text: str
    author_id: str = ""
    created_at: str = ""
