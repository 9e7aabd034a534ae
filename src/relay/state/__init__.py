from pathlib import Path

from relay.config import StorageConfig
from relay.state.base import (
    PIPELINES,
    PR_TRACKING,
    PROCESSED_CACHE,
    PROCESSED_COMMENTS,
    REVIEW_CYCLES,
    StateStore,
)
from relay.state.json_store import JsonStateStore
from relay.state.sqlite_store import SqliteStateStore


def open_state_store(config: StorageConfig, root: Path) -> StateStore:
    path = Path(config.path)
    if not path.is_absolute():
        path = root / path
    if config.backend == "sqlite":
        return SqliteStateStore(path / "relay.db")
    return JsonStateStore(path)


__all__ = [
    "JsonStateStore",
    "PIPELINES",
    "PR_TRACKING",
    "PROCESSED_CACHE",
    "PROCESSED_COMMENTS",
    "REVIEW_CYCLES",
    "SqliteStateStore",
    "StateStore",
    "open_state_store",
]
