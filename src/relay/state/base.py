from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from relay.errors import StateStoreError

Record = dict[str, Any]
Updater = Callable[[Record | None], Record | None]

PIPELINES = "pipelines"
REVIEW_CYCLES = "review_cycles"
PR_TRACKING = "pr_tracking"
PROCESSED_CACHE = "processed_cache"
PROCESSED_COMMENTS = "processed_comments"


class StateStore(ABC):
    """Keyed record collections with an atomic load-mutate-persist primitive.

    Implementations must complete ``update`` synchronously: the updater runs
    between load and persist with no suspension point, which is what keeps
    concurrently scheduled poll loops from losing each other's writes.
    """

    COLLECTIONS = frozenset(
        {PIPELINES, REVIEW_CYCLES, PR_TRACKING, PROCESSED_CACHE, PROCESSED_COMMENTS}
    )

    @classmethod
    def _validate_collection(cls, collection: str) -> None:
        if collection not in cls.COLLECTIONS:
            raise StateStoreError(f"Unsupported collection: {collection}")

    @abstractmethod
    def get(self, collection: str, key: str) -> Record | None:
        """Return one record, or None."""

    @abstractmethod
    def all(self, collection: str) -> dict[str, Record]:
        """Return every record of a collection keyed by id."""

    @abstractmethod
    def update(self, collection: str, key: str, updater: Updater) -> Record | None:
        """Atomically replace a record with ``updater(current)``.

        Returning None from the updater deletes the record. An exception raised
        by the updater aborts the update and leaves the record untouched.
        Backends may call the updater more than once.
        """

    def put(self, collection: str, key: str, record: Record) -> None:
        self.update(collection, key, lambda _current: record)

    def delete(self, collection: str, key: str) -> bool:
        existed = False

        def _updater(current: Record | None) -> None:
            nonlocal existed
            existed = current is not None
            return None

        self.update(collection, key, _updater)
        return existed

    def delete_where(self, collection: str, predicate: Callable[[Record], bool]) -> int:
        removed = 0
        for key in list(self.all(collection)):
            matched = False

            def _updater(current: Record | None) -> Record | None:
                nonlocal matched
                matched = current is not None and predicate(current)
                return None if matched else current

            self.update(collection, key, _updater)
            if matched:
                removed += 1
        return removed

    def close(self) -> None:
        return None
