from __future__ import annotations

import logging
from datetime import timedelta

from relay.models import CacheEntry, Clock, Task, parse_iso, to_iso, utcnow
from relay.state.base import PROCESSED_CACHE, Record, StateStore

logger = logging.getLogger(__name__)


class DedupCache:
    """Remembers which task ids were already picked up, for ``ttl``.

    ``has`` ignores expired records; they are only removed by ``sweep``.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        ttl: timedelta = timedelta(days=30),
        collection: str = PROCESSED_CACHE,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.collection = collection
        self.clock = clock

    def _live(self, record: Record | None) -> CacheEntry | None:
        if record is None:
            return None
        entry = CacheEntry.from_dict(record)
        if entry.is_expired(self.clock()):
            return None
        return entry

    def has(self, task_id: str) -> bool:
        return self._live(self.store.get(self.collection, task_id)) is not None

    def add(self, task: Task) -> CacheEntry:
        existing = self._live(self.store.get(self.collection, task.id))
        if existing is not None:
            return existing

        now = self.clock()
        fresh = CacheEntry(
            id=task.id,
            title=task.title,
            description=task.description,
            detected_at=to_iso(now),
            expires_at=to_iso(now + self.ttl),
        )

        def _updater(current: Record | None) -> Record:
            live = self._live(current)
            return live.to_dict() if live is not None else fresh.to_dict()

        stored = self.store.update(self.collection, task.id, _updater)
        return CacheEntry.from_dict(stored)

    def sweep(self) -> int:
        now = self.clock()
        removed = self.store.delete_where(
            self.collection, lambda record: parse_iso(str(record["expires_at"])) < now
        )
        if removed:
            logger.info("Swept %d expired entries from %s", removed, self.collection)
        return removed

    def entries(self) -> list[CacheEntry]:
        now = self.clock()
        live = [
            CacheEntry.from_dict(record) for record in self.store.all(self.collection).values()
        ]
        live = [entry for entry in live if not entry.is_expired(now)]
        return sorted(live, key=lambda entry: entry.detected_at, reverse=True)
