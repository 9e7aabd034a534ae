from pathlib import Path

from fakes import FakeClock
from relay.cache import DedupCache
from relay.models import Task
from relay.state import PROCESSED_CACHE, PROCESSED_COMMENTS, JsonStateStore


def _cache(tmp_path: Path, clock: FakeClock, **kwargs) -> DedupCache:
    return DedupCache(JsonStateStore(tmp_path), clock=clock, **kwargs)


def test_add_is_idempotent(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = _cache(tmp_path, clock)

    first = cache.add(Task(id="42", title="Add login"))
    clock.advance(hours=1)
    second = cache.add(Task(id="42", title="Renamed"))

    assert cache.has("42")
    assert second == first
    assert second.title == "Add login"
    assert first.expires_at == "2024-01-31T12:00:00.000+00:00"


def test_expired_entry_is_not_live_until_swept(tmp_path: Path) -> None:
    clock = FakeClock()
    store = JsonStateStore(tmp_path)
    cache = DedupCache(store, clock=clock)
    cache.add(Task(id="42", title="Add login"))

    clock.advance(days=31)

    assert not cache.has("42")
    assert store.get(PROCESSED_CACHE, "42") is not None
    assert cache.sweep() == 1
    assert store.get(PROCESSED_CACHE, "42") is None


def test_expired_entry_is_replaced_on_add(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = _cache(tmp_path, clock)
    cache.add(Task(id="42", title="Add login"))

    clock.advance(days=31)
    renewed = cache.add(Task(id="42", title="Add login again"))

    assert renewed.title == "Add login again"
    assert renewed.detected_at == "2024-02-01T12:00:00.000+00:00"
    assert cache.has("42")


def test_sweep_keeps_live_entries(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = _cache(tmp_path, clock)
    cache.add(Task(id="old", title="Old"))
    clock.advance(days=20)
    cache.add(Task(id="new", title="New"))
    clock.advance(days=11)

    assert cache.sweep() == 1
    assert [entry.id for entry in cache.entries()] == ["new"]


def test_entries_are_newest_first(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = _cache(tmp_path, clock)
    for task_id in ("1", "2", "3"):
        cache.add(Task(id=task_id, title=f"Task {task_id}"))
        clock.advance(minutes=5)

    assert [entry.id for entry in cache.entries()] == ["3", "2", "1"]


def test_collections_are_independent(tmp_path: Path) -> None:
    clock = FakeClock()
    store = JsonStateStore(tmp_path)
    tasks = DedupCache(store, clock=clock)
    comments = DedupCache(store, clock=clock, collection=PROCESSED_COMMENTS)

    comments.add(Task(id="42", title="comment"))

    assert comments.has("42")
    assert not tasks.has("42")
