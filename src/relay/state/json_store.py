from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from relay.errors import ConcurrentUpdateError, StateStoreError
from relay.registry import ProcessRegistry
from relay.state.base import Record, StateStore, Updater

logger = logging.getLogger(__name__)


class JsonStateStore(StateStore):
    """Flat-file backend: one JSON document per collection.

    Each document carries a ``revision`` that every commit bumps. Commits hold
    an exclusive lock file and are rejected when the revision moved since the
    updater read the document.
    """

    SCHEMA_VERSION = 1
    MAX_UPDATE_ATTEMPTS = 4

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _collection_file(self, collection: str) -> Path:
        return self.state_dir / f"{collection}.json"

    def _reclaim_stale_lock(self) -> bool:
        """Remove a lock left behind by a process that no longer exists."""
        try:
            owner = self.lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return True
        if owner.isdigit():
            if ProcessRegistry.is_alive(int(owner)):
                return False
        elif age < self.lock_timeout_seconds:
            # Owner may still be writing its pid.
            return False
        try:
            if self.lock_file.read_text(encoding="utf-8").strip() != owner:
                return False
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        logger.warning("Removed stale state lock held by %s", owner or "unknown process")
        return True

    @contextmanager
    def _state_lock(self):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._reclaim_stale_lock():
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, collection: str) -> Any:
        path = self._collection_file(collection)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state file: {path}") from exc

    def _write_raw_json(self, collection: str, payload: Any) -> None:
        path = self._collection_file(collection)
        fd, temp_name = tempfile.mkstemp(prefix=f".{collection}-", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
            os.replace(temp_name, path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise StateStoreError(f"Failed to write {path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            data = raw_payload.get("data")
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": data if isinstance(data, dict) else {},
            }

        # Bare mappings written by hand or by older releases.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": raw_payload if isinstance(raw_payload, dict) else {},
        }

    def get_envelope(self, collection: str) -> dict[str, Any]:
        self._validate_collection(collection)
        return self._normalize_envelope(self._read_raw_json(collection))

    def get(self, collection: str, key: str) -> Record | None:
        record = self.get_envelope(collection)["data"].get(key)
        return copy.deepcopy(record) if isinstance(record, dict) else None

    def all(self, collection: str) -> dict[str, Record]:
        data = self.get_envelope(collection)["data"]
        return {key: copy.deepcopy(value) for key, value in data.items() if isinstance(value, dict)}

    def _commit(
        self, collection: str, key: str, updated: Record | None, expected_revision: int
    ) -> None:
        with self._state_lock():
            envelope = self.get_envelope(collection)
            if envelope["revision"] != expected_revision:
                raise ConcurrentUpdateError(
                    f"Concurrent state update detected for collection '{collection}'."
                )
            data = envelope["data"]
            if updated is None:
                if key not in data:
                    return
                data.pop(key)
            else:
                data[key] = updated
            self._write_raw_json(
                collection,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": expected_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update(self, collection: str, key: str, updater: Updater) -> Record | None:
        """Apply ``updater`` against the revision it read.

        Another writer committing in between forces a re-read and a fresh call
        of the updater, so updaters must be repeatable.
        """
        self._validate_collection(collection)
        last_error: ConcurrentUpdateError | None = None
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            envelope = self.get_envelope(collection)
            current = envelope["data"].get(key)
            updated = updater(copy.deepcopy(current) if isinstance(current, dict) else None)
            try:
                self._commit(collection, key, updated, envelope["revision"])
            except ConcurrentUpdateError as exc:
                last_error = exc
                logger.debug("Retrying %s/%s after concurrent update", collection, key)
                time.sleep(0.01)
                continue
            return copy.deepcopy(updated) if updated is not None else None
        raise last_error or StateStoreError("State update failed.")
