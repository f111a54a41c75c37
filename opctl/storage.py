"""Persistent operation and resource storage using JSON files."""

import json
import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Type
from pydantic import ValidationError
from .errors import AlreadyExists, ConcurrentModification, NotFound, StoreUnavailable
from .models import (
    Config,
    Entity,
    EntityKind,
    EntityRef,
    Operation,
    Resource,
    TransitionRecord,
    utcnow,
)

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

MODELS: Dict[EntityKind, Type[Entity]] = {
    EntityKind.OPERATION: Operation,
    EntityKind.RESOURCE: Resource,
}

LOCK_POLL_INTERVAL = 0.01


class Storage:
    """File-based storage with one record per entity and per-key locking."""

    def __init__(self, data_dir: str = ".opctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.dirs = {kind: self.data_dir / f"{kind.value}s" for kind in EntityKind}
        for path in self.dirs.values():
            path.mkdir(exist_ok=True)
        self.events_file = self.data_dir / "events.jsonl"
        self.config_file = self.data_dir / "config.json"
        self.locks_dir = self.data_dir / "locks"
        self.locks_dir.mkdir(exist_ok=True)

        # Initialize files if they don't exist
        if not self.events_file.exists():
            self.events_file.touch()
        if not self.config_file.exists():
            self._write_json(self.config_file, Config().model_dump())

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2, default=str)
            temp_file.replace(file_path)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write {file_path}: {e}") from e

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        try:
            with open(file_path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            raise
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"Cannot read {file_path}: {e}") from e

    def _path(self, ref: EntityRef) -> Path:
        return self.dirs[ref.kind] / f"{ref.id}.json"

    def _lock_name(self, ref: EntityRef) -> str:
        return f"{ref.kind.value}-{ref.id}"

    # Records

    def create(self, entity: Entity) -> Entity:
        """Persist a new entity. Fails if the ID is already taken."""
        ref = entity.ref
        with self.locked(self._lock_name(ref)):
            path = self._path(ref)
            if path.exists():
                raise AlreadyExists(ref)
            self._write_json(path, entity.model_dump(mode="json"))
        return entity

    def get(self, ref: EntityRef) -> Entity:
        """Get an entity by reference. Tombstoned entities are still returned."""
        try:
            data = self._read_json(self._path(ref))
        except FileNotFoundError:
            raise NotFound(ref) from None
        return MODELS[ref.kind](**data)

    def exists(self, ref: EntityRef) -> bool:
        return self._path(ref).exists()

    def update(
        self,
        ref: EntityRef,
        mutator: Callable[[Entity], Optional[Entity]],
        expected_version: Optional[int] = None,
        after_write: Optional[Callable[[Entity], None]] = None,
    ) -> Entity:
        """Atomically apply mutator to the stored entity.

        The mutator receives a private copy and returns the new entity, or
        None to leave the record untouched. Anything it raises propagates and
        nothing is written. after_write runs with the entity lock still held,
        so per-entity side effects keep the order of the writes.
        """
        with self.locked(self._lock_name(ref)):
            current = self.get(ref)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentModification(
                    f"{ref} is at version {current.version}, expected {expected_version}"
                )
            updated = mutator(current.model_copy(deep=True))
            if updated is None:
                return current
            data = updated.model_dump(mode="json")
            data["version"] = current.version + 1
            try:
                updated = MODELS[ref.kind](**data)
            except ValidationError:
                logger.error("Rejected invalid update to %s", ref)
                raise
            self._write_json(self._path(ref), data)
            if after_write is not None:
                after_write(updated)
            return updated

    def tombstone(self, ref: EntityRef) -> Entity:
        """Soft-delete an entity. It stays readable until purged."""

        def mark(entity: Entity) -> Optional[Entity]:
            if entity.tombstoned_at is not None:
                return None
            entity.tombstoned_at = utcnow()
            return entity

        return self.update(ref, mark)

    def purge(self, ref: EntityRef, condition: Optional[Callable[[Entity], bool]] = None) -> bool:
        """Hard-delete an entity. Returns False if condition no longer holds."""
        with self.locked(self._lock_name(ref)):
            if condition is not None and not condition(self.get(ref)):
                return False
            try:
                self._path(ref).unlink()
            except FileNotFoundError:
                raise NotFound(ref) from None
            except OSError as e:
                raise StoreUnavailable(f"Cannot purge {ref}: {e}") from e
            self._remove_lock_file(self._lock_name(ref))
        return True

    def list(self, kind: EntityKind) -> List[Entity]:
        """Get all entities of a kind, oldest first."""
        model = MODELS[kind]
        result = []
        for path in self.dirs[kind].glob("*.json"):
            try:
                result.append(model(**self._read_json(path)))
            except FileNotFoundError:
                # Purged between listing and reading
                continue
        result.sort(key=lambda entity: entity.created_at)
        return result

    # Transition log

    def append_event(self, record: TransitionRecord) -> None:
        """Append a transition record to the log."""
        line = json.dumps(record.model_dump(mode="json")) + "\n"
        with self.locked("events"):
            try:
                with open(self.events_file, "a") as f:
                    f.write(line)
            except OSError as e:
                raise StoreUnavailable(f"Cannot append event: {e}") from e

    def read_events(self, ref: Optional[EntityRef] = None) -> List[TransitionRecord]:
        """Read the transition log, optionally for one entity."""
        try:
            with open(self.events_file, "r") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreUnavailable(f"Cannot read events: {e}") from e

        records = []
        for line in lines:
            if not line.strip():
                continue
            record = TransitionRecord(**json.loads(line))
            if ref is None or (record.entity_kind == ref.kind and record.entity_id == ref.id):
                records.append(record)
        return records

    def compact_events(self) -> int:
        """Drop log records of entities that no longer exist. Returns how many were dropped."""
        with self.locked("events"):
            try:
                with open(self.events_file, "r") as f:
                    lines = f.readlines()
            except FileNotFoundError:
                return 0
            except OSError as e:
                raise StoreUnavailable(f"Cannot read events: {e}") from e

            kept = []
            present: Dict[EntityRef, bool] = {}
            for line in lines:
                if not line.strip():
                    continue
                data = json.loads(line)
                ref = EntityRef(kind=data["entity_kind"], id=data["entity_id"])
                if ref not in present:
                    present[ref] = self.exists(ref)
                if present[ref]:
                    kept.append(line)

            dropped = len([line for line in lines if line.strip()]) - len(kept)
            if dropped:
                temp_file = self.events_file.with_suffix(".tmp")
                try:
                    with open(temp_file, "w") as f:
                        f.writelines(kept)
                    temp_file.replace(self.events_file)
                except OSError as e:
                    raise StoreUnavailable(f"Cannot compact events: {e}") from e
        return dropped

    # Locking

    def acquire_lock(self, name: str) -> Optional[int]:
        """Acquire a lock by name. Returns lock file descriptor or None if locked."""
        lock_file = self.locks_dir / f"{name}.lock"
        try:
            fd = os.open(str(lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
        except OSError as e:
            raise StoreUnavailable(f"Cannot open lock {name}: {e}") from e
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                # A purge may have removed the file while we waited on it
                if not self._is_current_lock(fd, lock_file):
                    self.release_lock(fd)
                    return None
            return fd
        except OSError:
            os.close(fd)
            return None

    def _is_current_lock(self, fd: int, lock_file: Path) -> bool:
        try:
            return os.fstat(fd).st_ino == os.stat(lock_file).st_ino
        except FileNotFoundError:
            return False

    def _remove_lock_file(self, name: str) -> None:
        """Remove a lock file while holding its lock."""
        if sys.platform == "win32":
            # Open files cannot be removed on Windows
            return
        try:
            (self.locks_dir / f"{name}.lock").unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Cannot remove lock file %s: %s", name, e)

    def release_lock(self, fd: int) -> None:
        """Release a lock."""
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @contextmanager
    def locked(self, name: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the named lock, waiting at most timeout seconds for it."""
        if timeout is None:
            timeout = self.get_config().lock_timeout
        deadline = time.monotonic() + timeout
        fd = self.acquire_lock(name)
        while fd is None:
            if time.monotonic() >= deadline:
                raise ConcurrentModification(f"Timed out waiting for lock {name}")
            time.sleep(LOCK_POLL_INTERVAL)
            fd = self.acquire_lock(name)
        try:
            yield
        finally:
            self.release_lock(fd)

    # Configuration

    def get_config(self) -> Config:
        """Get current configuration."""
        try:
            config_data = self._read_json(self.config_file)
        except FileNotFoundError:
            return Config()
        return Config(**config_data)

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        self._write_json(self.config_file, config.model_dump())

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Count entities per kind and status, with tombstoned ones separate."""
        stats: Dict[str, Dict[str, int]] = {}
        for kind in EntityKind:
            counts: Dict[str, int] = {"total": 0, "tombstoned": 0}
            for entity in self.list(kind):
                counts["total"] += 1
                if entity.tombstoned_at is not None:
                    counts["tombstoned"] += 1
                status = entity.status.value
                counts[status] = counts.get(status, 0) + 1
            stats[kind.value] = counts
        return stats
