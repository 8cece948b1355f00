"""
State Store - Last-known-state snapshots with compare-and-swap writes.

The StateSnapshot is the engine's only mutable shared resource. Every write
goes through compare-and-swap keyed on the snapshot serial, so a concurrent
drift reconciliation and an in-flight apply cannot silently overwrite each
other's updates.
"""

import asyncio
import copy
import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from converge.base import InstanceKey
from converge.errors import StateConflict, StateLocked
from converge.values import Value, values_from_python, values_to_python

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass
class ResourceInstance:
    """A realized resource instance as recorded in state."""

    key: InstanceKey
    id: Optional[str]
    attributes: Dict[str, Value] = field(default_factory=dict)
    dependencies: List[InstanceKey] = field(default_factory=list)
    schema_version: str = "1"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.key.type_name,
            "name": self.key.name,
            "id": self.id,
            "attributes": values_to_python(self.attributes),
            "dependencies": [str(d) for d in self.dependencies],
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceInstance":
        return cls(
            key=InstanceKey(data["type"], data["name"]),
            id=data.get("id"),
            attributes=values_from_python(data.get("attributes")),
            dependencies=[InstanceKey.parse(d) for d in data.get("dependencies", [])],
            schema_version=str(data.get("schema_version", "1")),
        )


@dataclass
class StateSnapshot:
    """
    Versioned mapping of instance identity to ResourceInstance.

    ``deposed`` holds old objects from create-before-destroy replacements
    whose deletion has not completed yet.
    """

    serial: int = 0
    lineage: str = ""
    instances: Dict[InstanceKey, ResourceInstance] = field(default_factory=dict)
    deposed: List[ResourceInstance] = field(default_factory=list)

    def get(self, key: InstanceKey) -> Optional[ResourceInstance]:
        if key.is_deposed:
            for instance in self.deposed:
                if instance.key.current() == key.current() and instance.id == key.deposed:
                    return instance
            return None
        return self.instances.get(key)

    def put(self, instance: ResourceInstance) -> None:
        self.instances[instance.key] = instance

    def remove(self, key: InstanceKey) -> Optional[ResourceInstance]:
        if key.is_deposed:
            instance = self.get(key)
            if instance is not None:
                self.deposed.remove(instance)
            return instance
        return self.instances.pop(key, None)

    def depose(self, key: InstanceKey) -> Optional[ResourceInstance]:
        """Move the current object for ``key`` to the deposed list."""
        instance = self.instances.pop(key, None)
        if instance is not None:
            self.deposed.append(instance)
        return instance

    def deposed_keys(self) -> List[InstanceKey]:
        return [
            InstanceKey(i.key.type_name, i.key.name, deposed=i.id or "")
            for i in self.deposed
        ]

    def copy(self) -> "StateSnapshot":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_FORMAT_VERSION,
            "serial": self.serial,
            "lineage": self.lineage,
            "instances": [
                self.instances[k].to_dict() for k in sorted(self.instances)
            ],
            "deposed": [i.to_dict() for i in self.deposed],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StateSnapshot":
        if not data:
            return cls()
        version = data.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise ValueError(f"Unsupported state format version: {version}")
        instances = [ResourceInstance.from_dict(i) for i in data.get("instances", [])]
        return cls(
            serial=int(data.get("serial", 0)),
            lineage=data.get("lineage", ""),
            instances={i.key: i for i in instances},
            deposed=[ResourceInstance.from_dict(i) for i in data.get("deposed", [])],
        )


class StateBackend(ABC):
    """
    Durable storage for StateSnapshots.

    Backends implement read, compare-and-swap write and an exclusive lock.
    """

    @abstractmethod
    async def read(self) -> StateSnapshot:
        """Return the latest stored snapshot (an empty one if none exists)."""
        pass

    @abstractmethod
    async def write(self, snapshot: StateSnapshot, expected_serial: int) -> StateSnapshot:
        """
        Store ``snapshot`` if the stored serial still equals ``expected_serial``.

        Returns:
            The stored snapshot, with serial ``expected_serial + 1``

        Raises:
            StateConflict: If the stored serial differs
        """
        pass

    @abstractmethod
    def lock(self, owner: str) -> Any:
        """
        Async context manager holding the backend's exclusive lock.

        Raises:
            StateLocked: If another owner holds the lock
        """
        pass

    async def close(self) -> None:
        """Release any backend resources."""
        return None

    async def record_run(
        self,
        run_kind: str,
        success: bool,
        serial: Optional[int] = None,
        summary: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Record an apply or drift run; backends without history ignore it."""
        return None


class MemoryStateBackend(StateBackend):
    """In-process backend; snapshots are stored as serialized dicts."""

    def __init__(self, initial: Optional[StateSnapshot] = None):
        self._data: Optional[Dict[str, Any]] = initial.to_dict() if initial else None
        self._write_lock = asyncio.Lock()
        self._lock_owner: Optional[str] = None

    async def read(self) -> StateSnapshot:
        return StateSnapshot.from_dict(copy.deepcopy(self._data))

    async def write(self, snapshot: StateSnapshot, expected_serial: int) -> StateSnapshot:
        async with self._write_lock:
            current = (self._data or {}).get("serial", 0)
            if current != expected_serial:
                raise StateConflict(expected=expected_serial, actual=current)
            stored = snapshot.copy()
            stored.serial = expected_serial + 1
            self._data = stored.to_dict()
            return stored

    @asynccontextmanager
    async def lock(self, owner: str) -> AsyncIterator[None]:
        if self._lock_owner is not None:
            raise StateLocked(f"State is locked by {self._lock_owner}")
        self._lock_owner = owner
        try:
            yield
        finally:
            self._lock_owner = None


class FileStateBackend(StateBackend):
    """
    JSON file backend.

    Writes go to a temporary file that is atomically renamed over the state
    file. The lock is a sibling ``.lock`` file created exclusively.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._write_lock = asyncio.Lock()

    def _load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def read(self) -> StateSnapshot:
        return StateSnapshot.from_dict(self._load())

    async def write(self, snapshot: StateSnapshot, expected_serial: int) -> StateSnapshot:
        async with self._write_lock:
            current = (self._load() or {}).get("serial", 0)
            if current != expected_serial:
                raise StateConflict(expected=expected_serial, actual=current)

            stored = snapshot.copy()
            stored.serial = expected_serial + 1
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(stored.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
            logger.debug(f"Wrote state serial {stored.serial} to {self.path}")
            return stored

    @asynccontextmanager
    async def lock(self, owner: str) -> AsyncIterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder = self.lock_path.read_text(encoding="utf-8").strip() or "unknown"
            raise StateLocked(
                f"State is locked by {holder} (remove {self.lock_path} if stale)"
            ) from None
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(owner)
        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)


class StateStore:
    """
    The State Store component.

    Wraps a StateBackend and offers read, compare-and-swap write, a
    read-modify-write helper and lock acquisition.
    """

    def __init__(self, backend: StateBackend):
        self.backend = backend

    async def read(self) -> StateSnapshot:
        return await self.backend.read()

    async def write(self, snapshot: StateSnapshot, expected_serial: int) -> StateSnapshot:
        """Compare-and-swap write; assigns a lineage on the first write."""
        if not snapshot.lineage:
            snapshot.lineage = str(uuid.uuid4())
        stored = await self.backend.write(snapshot, expected_serial)
        logger.debug(f"State serial {expected_serial} -> {stored.serial}")
        return stored

    async def update(
        self,
        mutate: Callable[[StateSnapshot], None],
        expected_serial: Optional[int] = None,
    ) -> StateSnapshot:
        """
        Read the current snapshot, apply ``mutate`` to a copy and write it back.

        Args:
            mutate: Function mutating the snapshot in place
            expected_serial: Serial the caller last observed; when given, a
                snapshot with a different serial raises StateConflict
                without writing

        Raises:
            StateConflict: If the serial moved
        """
        current = await self.read()
        if expected_serial is not None and current.serial != expected_serial:
            raise StateConflict(expected=expected_serial, actual=current.serial)
        updated = current.copy()
        mutate(updated)
        return await self.write(updated, current.serial)

    def lock(self, owner: str) -> Any:
        return self.backend.lock(owner)

    async def close(self) -> None:
        await self.backend.close()
