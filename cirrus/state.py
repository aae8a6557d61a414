"""Durable, process-shared record of the instances a cluster believes exist.

Several processes may manage the same logical cluster. They coordinate
through a :class:`StateStore`: every change is a read-modify-write made
while holding the store's exclusive lock, including the save.
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import os
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from cirrus.errors import NoStateError, StateError
from cirrus.observability.logger import logger

log = logger.bind(component="state")

type InstanceId = str
type Instances = dict[InstanceId, LiveInstance]


@dataclass(frozen=True, slots=True)
class LiveInstance:
    """A launched instance as recorded in durable state."""

    id: InstanceId
    dns: str
    type: str
    spot: bool = False
    launched_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "dns": self.dns,
            "type": self.type,
            "spot": self.spot,
            "launched_at": self.launched_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LiveInstance:
        return cls(
            id=str(data["id"]),
            dns=str(data["dns"]),
            type=str(data["type"]),
            spot=bool(data.get("spot", False)),
            launched_at=float(data.get("launched_at", 0.0)),
        )


@runtime_checkable
class StateStore(Protocol):
    """Lockable key/value persistence for the instance set."""

    def lock(self) -> AbstractContextManager[None]: ...

    def load(self) -> Instances:
        """Return the stored instances or raise NoStateError."""
        ...

    def save(self, instances: Instances) -> None: ...


class FileStateStore:
    """JSON file guarded by ``flock`` on a sidecar lock file.

    The lock is exclusive across processes and across threads of the same
    process, since each acquisition opens its own file description.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._lock_path = self._path.with_name(self._path.name + ".lock")

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def lock(self) -> Iterator[None]:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self._lock_path, "a+")
        except OSError as e:
            raise StateError(f"lock {self._lock_path}: {e}") from e
        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            except OSError as e:
                raise StateError(f"lock {self._lock_path}: {e}") from e
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def load(self) -> Instances:
        try:
            with self._path.open("r") as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise NoStateError(str(self._path)) from None
        except (OSError, ValueError) as e:
            raise StateError(f"read {self._path}: {e}") from e
        try:
            return {iid: LiveInstance.from_dict(data) for iid, data in raw.items()}
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StateError(f"decode {self._path}: {e}") from e

    def save(self, instances: Instances) -> None:
        tmp = self._path.with_name(f".{self._path.name}.{os.getpid()}.tmp")
        try:
            with tmp.open("w") as f:
                json.dump({iid: inst.to_dict() for iid, inst in instances.items()}, f, indent=2)
            os.replace(tmp, self._path)
        except OSError as e:
            raise StateError(f"write {self._path}: {e}") from e


class ClusterState:
    """Async facade over a :class:`StateStore`.

    Blocking store calls run in a worker thread. ``on_change`` receives the
    saved instance set after every successful mutation.
    """

    def __init__(
        self,
        store: StateStore,
        on_change: Callable[[Instances], None] | None = None,
    ) -> None:
        self._store = store
        self._on_change = on_change

    @property
    def store(self) -> StateStore:
        return self._store

    def _load_sync(self) -> Instances:
        try:
            return self._store.load()
        except NoStateError:
            return {}

    async def load(self) -> Instances:
        """Current instances; empty when no state exists yet.

        Raises:
            StateError: The store is unreadable or corrupt.
        """
        return await asyncio.to_thread(self._load_sync)

    async def count(self) -> int:
        return len(await self.load())

    async def refresh(self) -> None:
        """Re-read the store and publish it to ``on_change``."""
        try:
            instances = await self.load()
        except StateError as e:
            log.error("State refresh failed: {err}", err=e)
            return
        if self._on_change is not None:
            self._on_change(instances)

    def _update_sync(self, fn: Callable[[Instances], None]) -> Instances:
        with self._store.lock():
            instances = self._load_sync()
            fn(instances)
            self._store.save(instances)
        return instances

    async def update(self, fn: Callable[[Instances], None]) -> bool:
        """Apply ``fn`` to the instance set under the store lock.

        Returns False (after logging) when the store fails; the change is
        not applied.
        """
        try:
            instances = await asyncio.to_thread(self._update_sync, fn)
        except StateError as e:
            log.error("State update failed: {err}", err=e)
            return False
        if self._on_change is not None:
            self._on_change(instances)
        return True

    async def add(self, *new: LiveInstance) -> bool:
        def _add(instances: Instances) -> None:
            for inst in new:
                instances[inst.id] = inst

        return await self.update(_add)

    async def remove(self, *instance_ids: InstanceId) -> bool:
        def _remove(instances: Instances) -> None:
            for iid in instance_ids:
                instances.pop(iid, None)

        return await self.update(_remove)
