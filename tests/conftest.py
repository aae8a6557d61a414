from __future__ import annotations

import asyncio
import itertools
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from types import MappingProxyType

import pytest

from cirrus.catalog import InstanceShape
from cirrus.config import ClusterConfig
from cirrus.errors import AllocationError, NoStateError, ShapeUnavailableError, StateError
from cirrus.pool.worker import Alloc, Labels
from cirrus.providers.base import LaunchParams
from cirrus.resources import GiB, Requirements, Resources
from cirrus.state import Instances, LiveInstance

REGION = "us-west-2"


def shape(type_name: str, cpu: float, mem_gib: float = 0, *, price: float = 0.1, spot: bool = True) -> InstanceShape:
    return InstanceShape(
        type=type_name,
        resources=Resources(cpu=cpu, mem=mem_gib * GiB),
        price=MappingProxyType({REGION: price}),
        spot=spot,
    )


def need(cpu: float, mem_gib: float = 0) -> Requirements:
    return Requirements.exact(Resources(cpu=cpu, mem=mem_gib * GiB))


def make_config(**overrides: object) -> ClusterConfig:
    values: dict[str, object] = {
        "max_instances": 10,
        "disk_type": "gp3",
        "disk_space": 100,
        "ami": "ami-0abc",
        "region": REGION,
        "security_group": "sg-0123",
        "allocate_timeout": 2.0,
        "retry_interval": 30.0,
        "recheck_interval": 0.2,
        "reconcile_interval": 60.0,
        "refresh_interval": 60.0,
    }
    values.update(overrides)
    return ClusterConfig(**values)  # type: ignore[arg-type]


# ─── Provider ────────────────────────────────────────────────────────


class FakeProvider:
    """In-memory provider. Launches succeed after ``delay`` unless the type is unavailable."""

    def __init__(self, *, delay: float = 0.01) -> None:
        self.delay = delay
        self.unavailable: set[str] = set()
        self.states: dict[str, str] = {}
        self.calls: list[str] = []
        self.launched: list[LiveInstance] = []
        self.describe_calls: list[list[str]] = []
        self.describe_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self._ids = itertools.count(1)

    async def launch(self, shape: InstanceShape, price: float, params: LaunchParams) -> LiveInstance:
        self.calls.append(shape.type)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(self.delay)
        if shape.type in self.unavailable:
            raise ShapeUnavailableError(shape.type, REGION, "InsufficientInstanceCapacity")
        n = next(self._ids)
        inst = LiveInstance(id=f"i-{n:04d}", dns=f"10.0.0.{n}", type=shape.type, spot=params.spot)
        self.states[inst.id] = "running"
        self.launched.append(inst)
        return inst

    async def describe(self, instance_ids: Sequence[str]) -> Mapping[str, str]:
        self.describe_calls.append(list(instance_ids))
        if self.describe_error is not None:
            raise self.describe_error
        return {iid: self.states[iid] for iid in instance_ids if iid in self.states}

    async def terminate(self, instance_ids: Sequence[str]) -> None:
        for iid in instance_ids:
            self.states[iid] = "terminated"


# ─── State store ─────────────────────────────────────────────────────


class MemoryStateStore:
    def __init__(self, instances: Instances | None = None) -> None:
        self.data: Instances | None = dict(instances) if instances is not None else None
        self.fail = False
        self.saves = 0
        self._lock = threading.Lock()

    @contextmanager
    def lock(self) -> Iterator[None]:
        with self._lock:
            yield

    def load(self) -> Instances:
        if self.fail:
            raise StateError("store offline")
        if self.data is None:
            raise NoStateError("empty")
        return dict(self.data)

    def save(self, instances: Instances) -> None:
        if self.fail:
            raise StateError("store offline")
        self.saves += 1
        self.data = dict(instances)


# ─── Worker pools ────────────────────────────────────────────────────


class FakeWorkerPool:
    def __init__(self, instance_id: str, available: Resources, *, reachable: bool = True) -> None:
        self._instance_id = instance_id
        self.available = available
        self.reachable = reachable
        self.allocs: list[Alloc] = []
        self.closed = False

    @property
    def instance_id(self) -> str:
        return self._instance_id

    async def resources(self) -> Resources:
        if not self.reachable:
            raise AllocationError(f"{self._instance_id} unreachable")
        return self.available

    async def allocate(self, requirements: Requirements, labels: Labels) -> Alloc:
        if not self.reachable or not requirements.min <= self.available:
            raise AllocationError(f"{self._instance_id} cannot fit {requirements}")
        granted = requirements.max.min_with(self.available)
        self.available = self.available - granted
        alloc = Alloc(
            id=f"{self._instance_id}/{len(self.allocs)}",
            instance_id=self._instance_id,
            resources=granted,
            labels=labels,
        )
        self.allocs.append(alloc)
        return alloc

    async def close(self) -> None:
        self.closed = True


class WorkerFarm:
    """Handle factory giving every instance a fake worker sized like its shape."""

    def __init__(self, shapes: Sequence[InstanceShape]) -> None:
        self._resources = {s.type: s.resources for s in shapes}
        self.pools: dict[str, FakeWorkerPool] = {}

    def __call__(self, instance: LiveInstance) -> FakeWorkerPool:
        pool = self.pools.get(instance.id)
        if pool is None:
            pool = FakeWorkerPool(instance.id, self._resources[instance.type])
            self.pools[instance.id] = pool
        return pool


async def eventually(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(interval)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()
