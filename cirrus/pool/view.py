"""Live worker handles derived from the durable instance set.

The view is rebuilt after every durable-state change. Readers always see
a complete snapshot: the mapping is replaced, never mutated in place.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from types import MappingProxyType

from cirrus.errors import AllocationError
from cirrus.observability.logger import logger
from cirrus.pool.worker import Alloc, Labels, WorkerPool
from cirrus.resources import Requirements, Resources
from cirrus.state import InstanceId, LiveInstance

log = logger.bind(component="capacity")

type HandleFactory = Callable[[LiveInstance], WorkerPool]


class CapacityView:
    """Aggregated pool over one handle per live instance.

    Args:
        factory: Builds a handle from an instance. Failures are logged and
            the instance is retried on the next rebuild.
    """

    def __init__(self, factory: HandleFactory) -> None:
        self._factory = factory
        self._pools: Mapping[InstanceId, WorkerPool] = MappingProxyType({})
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def pools(self) -> Mapping[InstanceId, WorkerPool]:
        return self._pools

    @property
    def size(self) -> int:
        return len(self._pools)

    def rebuild(self, instances: Mapping[InstanceId, LiveInstance]) -> None:
        current = self._pools
        pools: dict[InstanceId, WorkerPool] = {}
        for iid, inst in instances.items():
            if (existing := current.get(iid)) is not None:
                pools[iid] = existing
                continue
            try:
                pools[iid] = self._factory(inst)
            except Exception as e:
                log.error("Cannot build handle for {iid} ({dns}): {err}", iid=iid, dns=inst.dns, err=e)
                continue
            log.debug("Added worker {iid} ({type})", iid=iid, type=inst.type)

        self._pools = MappingProxyType(pools)

        for iid, pool in current.items():
            if iid not in pools:
                log.debug("Dropped worker {iid}", iid=iid)
                self._discard(pool)

    def _discard(self, pool: WorkerPool) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(pool.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _available(self, pool: WorkerPool) -> Resources | None:
        try:
            return await pool.resources()
        except Exception as e:
            log.debug("Worker {iid} unreachable: {err}", iid=pool.instance_id, err=e)
            return None

    async def resources(self) -> Resources:
        """Sum of available resources across reachable workers."""
        snapshot = list(self._pools.values())
        total = Resources()
        for available in await asyncio.gather(*(self._available(p) for p in snapshot)):
            if available is not None:
                total = total + available
        return total

    async def allocate(self, requirements: Requirements, labels: Labels) -> Alloc:
        """Reserve ``requirements`` on the tightest-fitting worker.

        Raises:
            AllocationError: No worker could serve the request.
        """
        snapshot = list(self._pools.values())
        if not snapshot:
            raise AllocationError("no workers in cluster")

        offers = await asyncio.gather(*(self._available(p) for p in snapshot))
        candidates = sorted(
            (
                (available.scaled_distance(), pool.instance_id, pool)
                for pool, available in zip(snapshot, offers, strict=True)
                if available is not None and requirements.min <= available
            ),
            key=lambda c: (c[0], c[1]),
        )
        for _, iid, pool in candidates:
            try:
                return await pool.allocate(requirements, labels)
            except AllocationError as e:
                log.debug("Allocation on {iid} failed: {err}", iid=iid, err=e)
            except Exception as e:
                log.warning("Worker {iid} broke during allocation: {err}", iid=iid, err=e)
        raise AllocationError(
            f"no worker among {len(snapshot)} can serve {requirements}",
        )

    async def close(self) -> None:
        pools, self._pools = self._pools, MappingProxyType({})
        for pool in pools.values():
            await pool.close()
