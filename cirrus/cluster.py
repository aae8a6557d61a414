"""Elastic EC2 cluster: serve allocations from running capacity, grow on demand.

Example:
    >>> config = resolve_cluster("batch")
    >>> async with Cluster.create(config) as cluster:
    ...     alloc = await cluster.allocate(Requirements(Resources(cpu=2, mem=4 * GiB),
    ...                                                 Resources(cpu=8, mem=16 * GiB)))
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from types import MappingProxyType

from casty import ActorRef, ActorSystem

from cirrus.actors.grower import grower_actor
from cirrus.actors.messages import (
    GetGrowerStatus,
    GrowerMsg,
    GrowerStatus,
    NeedCapacity,
    ReconcilerMsg,
    Waiter,
)
from cirrus.actors.reconciler import reconciler_actor
from cirrus.availability import AvailabilityTracker
from cirrus.catalog import INSTANCE_SHAPES, InstanceShape, admissible_shapes
from cirrus.config import ClusterConfig
from cirrus.errors import AllocationError, ConfigurationError, ResourcesExhaustedError
from cirrus.observability.logger import logger
from cirrus.pool.http import BearerAuth
from cirrus.pool.view import CapacityView, HandleFactory
from cirrus.pool.worker import Alloc, HttpWorkerPool, Labels, WorkerPool
from cirrus.providers.base import LaunchParams, Provider
from cirrus.resources import Requirements, Resources
from cirrus.state import ClusterState, FileStateStore, LiveInstance, StateStore

log = logger.bind(component="cluster")


class Cluster:
    """A pool of EC2 workers sized to the demand of concurrent callers.

    Args:
        config: Cluster configuration; validated by :meth:`start`.
        provider: Launches and describes instances.
        store: Durable instance set shared with other processes. Defaults
            to a :class:`FileStateStore` at ``config.state_path``.
        handle_factory: Builds the worker handle of a live instance.
            Defaults to :class:`HttpWorkerPool`.
        shapes: Instance catalog to choose from.
    """

    def __init__(
        self,
        config: ClusterConfig,
        provider: Provider,
        store: StateStore | None = None,
        *,
        handle_factory: HandleFactory | None = None,
        shapes: Sequence[InstanceShape] = INSTANCE_SHAPES,
    ) -> None:
        self._config = config
        self._provider = provider
        self._shapes = shapes
        self.capacity = CapacityView(handle_factory or self._http_handle)
        self.state = ClusterState(
            store if store is not None else FileStateStore(config.state_path),
            on_change=self.capacity.rebuild,
        )
        self._tracker: AvailabilityTracker | None = None
        self._system: ActorSystem | None = None
        self._grower: ActorRef[GrowerMsg] | None = None
        self._reconciler: ActorRef[ReconcilerMsg] | None = None

    @classmethod
    def create(cls, config: ClusterConfig, store: StateStore | None = None) -> Cluster:
        """Cluster backed by the EC2 API."""
        from cirrus.providers.aws import EC2Provider

        return cls(config, EC2Provider.create(config), store)

    @property
    def config(self) -> ClusterConfig:
        return self._config

    @property
    def tracker(self) -> AvailabilityTracker:
        if self._tracker is None:
            raise RuntimeError("Cluster not started")
        return self._tracker

    @property
    def size(self) -> int:
        """Number of instances in the capacity view."""
        return self.capacity.size

    @property
    def is_running(self) -> bool:
        return self._system is not None

    def _http_handle(self, instance: LiveInstance) -> WorkerPool:
        token = self._config.worker_token
        return HttpWorkerPool(
            instance,
            port=self._config.worker_port,
            auth=BearerAuth(token) if token else None,
            timeout=self._config.allocate_timeout,
        )

    def launch_params(self) -> LaunchParams:
        c = self._config
        return LaunchParams(
            ami=c.ami,
            security_group=c.security_group,
            disk_type=c.disk_type,
            disk_space=c.disk_space,
            spot=c.spot,
            tag=c.tag,
            labels=c.labels,
            instance_profile=c.instance_profile,
            key_name=c.key_name,
            ssh_key=c.ssh_key,
            immortal=c.immortal,
            user_data=c.user_data,
        )

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Validate the configuration and start the grower and reconciler.

        Raises:
            ConfigurationError: A required setting is missing or no instance
                type is admissible. Nothing is started.
        """
        if self._system is not None:
            return
        c = self._config
        c.validate()

        shapes = admissible_shapes(c.instance_types, c.disk_space, self._shapes)
        if not shapes:
            raise ConfigurationError("no configured instance types")
        self._tracker = AvailabilityTracker(shapes, c.region, demotion_window=c.demotion_window)

        await self.state.refresh()
        log.info(
            "Starting cluster in {region}: {n} instance types, {live} live instances",
            region=c.region, n=len(shapes), live=self.capacity.size,
        )

        system = ActorSystem("cirrus")
        await system.__aenter__()
        self._system = system
        self._grower = system.spawn(
            grower_actor(
                self._tracker,
                self._provider,
                self.state,
                self.launch_params(),
                region=c.region,
                max_instances=c.max_instances,
                max_pending=c.max_pending,
                recheck_interval=c.recheck_interval,
            ),
            "grower",
        )
        self._reconciler = system.spawn(
            reconciler_actor(
                self._provider,
                self.state,
                reconcile_interval=c.reconcile_interval,
                refresh_interval=c.refresh_interval,
                page_size=c.describe_page_size,
            ),
            "reconciler",
        )

    async def stop(self) -> None:
        system, self._system = self._system, None
        self._grower = self._reconciler = None
        if system is not None:
            await system.__aexit__(None, None, None)
            log.info("Cluster stopped")
        await self.capacity.close()

    async def __aenter__(self) -> Cluster:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    # ─── Capacity ────────────────────────────────────────────────────

    async def resources(self) -> Resources:
        return await self.capacity.resources()

    async def grower_status(self, timeout: float = 5.0) -> GrowerStatus:
        if self._system is None or self._grower is None:
            raise RuntimeError("Cluster not started")
        return await self._system.ask(
            self._grower,
            lambda reply_to: GetGrowerStatus(reply_to=reply_to),
            timeout=timeout,
        )

    async def _try_allocate(self, requirements: Requirements, labels: Labels) -> Alloc | None:
        try:
            async with asyncio.timeout(self._config.allocate_timeout):
                return await self.capacity.allocate(requirements, labels)
        except (AllocationError, TimeoutError) as e:
            log.debug("Allocation of {req} failed: {err}", req=requirements, err=e)
            return None

    def _need(self, requirements: Requirements) -> Waiter:
        if self._grower is None:
            raise RuntimeError("Cluster not started")
        waiter = Waiter(requirements)
        self._grower.tell(NeedCapacity(waiter=waiter))
        return waiter

    async def allocate(self, requirements: Requirements, labels: Labels | None = None) -> Alloc:
        """Reserve capacity within ``requirements``, growing the cluster if needed.

        Returns as soon as a worker accepts the allocation. There is no
        overall deadline: wrap the call in ``asyncio.timeout`` to bound it.
        Cancelling the call withdraws its demand from the grower.

        Raises:
            ResourcesExhaustedError: No configured instance type can ever
                satisfy ``requirements.min``.
        """
        log.debug("Allocate {req}", req=requirements)
        if not self.tracker.is_satisfiable(requirements.min):
            raise ResourcesExhaustedError(
                f"requested resources {requirements} not satisfiable by any available instance type"
            )
        labels = labels if labels is not None else MappingProxyType({})

        if self.capacity.size > 0:
            if (alloc := await self._try_allocate(requirements, labels)) is not None:
                return alloc
            log.debug("Existing pool cannot serve {req}, provisioning", req=requirements)

        waiter = self._need(requirements)
        try:
            while True:
                try:
                    await asyncio.wait_for(waiter.wait(), self._config.retry_interval)
                except TimeoutError:
                    pass

                if (alloc := await self._try_allocate(requirements, labels)) is not None:
                    return alloc

                if waiter.notified:
                    log.warning(
                        "Capacity for {req} was signalled but allocation failed, asking again",
                        req=requirements,
                    )
                    waiter = self._need(requirements)
        finally:
            waiter.cancel()
