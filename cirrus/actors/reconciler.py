"""Reconciler actor: drops instances the provider no longer runs.

Two timers drive it. The reconcile timer asks the provider about every
recorded instance and removes the dead ones from durable state; the
refresh timer re-reads durable state so changes made by other processes
reach the capacity view.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence

from casty import ActorContext, Behavior, Behaviors

from cirrus.actors.messages import (
    ReconcilerMsg,
    _Reconciled,
    _ReconcileFailed,
    _ReconcileTick,
    _RefreshTick,
)
from cirrus.observability.logger import logger
from cirrus.providers.base import DEAD_STATES, Provider
from cirrus.state import ClusterState, InstanceId

log = logger.bind(actor="reconciler")

# EC2 rejects filters with more values than this.
EC2_MAX_FILTER = 200

type Describe = Callable[[Sequence[InstanceId]], Awaitable[Mapping[InstanceId, str]]]


def _pages[T](items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def find_dead(
    instance_ids: Iterable[InstanceId],
    describe: Describe,
    page_size: int = EC2_MAX_FILTER,
) -> list[InstanceId]:
    """Ids that are missing from the provider or in a dead lifecycle state."""
    dead: list[InstanceId] = []
    for page in _pages(sorted(instance_ids), page_size):
        states = await describe(page)
        for iid in page:
            state = states.get(iid)
            if state is None or state in DEAD_STATES:
                log.info("Marking instance {iid} down ({state})", iid=iid, state=state or "missing")
                dead.append(iid)
    return dead


async def reconcile_once(
    provider: Provider,
    state: ClusterState,
    page_size: int = EC2_MAX_FILTER,
) -> tuple[InstanceId, ...]:
    """One pass: describe every recorded instance, remove the dead ones.

    Raises:
        StateError: Durable state could not be read.
    """
    instances = await state.load()
    if not instances:
        return ()
    dead = await find_dead(instances, provider.describe, page_size)
    if dead:
        await state.remove(*dead)
    return tuple(dead)


def reconciler_actor(
    provider: Provider,
    state: ClusterState,
    *,
    reconcile_interval: float = 60.0,
    refresh_interval: float = 10.0,
    page_size: int = EC2_MAX_FILTER,
) -> Behavior[ReconcilerMsg]:

    def _after[M](delay: float, msg: M, ctx: ActorContext[ReconcilerMsg]) -> None:
        async def _tick() -> M:
            await asyncio.sleep(delay)
            return msg

        ctx.pipe_to_self(
            _tick(),
            mapper=lambda r: r,
            on_failure=lambda _: msg,
        )

    def _start_reconcile(ctx: ActorContext[ReconcilerMsg]) -> None:
        ctx.pipe_to_self(
            reconcile_once(provider, state, page_size),
            mapper=lambda dead: _Reconciled(dead=dead),
            on_failure=lambda err: _ReconcileFailed(error=str(err)),
        )

    def watching() -> Behavior[ReconcilerMsg]:

        async def receive(
            ctx: ActorContext[ReconcilerMsg], msg: ReconcilerMsg,
        ) -> Behavior[ReconcilerMsg]:
            match msg:
                case _ReconcileTick():
                    _start_reconcile(ctx)

                case _Reconciled(dead=dead):
                    if dead:
                        log.info("Removed {n} dead instances: {ids}", n=len(dead), ids=list(dead))
                    else:
                        log.debug("Reconcile found no dead instances")
                    _after(reconcile_interval, _ReconcileTick(), ctx)

                case _ReconcileFailed(error=error):
                    log.error("Reconcile failed: {err}", err=error)
                    _after(reconcile_interval, _ReconcileTick(), ctx)

                case _RefreshTick():
                    await state.refresh()
                    _after(refresh_interval, _RefreshTick(), ctx)

            return Behaviors.same()
        return Behaviors.receive(receive)

    async def setup(ctx: ActorContext[ReconcilerMsg]) -> Behavior[ReconcilerMsg]:
        log.info(
            "Reconciler started: reconcile every {r}s, refresh every {f}s",
            r=reconcile_interval, f=refresh_interval,
        )
        _start_reconcile(ctx)
        _after(refresh_interval, _RefreshTick(), ctx)
        return watching()

    return Behaviors.setup(setup)
