"""Grower actor: turns pending capacity requests into instance launches.

Every message is followed by one planning pass:

1. Waiters not already covered by an in-flight launch are sorted by the
   magnitude of their minimum requirement, smallest first.
2. They are packed greedily: a bucket keeps absorbing the next waiter while
   some available instance type still covers the bucket's total. Each
   bucket becomes one planned launch.
3. Planned launches start while fewer than ``max_pending`` are in flight
   and the fleet (live + pending) stays under ``max_instances``.

When a launch completes, its capacity is handed to waiters in order; a
launch refused for lack of capacity demotes the instance type so the next
pass picks another one. An instance whose record cannot be written is
terminated and its waiters are replanned.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace

from casty import ActorContext, Behavior, Behaviors

from cirrus.actors.messages import (
    GetGrowerStatus,
    GrowerMsg,
    GrowerStatus,
    NeedCapacity,
    PendingLaunch,
    Waiter,
    _LaunchFailed,
    _LaunchSucceeded,
    _Recheck,
)
from cirrus.availability import AvailabilityTracker
from cirrus.catalog import InstanceShape
from cirrus.errors import ShapeUnavailableError, StateError
from cirrus.observability.logger import logger
from cirrus.providers.base import LaunchParams, Provider
from cirrus.resources import Resources
from cirrus.state import ClusterState, LiveInstance

log = logger.bind(actor="grower")


@dataclass(frozen=True, slots=True)
class PlannedLaunch:
    shape: InstanceShape
    waiters: tuple[Waiter, ...]
    need: Resources


def pack(
    waiters: Sequence[Waiter],
    tracker: AvailabilityTracker,
    spot_only: bool = False,
) -> list[PlannedLaunch]:
    """Greedily pack ``waiters`` (in the given order) into launches.

    A waiter whose minimum no available type can cover is skipped.
    """
    plan: list[PlannedLaunch] = []
    i = 0
    while i < len(waiters):
        first = waiters[i]
        i += 1
        need = first.requirements.min
        best = tracker.select_minimal(need, spot_only)
        if best is None:
            log.warning(
                "No currently available instance type can satisfy {need}",
                need=need,
            )
            continue

        bucket = [first]
        while i < len(waiters):
            extended = need + waiters[i].requirements.min
            candidate = tracker.select_minimal(extended, spot_only)
            if candidate is None:
                break
            need, best = extended, candidate
            bucket.append(waiters[i])
            i += 1
        plan.append(PlannedLaunch(shape=best, waiters=tuple(bucket), need=need))
    return plan


def by_magnitude(waiters: Sequence[Waiter]) -> list[Waiter]:
    """Smallest minimum first; equal magnitudes keep arrival order."""
    return sorted(waiters, key=lambda w: w.requirements.min.scaled_distance())


def satisfy(waiters: Sequence[Waiter], capacity: Resources) -> list[Waiter]:
    """Notify every waiter ``capacity`` can hold, in order.

    Each notified waiter consumes up to its maximum. Returns the waiters
    left over; inactive waiters are dropped without notification.
    """
    remaining: list[Waiter] = []
    available = capacity
    for w in waiters:
        if not w.active:
            continue
        if w.requirements.min <= available:
            available = available - w.requirements.max.min_with(available)
            w.notify()
        else:
            remaining.append(w)
    return remaining


@dataclass(frozen=True, slots=True)
class _State:
    waiters: tuple[Waiter, ...] = ()
    pending: tuple[PendingLaunch, ...] = ()
    pending_resources: Resources = Resources()
    recheck_scheduled: bool = False
    next_launch_id: int = 0
    launched: int = 0
    failed: int = 0


def grower_actor(
    tracker: AvailabilityTracker,
    provider: Provider,
    state: ClusterState,
    params: LaunchParams,
    *,
    region: str,
    max_instances: int,
    max_pending: int = 5,
    recheck_interval: float = 60.0,
) -> Behavior[GrowerMsg]:

    def _start_launch(ctx: ActorContext[GrowerMsg], launch: PendingLaunch) -> None:
        ctx.pipe_to_self(
            provider.launch(launch.shape, launch.price, params),
            mapper=lambda instance: _LaunchSucceeded(launch=launch, instance=instance),
            on_failure=lambda err: _LaunchFailed(launch=launch, error=err),
        )

    def _schedule_recheck(ctx: ActorContext[GrowerMsg]) -> None:
        async def _tick() -> _Recheck:
            await asyncio.sleep(recheck_interval)
            return _Recheck()

        ctx.pipe_to_self(
            _tick(),
            mapper=lambda r: r,
            on_failure=lambda _: _Recheck(),
        )

    async def _discard(instance: LiveInstance) -> None:
        try:
            await provider.terminate([instance.id])
        except Exception as e:
            log.error("Cannot terminate unrecorded instance {iid}: {err}", iid=instance.id, err=e)

    def _finish(s: _State, launch: PendingLaunch) -> _State:
        return replace(
            s,
            pending=tuple(p for p in s.pending if p.id != launch.id),
            pending_resources=s.pending_resources - launch.shape.resources,
        )

    async def _plan(ctx: ActorContext[GrowerMsg], s: _State) -> _State:
        try:
            n = await state.count()
        except StateError as e:
            log.error("Cannot read cluster state, skipping planning: {err}", err=e)
            return s

        live = tuple(w for w in s.waiters if w.active)
        assigned = {id(w) for p in s.pending for w in p.waiters}
        unassigned = by_magnitude([w for w in live if id(w) not in assigned])
        plan = pack(unassigned, tracker, params.spot)

        if unassigned and not plan:
            log.info("Resource requirements are unsatisfiable by current instance selection")
            if s.recheck_scheduled:
                return replace(s, waiters=live)
            _schedule_recheck(ctx)
            return replace(s, waiters=live, recheck_scheduled=True)

        pending = list(s.pending)
        pending_resources = s.pending_resources
        next_id = s.next_launch_id
        deferred = False
        for planned in plan:
            if len(pending) >= max_pending or n + len(pending) >= max_instances:
                log.debug(
                    "Launch of {type} deferred: {n} live, {p} pending, max {max}",
                    type=planned.shape.type, n=n, p=len(pending), max=max_instances,
                )
                deferred = True
                break
            launch = PendingLaunch(
                id=next_id,
                shape=planned.shape,
                price=planned.shape.price_in(region),
                waiters=planned.waiters,
            )
            next_id += 1
            pending.append(launch)
            pending_resources = pending_resources + planned.shape.resources
            log.debug(
                "Launch {type}{res} for {w} waiters, pending {pending}",
                type=launch.shape.type, res=launch.shape.resources,
                w=len(launch.waiters), pending=pending_resources,
            )
            _start_launch(ctx, launch)

        # Instances removed by the reconciler send no message; poll while at the ceiling.
        recheck = s.recheck_scheduled
        if deferred and not pending and not recheck:
            _schedule_recheck(ctx)
            recheck = True

        return replace(
            s,
            waiters=live,
            pending=tuple(pending),
            pending_resources=pending_resources,
            recheck_scheduled=recheck,
            next_launch_id=next_id,
        )

    def growing(s: _State) -> Behavior[GrowerMsg]:

        async def receive(
            ctx: ActorContext[GrowerMsg], msg: GrowerMsg,
        ) -> Behavior[GrowerMsg]:
            match msg:
                case NeedCapacity(waiter=waiter):
                    if not waiter.active:
                        return Behaviors.same()
                    live = tuple(w for w in s.waiters if w.active)
                    new_s = replace(s, waiters=(*live, waiter))
                    return growing(await _plan(ctx, new_s))

                case _LaunchSucceeded(launch=launch, instance=instance):
                    new_s = _finish(s, launch)
                    if not await state.add(instance):
                        log.error(
                            "Instance {iid} ({type}) could not be recorded, terminating it",
                            iid=instance.id, type=launch.shape.type,
                        )
                        await _discard(instance)
                        return growing(await _plan(ctx, replace(new_s, failed=s.failed + 1)))
                    log.info(
                        "Instance {iid} ({type}) running at {dns}",
                        iid=instance.id, type=launch.shape.type, dns=instance.dns,
                    )
                    remaining = satisfy(new_s.waiters, launch.shape.resources)
                    new_s = replace(new_s, waiters=tuple(remaining), launched=s.launched + 1)
                    log.debug(
                        "Added {type}{res}, pending {pending} npending:{n} waiters:{w}",
                        type=launch.shape.type, res=launch.shape.resources,
                        pending=new_s.pending_resources, n=len(new_s.pending), w=len(remaining),
                    )
                    return growing(await _plan(ctx, new_s))

                case _LaunchFailed(launch=launch, error=error):
                    new_s = replace(_finish(s, launch), failed=s.failed + 1)
                    match error:
                        case ShapeUnavailableError():
                            log.warning(
                                "Instance type {type} unavailable in region {region}: {err}",
                                type=launch.shape.type, region=region, err=error,
                            )
                            tracker.demote(launch.shape)
                        case _:
                            log.error(
                                "Launch of {type} failed: {err}",
                                type=launch.shape.type, err=error,
                            )
                    return growing(await _plan(ctx, new_s))

                case _Recheck():
                    return growing(await _plan(ctx, replace(s, recheck_scheduled=False)))

                case GetGrowerStatus(reply_to=reply_to):
                    reply_to.tell(GrowerStatus(
                        waiters=sum(1 for w in s.waiters if w.active),
                        pending=len(s.pending),
                        pending_resources=s.pending_resources,
                        launched=s.launched,
                        failed=s.failed,
                    ))
                    return Behaviors.same()

            return Behaviors.same()
        return Behaviors.receive(receive)

    async def setup(ctx: ActorContext[GrowerMsg]) -> Behavior[GrowerMsg]:
        log.info(
            "Grower started: max_instances={max}, max_pending={pending}, spot={spot}",
            max=max_instances, pending=max_pending, spot=params.spot,
        )
        return growing(_State())

    return Behaviors.setup(setup)
