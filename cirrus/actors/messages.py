"""Messages exchanged with the cluster actors.

The message unions (GrowerMsg, ReconcilerMsg) are the actors' public API.
Names starting with an underscore are sent by an actor to itself.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from casty import ActorRef

from cirrus.catalog import InstanceShape
from cirrus.resources import Requirements, Resources
from cirrus.state import InstanceId, LiveInstance

# =============================================================================
# Waiters
# =============================================================================


@dataclass(eq=False, slots=True)
class Waiter:
    """A pending, cancellable request for capacity.

    The allocating caller owns cancellation; the grower owns notification.
    A cancelled waiter is never notified.
    """

    requirements: Requirements
    _signal: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _cancelled: bool = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def notified(self) -> bool:
        return self._signal.is_set()

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._signal.is_set()

    def notify(self) -> bool:
        if not self.active:
            return False
        self._signal.set()
        return True

    def cancel(self) -> None:
        if not self._signal.is_set():
            self._cancelled = True

    async def wait(self) -> None:
        await self._signal.wait()


@dataclass(frozen=True, slots=True)
class PendingLaunch:
    """An instance launch in flight, with the waiters it was planned for."""

    id: int
    shape: InstanceShape
    price: float
    waiters: tuple[Waiter, ...]


# =============================================================================
# Grower
# =============================================================================


@dataclass(frozen=True, slots=True)
class NeedCapacity:
    """Caller could not be served from running capacity."""

    waiter: Waiter


@dataclass(frozen=True, slots=True)
class GetGrowerStatus:
    reply_to: ActorRef[GrowerStatus]


@dataclass(frozen=True, slots=True)
class GrowerStatus:
    waiters: int
    pending: int
    pending_resources: Resources
    launched: int
    failed: int


@dataclass(frozen=True, slots=True)
class _LaunchSucceeded:
    launch: PendingLaunch
    instance: LiveInstance


@dataclass(frozen=True, slots=True)
class _LaunchFailed:
    launch: PendingLaunch
    error: Exception


@dataclass(frozen=True, slots=True)
class _Recheck:
    pass


type GrowerMsg = NeedCapacity | GetGrowerStatus | _LaunchSucceeded | _LaunchFailed | _Recheck


# =============================================================================
# Reconciler
# =============================================================================


@dataclass(frozen=True, slots=True)
class _ReconcileTick:
    pass


@dataclass(frozen=True, slots=True)
class _RefreshTick:
    pass


@dataclass(frozen=True, slots=True)
class _Reconciled:
    dead: tuple[InstanceId, ...]


@dataclass(frozen=True, slots=True)
class _ReconcileFailed:
    error: str


type ReconcilerMsg = _ReconcileTick | _RefreshTick | _Reconciled | _ReconcileFailed
