from cirrus.actors.grower import grower_actor, pack
from cirrus.actors.messages import GrowerStatus, NeedCapacity, PendingLaunch, Waiter
from cirrus.actors.reconciler import find_dead, reconcile_once, reconciler_actor

__all__ = [
    "GrowerStatus",
    "NeedCapacity",
    "PendingLaunch",
    "Waiter",
    "find_dead",
    "grower_actor",
    "pack",
    "reconcile_once",
    "reconciler_actor",
]
