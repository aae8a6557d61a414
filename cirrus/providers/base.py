from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, runtime_checkable

from cirrus.catalog import InstanceShape
from cirrus.state import LiveInstance

# Lifecycle states after which an instance no longer serves the cluster.
DEAD_STATES = frozenset({"shutting-down", "terminated", "stopping", "stopped"})


@dataclass(frozen=True, slots=True)
class LaunchParams:
    """Everything besides the shape and price needed to launch a node."""

    ami: str
    security_group: str
    disk_type: str
    disk_space: int
    spot: bool = False
    tag: str = "cirrus"
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    instance_profile: str | None = None
    key_name: str | None = None
    ssh_key: str | None = None
    immortal: bool = False
    user_data: str | None = None


@runtime_checkable
class Provider(Protocol):
    """Cloud operations the cluster needs.

    Implementations hold only immutable config (region, credentials).
    All cluster state lives in the durable store and the actors.
    """

    async def launch(self, shape: InstanceShape, price: float, params: LaunchParams) -> LiveInstance:
        """Launch one instance and wait until it is running.

        Parameters
        ----------
        shape
            Instance type to launch.
        price
            Hourly price of the shape; the spot bid when ``params.spot``.
        params
            Image, network, disk and tagging parameters.

        Returns
        -------
        LiveInstance
            The running instance with its public address.

        Raises
        ------
        ShapeUnavailableError
            The provider has no capacity for this shape right now.
        """
        ...

    async def describe(self, instance_ids: Sequence[str]) -> Mapping[str, str]:
        """Lifecycle state per instance id.

        Ids the provider does not report are simply absent from the result.
        Callers keep ``instance_ids`` within the provider's filter limit.
        """
        ...

    async def terminate(self, instance_ids: Sequence[str]) -> None:
        ...
