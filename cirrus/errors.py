"""Error taxonomy for the cluster manager."""

from __future__ import annotations


class CirrusError(Exception):
    """Base class for cirrus errors."""


class ConfigurationError(CirrusError):
    """The cluster cannot start with the given configuration."""


class ResourcesExhaustedError(CirrusError):
    """No admissible instance type can ever satisfy the requested resources."""


class ShapeUnavailableError(CirrusError):
    """The provider refused to launch an instance type in a region."""

    def __init__(self, instance_type: str, region: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"instance type {instance_type} unavailable in {region}{detail}")
        self.instance_type = instance_type
        self.region = region
        self.reason = reason


class AllocationError(CirrusError):
    """A direct allocation attempt against running capacity failed."""


class NoStateError(CirrusError):
    """The state store holds no state yet."""


class StateError(CirrusError):
    """The state store could not be read or written."""
