"""Cirrus - elastic EC2 compute clusters.

Callers ask for resources; the cluster serves them from running workers
or launches instances sized to the combined demand.

Example:

    from cirrus import Cluster, GiB, Requirements, Resources, resolve_cluster

    async with Cluster.create(resolve_cluster("batch")) as cluster:
        alloc = await cluster.allocate(
            Requirements.exact(Resources(cpu=4, mem=16 * GiB)),
        )
"""

from cirrus.availability import AvailabilityTracker
from cirrus.catalog import INSTANCE_SHAPES, InstanceShape, admissible_shapes, get_shape
from cirrus.cluster import Cluster
from cirrus.config import ClusterConfig, load_config, resolve_cluster
from cirrus.errors import (
    AllocationError,
    CirrusError,
    ConfigurationError,
    NoStateError,
    ResourcesExhaustedError,
    ShapeUnavailableError,
    StateError,
)
from cirrus.observability import LogConfig, setup_logging, teardown_logging
from cirrus.pool import Alloc, CapacityView, HttpWorkerPool, WorkerPool
from cirrus.providers import LaunchParams, Provider
from cirrus.resources import CPU, DISK, MEM, GiB, Requirements, Resources
from cirrus.state import ClusterState, FileStateStore, LiveInstance, StateStore

__all__ = [
    "CPU",
    "DISK",
    "INSTANCE_SHAPES",
    "MEM",
    "Alloc",
    "AllocationError",
    "AvailabilityTracker",
    "CapacityView",
    "CirrusError",
    "Cluster",
    "ClusterConfig",
    "ClusterState",
    "ConfigurationError",
    "FileStateStore",
    "GiB",
    "HttpWorkerPool",
    "InstanceShape",
    "LaunchParams",
    "LiveInstance",
    "LogConfig",
    "NoStateError",
    "Provider",
    "Requirements",
    "Resources",
    "ResourcesExhaustedError",
    "ShapeUnavailableError",
    "StateError",
    "StateStore",
    "WorkerPool",
    "admissible_shapes",
    "get_shape",
    "load_config",
    "resolve_cluster",
    "setup_logging",
    "teardown_logging",
]
