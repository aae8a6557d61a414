"""Cluster configuration.

Loads ~/.cirrus/defaults.toml (global) and cirrus.toml (project), merges
them, and resolves named clusters into :class:`ClusterConfig` values::

    [clusters.batch]
    region = "us-west-2"
    ami = "ami-0abc"
    security_group = "sg-0123"
    max_instances = 20
    disk_type = "gp3"
    disk_space = 250
    instance_types = ["c5.2xlarge", "m5.2xlarge"]
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from types import MappingProxyType
from typing import Any

from cirrus.errors import ConfigurationError

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".cirrus" / "defaults.toml"
PROJECT_CONFIG_NAME = "cirrus.toml"
DEFAULT_STATE_PATH = "~/.cirrus/state/default.json"


@dataclass(frozen=True, slots=True)
class ClusterConfig:
    """Immutable cluster configuration.

    Args:
        max_instances: Fleet ceiling (live + launching). Required.
        disk_type: EBS volume type, e.g. ``gp3``. Required.
        disk_space: EBS size in GiB attached to every node. Required.
        ami: Machine image for new nodes. Required.
        region: AWS region. Required.
        security_group: Security group id for new nodes. Required.
        instance_types: Allowed instance types, or None for the whole catalog.
        spot: Launch spot instances, bidding the on-demand price.
        tag: Value of the ``Name`` tag on new instances.
        labels: Extra tags attached to new instances.
        instance_profile: IAM instance profile name or ARN.
        key_name: EC2 key pair name.
        ssh_key: Public key authorized on new nodes.
        immortal: Keep instances alive when the node shuts itself down.
        user_data: Cloud-init payload passed to new instances.
        state_path: File holding the shared instance set.
        worker_port: Port of the worker agent on each node.
        worker_token: Bearer token presented to worker agents.
        max_pending: Concurrent launches in flight.
        demotion_window: Seconds an unavailable instance type is skipped.
        reconcile_interval: Seconds between provider reconciliations.
        refresh_interval: Seconds between reloads of the shared state.
        recheck_interval: Seconds before re-planning unlaunchable demand.
        allocate_timeout: Bound on each direct allocation attempt.
        retry_interval: Fallback allocation retry period while waiting.
        describe_page_size: Instance ids per describe call.
    """

    max_instances: int = 0
    disk_type: str = ""
    disk_space: int = 0
    ami: str = ""
    region: str = ""
    security_group: str = ""
    instance_types: frozenset[str] | None = None
    spot: bool = False
    tag: str = "cirrus"
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    instance_profile: str | None = None
    key_name: str | None = None
    ssh_key: str | None = None
    immortal: bool = False
    user_data: str | None = None
    state_path: str = DEFAULT_STATE_PATH
    worker_port: int = 9000
    worker_token: str | None = None
    max_pending: int = 5
    demotion_window: float = 300.0
    reconcile_interval: float = 60.0
    refresh_interval: float = 10.0
    recheck_interval: float = 60.0
    allocate_timeout: float = 30.0
    retry_interval: float = 20.0
    describe_page_size: int = 200

    def validate(self) -> None:
        """Raise ConfigurationError for the first missing required value."""
        required = (
            (self.max_instances, "missing max instances parameter"),
            (self.disk_type, "missing disk type parameter"),
            (self.disk_space, "missing disk space parameter"),
            (self.ami, "missing AMI parameter"),
            (self.region, "missing region parameter"),
            (self.security_group, "missing EC2 security group"),
        )
        for value, message in required:
            if not value:
                raise ConfigurationError(message)
        if self.max_instances < 0:
            raise ConfigurationError(f"max_instances must be positive, got {self.max_instances}")
        if self.max_pending <= 0:
            raise ConfigurationError(f"max_pending must be positive, got {self.max_pending}")
        if self.describe_page_size <= 0:
            raise ConfigurationError(f"describe_page_size must be positive, got {self.describe_page_size}")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ClusterConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ConfigurationError(f"Unknown cluster settings: {', '.join(sorted(unknown))}")
        values = dict(raw)
        if values.get("instance_types") is not None:
            values["instance_types"] = frozenset(values["instance_types"])
        if "labels" in values:
            values["labels"] = MappingProxyType({str(k): str(v) for k, v in values["labels"].items()})
        return cls(**values)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("defaults", {})
    merged.setdefault("clusters", {})
    return merged


def resolve_cluster(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ClusterConfig:
    """Build the configuration of cluster ``name``.

    Values under ``[defaults]`` apply to every cluster and are overridden
    by ``[clusters.<name>]``.
    """
    config = load_config(project_dir=project_dir, global_path=global_path)

    clusters = config["clusters"]
    if name not in clusters:
        raise KeyError(f"Cluster '{name}' not found. Available: {', '.join(clusters) or 'none'}")

    raw = _deep_merge(config["defaults"], clusters[name])
    raw.setdefault("state_path", f"~/.cirrus/state/{name}.json")
    return ClusterConfig.from_dict(raw)
