"""EC2 instance shapes the cluster may launch."""

from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from cirrus.resources import CPU, DISK, MEM, GiB, Resources


@dataclass(frozen=True, slots=True)
class InstanceShape:
    """Specification for an EC2 instance type."""

    type: str
    resources: Resources
    price: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))
    spot: bool = True

    def price_in(self, region: str) -> float:
        return self.price.get(region, 0.0)

    def with_disk(self, disk_gib: int) -> InstanceShape:
        return replace(self, resources=Resources(self.resources, **{DISK: disk_gib * GiB}))


def _shape(type_name: str, vcpu: int, memory_gib: float, prices: tuple[float, float, float], *, spot: bool = True) -> InstanceShape:
    us_east_1, us_west_2, eu_west_1 = prices
    return InstanceShape(
        type=type_name,
        resources=Resources({CPU: vcpu, MEM: memory_gib * GiB}),
        price=MappingProxyType({
            "us-east-1": us_east_1,
            "us-west-2": us_west_2,
            "eu-west-1": eu_west_1,
        }),
        spot=spot,
    )


# On-demand hourly prices (USD) for us-east-1, us-west-2, eu-west-1.
# Burstable types are excluded from spot selection.
INSTANCE_SHAPES: tuple[InstanceShape, ...] = (
    _shape("t3.medium", 2, 4, (0.0416, 0.0416, 0.0456), spot=False),
    _shape("t3.large", 2, 8, (0.0832, 0.0832, 0.0912), spot=False),
    _shape("t3.xlarge", 4, 16, (0.1664, 0.1664, 0.1824), spot=False),
    _shape("t3.2xlarge", 8, 32, (0.3328, 0.3328, 0.3648), spot=False),
    _shape("c5.large", 2, 4, (0.085, 0.085, 0.096)),
    _shape("c5.xlarge", 4, 8, (0.17, 0.17, 0.192)),
    _shape("c5.2xlarge", 8, 16, (0.34, 0.34, 0.384)),
    _shape("c5.4xlarge", 16, 32, (0.68, 0.68, 0.768)),
    _shape("c5.9xlarge", 36, 72, (1.53, 1.53, 1.728)),
    _shape("c5.18xlarge", 72, 144, (3.06, 3.06, 3.456)),
    _shape("m5.large", 2, 8, (0.096, 0.096, 0.107)),
    _shape("m5.xlarge", 4, 16, (0.192, 0.192, 0.214)),
    _shape("m5.2xlarge", 8, 32, (0.384, 0.384, 0.428)),
    _shape("m5.4xlarge", 16, 64, (0.768, 0.768, 0.856)),
    _shape("m5.12xlarge", 48, 192, (2.304, 2.304, 2.568)),
    _shape("m5.24xlarge", 96, 384, (4.608, 4.608, 5.136)),
    _shape("r5.large", 2, 16, (0.126, 0.126, 0.141)),
    _shape("r5.xlarge", 4, 32, (0.252, 0.252, 0.282)),
    _shape("r5.2xlarge", 8, 64, (0.504, 0.504, 0.564)),
    _shape("r5.4xlarge", 16, 128, (1.008, 1.008, 1.128)),
    _shape("r5.12xlarge", 48, 384, (3.024, 3.024, 3.384)),
    _shape("r5.24xlarge", 96, 768, (6.048, 6.048, 6.768)),
)


def admissible_shapes(
    instance_types: Collection[str] | None,
    disk_space_gib: int,
    catalog: Collection[InstanceShape] = INSTANCE_SHAPES,
) -> tuple[InstanceShape, ...]:
    """Filter ``catalog`` by the allow-list and give every shape its disk.

    Args:
        instance_types: Allowed type names, or None to allow all.
        disk_space_gib: EBS volume size attached to each node.
        catalog: Candidate shapes.

    Returns:
        Admissible shapes in catalog order. May be empty.
    """
    return tuple(
        shape.with_disk(disk_space_gib)
        for shape in catalog
        if instance_types is None or shape.type in instance_types
    )


def get_shape(type_name: str, catalog: Collection[InstanceShape] = INSTANCE_SHAPES) -> InstanceShape | None:
    for shape in catalog:
        if shape.type == type_name:
            return shape
    return None
