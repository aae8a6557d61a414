"""Resource vectors and elastic requirements.

A :class:`Resources` maps a resource kind (``cpu``, ``mem``, ``disk`` or any
custom kind) to a non-negative quantity. Memory and disk are in bytes.
"""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType

GiB = float(1 << 30)

CPU = "cpu"
MEM = "mem"
DISK = "disk"

# Unit used to normalize each kind before measuring distance, so that one
# core weighs the same as one GiB of memory or disk.
_SCALES: Mapping[str, float] = MappingProxyType({CPU: 1.0, MEM: GiB, DISK: GiB})


class Resources(Mapping[str, float]):
    """Immutable resource vector.

    Missing kinds read as zero. Subtraction clamps at zero.

    Example:
        >>> a = Resources(cpu=2, mem=4 * GiB)
        >>> a <= Resources(cpu=4, mem=8 * GiB)
        True
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, float] | None = None, /, **kinds: float) -> None:
        merged = {**(values or {}), **kinds}
        for kind, value in merged.items():
            if value < 0:
                raise ValueError(f"negative quantity for {kind}: {value}")
        self._values: dict[str, float] = {k: float(v) for k, v in merged.items() if v}

    def __getitem__(self, kind: str) -> float:
        return self._values[kind]

    def get(self, kind: str, default: float = 0.0) -> float:  # type: ignore[override]
        return self._values.get(kind, default)

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __hash__(self) -> int:
        return hash(frozenset(self._values.items()))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resources):
            return self._values == other._values
        if isinstance(other, Mapping):
            return self._values == {k: float(v) for k, v in other.items() if v}
        return NotImplemented

    def __add__(self, other: Mapping[str, float]) -> Resources:
        kinds = set(self) | set(other)
        return Resources({k: self.get(k) + other.get(k, 0.0) for k in kinds})

    def __sub__(self, other: Mapping[str, float]) -> Resources:
        return Resources({k: max(0.0, v - other.get(k, 0.0)) for k, v in self._values.items()})

    def __le__(self, other: Mapping[str, float]) -> bool:
        return self.fits_in(other)

    def fits_in(self, other: Mapping[str, float]) -> bool:
        """True if every quantity here is <= the same kind in ``other``."""
        return all(v <= other.get(k, 0.0) for k, v in self._values.items())

    def min_with(self, other: Mapping[str, float]) -> Resources:
        """Element-wise minimum."""
        return Resources({k: min(v, other.get(k, 0.0)) for k, v in self._values.items()})

    def scaled_distance(self, origin: Mapping[str, float] | None = None) -> float:
        """Euclidean distance from ``origin`` (zero by default) in scaled units."""
        origin = origin or {}
        kinds = set(self) | set(origin)
        return math.sqrt(sum(
            ((self.get(k) - origin.get(k, 0.0)) / _SCALES.get(k, 1.0)) ** 2
            for k in kinds
        ))

    @property
    def is_zero(self) -> bool:
        return not self._values

    def to_dict(self) -> dict[str, float]:
        return dict(self._values)

    def __repr__(self) -> str:
        parts = []
        for kind in sorted(self._values):
            value = self._values[kind]
            if kind in (MEM, DISK):
                parts.append(f"{kind}:{value / GiB:.1f}GiB")
            else:
                parts.append(f"{kind}:{value:g}")
        return "{" + " ".join(parts) + "}"


@dataclass(frozen=True, slots=True)
class Requirements:
    """An elastic request: at least ``min``, up to ``max``."""

    min: Resources
    max: Resources

    def __post_init__(self) -> None:
        if not self.min <= self.max:
            raise ValueError(f"requirement min {self.min} exceeds max {self.max}")

    @classmethod
    def exact(cls, resources: Resources) -> Requirements:
        return cls(min=resources, max=resources)

    def __str__(self) -> str:
        if self.min == self.max:
            return repr(self.min)
        return f"<{self.min!r}, {self.max!r}>"
