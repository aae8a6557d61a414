"""Instance type selection with temporary demotion of unavailable types.

When EC2 refuses to launch a type (capacity exhaustion, spot price too
low), the type is demoted for a cool-down window and selection falls back
to the next best type. Expiry is checked lazily during selection.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping

from cirrus.catalog import InstanceShape
from cirrus.observability.logger import logger

log = logger.bind(component="availability")

DEFAULT_DEMOTION_WINDOW = 300.0


class AvailabilityTracker:
    """Selects the smallest admissible shape for a resource need.

    Args:
        shapes: Admissible shapes. Must not be empty.
        region: Region the shapes are launched in.
        demotion_window: Seconds a demoted shape stays ineligible.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        shapes: Iterable[InstanceShape],
        region: str,
        demotion_window: float = DEFAULT_DEMOTION_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._region = region
        self._window = demotion_window
        self._clock = clock
        self._shapes = tuple(sorted(
            shapes,
            key=lambda s: (s.resources.scaled_distance(), s.type),
        ))
        self._demoted_until: dict[str, float] = {}

    @property
    def shapes(self) -> tuple[InstanceShape, ...]:
        return self._shapes

    def _available(self, shape: InstanceShape, now: float) -> bool:
        until = self._demoted_until.get(shape.type)
        if until is None:
            return True
        if now >= until:
            del self._demoted_until[shape.type]
            return True
        return False

    def select_minimal(self, need: Mapping[str, float], spot_only: bool = False) -> InstanceShape | None:
        """Smallest available shape whose resources cover ``need``."""
        now = self._clock()
        for shape in self._shapes:
            if spot_only and not shape.spot:
                continue
            if not self._available(shape, now):
                continue
            if all(v <= shape.resources.get(k) for k, v in need.items()):
                return shape
        return None

    def demote(self, shape: InstanceShape) -> None:
        log.info(
            "Instance type {type} unavailable in {region}, demoted for {window:.0f}s",
            type=shape.type, region=self._region, window=self._window,
        )
        self._demoted_until[shape.type] = self._clock() + self._window

    def is_demoted(self, shape: InstanceShape) -> bool:
        return not self._available(shape, self._clock())

    def is_satisfiable(self, need: Mapping[str, float]) -> bool:
        """True if some admissible shape could ever cover ``need``."""
        return any(
            all(v <= shape.resources.get(k) for k, v in need.items())
            for shape in self._shapes
        )
