from cirrus.providers.base import DEAD_STATES, LaunchParams, Provider

__all__ = [
    "DEAD_STATES",
    "LaunchParams",
    "Provider",
]
