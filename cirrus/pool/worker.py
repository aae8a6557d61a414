"""Handles to the worker agent running on each cluster instance."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, runtime_checkable

from cirrus.errors import AllocationError
from cirrus.pool.http import Auth, HttpClient, HttpError
from cirrus.resources import Requirements, Resources
from cirrus.state import LiveInstance

type Labels = Mapping[str, str]

DEFAULT_WORKER_PORT = 9000


@dataclass(frozen=True, slots=True)
class Alloc:
    """A reservation of resources on one worker."""

    id: str
    instance_id: str
    resources: Resources
    labels: Labels = field(default_factory=lambda: MappingProxyType({}))


@runtime_checkable
class WorkerPool(Protocol):
    """Capacity offered by a single instance."""

    @property
    def instance_id(self) -> str: ...

    async def resources(self) -> Resources:
        """Currently unallocated resources."""
        ...

    async def allocate(self, requirements: Requirements, labels: Labels) -> Alloc: ...

    async def close(self) -> None: ...


class HttpWorkerPool:
    """Worker agent reached at ``https://{dns}:{port}/v1``.

    ``GET /`` reports available resources, ``POST /allocs`` reserves them.
    """

    def __init__(
        self,
        instance: LiveInstance,
        *,
        port: int = DEFAULT_WORKER_PORT,
        auth: Auth | None = None,
        timeout: float = 30,
        scheme: str = "https",
    ) -> None:
        if not instance.dns:
            raise ValueError(f"instance {instance.id} has no address")
        self._instance_id = instance.id
        self._client = HttpClient(f"{scheme}://{instance.dns}:{port}/v1", auth, timeout=timeout)

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def url(self) -> str:
        return self._client.base_url

    async def resources(self) -> Resources:
        data = await self._client.get("/")
        return Resources(data.get("available", {}))

    async def allocate(self, requirements: Requirements, labels: Labels) -> Alloc:
        try:
            data = await self._client.post("/allocs", json={
                "min": requirements.min.to_dict(),
                "max": requirements.max.to_dict(),
                "labels": dict(labels),
            })
        except HttpError as e:
            raise AllocationError(f"{self._instance_id}: {e}") from e
        match data:
            case {"id": str() | int() as alloc_id}:
                return Alloc(
                    id=str(alloc_id),
                    instance_id=self._instance_id,
                    resources=Resources(data.get("resources") or {}),
                    labels=MappingProxyType(dict(labels)),
                )
            case _:
                raise AllocationError(f"{self._instance_id}: malformed allocation reply {data!r}")

    async def close(self) -> None:
        await self._client.close()

    def __repr__(self) -> str:
        return f"HttpWorkerPool({self.url})"
