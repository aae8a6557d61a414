"""AWS client factories with dependency injection."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from injector import Binder, Module, provider, singleton

from cirrus.config import ClusterConfig

type Client[T] = Callable[[], AbstractAsyncContextManager[T]]
"""Factory that returns an async context manager for a client."""


class EC2ClientFactory:
    """Wrapper for EC2 client factory (unique type for DI)."""

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class AWSModule(Module):
    """DI module that provides the aioboto3 session and EC2 client factory.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([AWSModule(config)])
        >>> provider = injector.get(EC2Provider)
    """

    def __init__(self, config: ClusterConfig) -> None:
        self._config = config

    def configure(self, binder: Binder) -> None:
        binder.bind(ClusterConfig, to=self._config)

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        return aioboto3.Session()

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: ClusterConfig) -> EC2ClientFactory:
        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client("ec2", region_name=config.region) as client:
                yield client
        return EC2ClientFactory(factory)


__all__ = [
    "AWSModule",
    "Client",
    "EC2ClientFactory",
]
