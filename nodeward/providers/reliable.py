"""Fault-tolerant wrapper around a CloudProvider.

Every call runs through the retry executor with each attempt re-entering
the provider's shared circuit breaker, under a per-call deadline. Calls
that still fail are recorded in the dead letter store and re-raised.

Example:
    inner = await create_provider(Hetzner())
    provider = ReliableProvider(
        inner,
        breaker=CircuitBreaker(name=inner.name),
        dead_letters=store,
    )
    with pool_scope(key):
        await provider.list_instances(key)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from loguru import logger

from nodeward.api import Instance, NodePoolKey
from nodeward.reliability import (
    CircuitBreaker,
    DeadLetterQueueFullError,
    DeadLetterStore,
    FailedOperation,
    MaxRetriesExceededError,
    NonRetryableError,
    RetryConfig,
    retry_with_breaker,
)
from nodeward.reliability.backoff import RandomSource

from .provider import CloudProvider, FirewallRuleSpec, InstanceConfig

DEFAULT_CALL_TIMEOUT = 60.0

_current_pool: ContextVar[NodePoolKey | None] = ContextVar("nodeward_pool", default=None)


@contextmanager
def pool_scope(key: NodePoolKey) -> Iterator[None]:
    """Attribute provider calls made inside the block to ``key``."""
    token = _current_pool.set(key)
    try:
        yield
    finally:
        _current_pool.reset(token)


class ReliableProvider:
    """CloudProvider decorator adding retry, circuit breaking and dead letters.

    One instance per provider client. The breaker is shared by every pool
    that uses the provider.
    """

    def __init__(
        self,
        inner: CloudProvider,
        *,
        retry: RetryConfig | None = None,
        breaker: CircuitBreaker | None = None,
        dead_letters: DeadLetterStore | None = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        cancel: asyncio.Event | None = None,
        rand: RandomSource = random.random,
    ) -> None:
        self._inner = inner
        self._retry = retry or RetryConfig()
        self.breaker = breaker or CircuitBreaker(name=inner.name)
        self.dead_letters = dead_letters
        self._call_timeout = call_timeout
        self._cancel = cancel
        self._rand = rand
        self._log = logger.bind(component="reliable-provider", provider=inner.name)

    @property
    def name(self) -> str:
        return self._inner.name

    @property
    def create_timeout(self) -> float | None:
        return self._inner.create_timeout

    @property
    def inner(self) -> CloudProvider:
        return self._inner

    async def _call[T](
        self,
        operation_type: str,
        operation: Callable[[], Awaitable[T]],
        payload: Any,
        *,
        timeout: float | None = None,
    ) -> T:
        attempts = 0

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return await operation()

        try:
            async with asyncio.timeout(timeout or self._call_timeout):
                return await retry_with_breaker(
                    self._retry, self.breaker, attempt, cancel=self._cancel, rand=self._rand,
                )
        except (MaxRetriesExceededError, NonRetryableError, TimeoutError) as e:
            self._record(operation_type, e, payload, attempts)
            raise

    def _record(self, operation_type: str, error: BaseException, payload: Any, attempts: int) -> None:
        metadata = {"provider": self.name}
        if (pool := _current_pool.get()) is not None:
            metadata["pool"] = str(pool)

        self._log.warning(
            "{operation} gave up after {attempts} attempts: {error}",
            operation=operation_type, attempts=attempts, error=error,
        )
        if self.dead_letters is None:
            return
        try:
            self.dead_letters.add(FailedOperation(
                operation_type=operation_type,
                error=error,
                payload=payload,
                retry_count=max(attempts - 1, 0),
                metadata=metadata,
            ))
        except DeadLetterQueueFullError as full:
            self._log.error("Dropping failed {operation}: {reason}", operation=operation_type, reason=full)

    # ─── CloudProvider ───────────────────────────────────────────────

    async def list_instances(self, key: NodePoolKey) -> list[Instance]:
        with pool_scope(key):
            return await self._call(
                "list_instances", lambda: self._inner.list_instances(key), {"pool": str(key)},
            )

    async def create_instance(self, config: InstanceConfig) -> Instance:
        return await self._call(
            "create_instance",
            lambda: self._inner.create_instance(config),
            config,
            timeout=self._inner.create_timeout,
        )

    async def delete_instance(self, instance_id: str) -> None:
        await self._call(
            "delete_instance",
            lambda: self._inner.delete_instance(instance_id),
            {"instance_id": instance_id},
        )

    async def get_instance(self, instance_id: str) -> Instance:
        return await self._call(
            "get_instance",
            lambda: self._inner.get_instance(instance_id),
            {"instance_id": instance_id},
        )

    async def resolve_flavor(self, name: str, *, region: str = "") -> str:
        return await self._call(
            "resolve_flavor",
            lambda: self._inner.resolve_flavor(name, region=region),
            {"name": name, "region": region},
        )

    async def resolve_image(self, name: str, *, region: str = "") -> str:
        return await self._call(
            "resolve_image",
            lambda: self._inner.resolve_image(name, region=region),
            {"name": name, "region": region},
        )

    async def resolve_network(self, name: str, *, region: str = "") -> str:
        return await self._call(
            "resolve_network",
            lambda: self._inner.resolve_network(name, region=region),
            {"name": name, "region": region},
        )

    async def resolve_ssh_key(self, name: str) -> str:
        return await self._call(
            "resolve_ssh_key", lambda: self._inner.resolve_ssh_key(name), {"name": name},
        )

    async def get_or_create_firewall(
        self, name: str, rules: Sequence[FirewallRuleSpec],
    ) -> str | None:
        return await self._call(
            "get_or_create_firewall",
            lambda: self._inner.get_or_create_firewall(name, rules),
            {"name": name, "rules": tuple(rules)},
        )

    async def close(self) -> None:
        await self._inner.close()
