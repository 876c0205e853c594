from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
from conftest import FakeProvider

from nodeward.api import NodePoolKey
from nodeward.core.exceptions import ConfigurationError, ProviderError
from nodeward.providers.hetzner import Hetzner
from nodeward.providers.ovhcloud import OVHcloud
from nodeward.providers.provider import InstanceConfig
from nodeward.providers.registry import create_provider
from nodeward.providers.reliable import ReliableProvider, pool_scope
from nodeward.reliability import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    DeadLetterStore,
    MaxRetriesExceededError,
    NonRetryableError,
    RetryConfig,
    is_circuit_open,
)

pytestmark = [pytest.mark.unit]

KEY = NodePoolKey("default", "workers")
FAST = RetryConfig(max_retries=2, initial_backoff=0.001, max_backoff=0.002)


@dataclass
class FlakyProvider(FakeProvider):
    """Fails the first ``failures`` list calls with ``error``, then behaves."""

    failures: int = 0
    error: Exception = field(default_factory=lambda: ProviderError("HTTP 503: service unavailable"))
    delay: float = 0.0
    calls: int = 0

    async def list_instances(self, key: NodePoolKey):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise self.error
        return await super().list_instances(key)

    async def create_instance(self, config: InstanceConfig):
        if self.delay:
            await asyncio.sleep(self.delay)
        return await super().create_instance(config)


def wrap(inner: FakeProvider, **kwargs) -> ReliableProvider:
    kwargs.setdefault("retry", FAST)
    kwargs.setdefault("dead_letters", DeadLetterStore(10))
    return ReliableProvider(inner, rand=lambda: 0.0, **kwargs)


# ─── Retry ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    inner = FlakyProvider(failures=2)
    inner.seed(KEY, "workers-aaaa")
    provider = wrap(inner)

    instances = await provider.list_instances(KEY)

    assert [i.name for i in instances] == ["workers-aaaa"]
    assert inner.calls == 3
    assert len(provider.dead_letters) == 0
    assert provider.breaker.failure_count == 0


@pytest.mark.asyncio
async def test_exhausted_retries_are_dead_lettered_with_pool():
    inner = FlakyProvider(failures=10)
    provider = wrap(inner)

    with pytest.raises(MaxRetriesExceededError):
        await provider.list_instances(KEY)

    (op,) = provider.dead_letters.list()
    assert op.operation_type == "list_instances"
    assert op.retry_count == 2
    assert op.metadata == {"provider": "hetzner", "pool": "default/workers"}
    assert op.timestamp is not None


@pytest.mark.asyncio
async def test_non_retryable_error_fails_fast():
    inner = FakeProvider(resolve_errors={"flavor": ConfigurationError("server type 'cx99' not found")})
    provider = wrap(inner)

    with pool_scope(KEY), pytest.raises(NonRetryableError) as exc_info:
        await provider.resolve_flavor("cx99")

    assert isinstance(exc_info.value.error, ConfigurationError)
    assert inner.resolved == [("flavor", "cx99")]
    (op,) = provider.dead_letters.list_by_type("resolve_flavor")
    assert op.retry_count == 0
    assert op.metadata["pool"] == "default/workers"
    assert op.payload == {"name": "cx99", "region": ""}


@pytest.mark.asyncio
async def test_pool_metadata_absent_outside_scope():
    inner = FakeProvider(fail_delete={"srv-9"})
    provider = wrap(inner, retry=RetryConfig(max_retries=0))

    with pytest.raises(NonRetryableError):
        await provider.delete_instance("srv-9")

    (op,) = provider.dead_letters.list()
    assert op.metadata == {"provider": "hetzner"}
    assert op.payload == {"instance_id": "srv-9"}


# ─── Circuit breaker ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_breaker_opens_and_short_circuits_later_calls():
    inner = FlakyProvider(failures=100)
    breaker = CircuitBreaker(CircuitBreakerConfig(max_failures=2, reset_timeout=60), name="hetzner")
    provider = wrap(inner, breaker=breaker, retry=RetryConfig(
        max_retries=4, initial_backoff=0.001, max_backoff=0.002, retryable=None,
    ))

    with pytest.raises(MaxRetriesExceededError):
        await provider.list_instances(KEY)
    assert inner.calls == 2
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(NonRetryableError):
        await wrap(inner, breaker=breaker).list_instances(KEY)
    assert inner.calls == 2


@pytest.mark.asyncio
async def test_breaker_is_shared_across_operations():
    inner = FakeProvider(fail_delete={"a", "b"})
    breaker = CircuitBreaker(CircuitBreakerConfig(max_failures=2), name="hetzner")
    provider = wrap(inner, breaker=breaker, retry=RetryConfig(max_retries=0, retryable=None))

    for instance_id in ("a", "b"):
        with pytest.raises(MaxRetriesExceededError):
            await provider.delete_instance(instance_id)

    with pytest.raises(MaxRetriesExceededError) as exc_info:
        await provider.list_instances(KEY)
    assert is_circuit_open(exc_info.value)
    assert len(provider.dead_letters.list_by_type("list_instances")) == 1


# ─── Deadlines ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_call_timeout_bounds_the_whole_retry_loop():
    inner = FlakyProvider(delay=1.0)
    provider = wrap(inner, call_timeout=0.05)

    with pytest.raises(TimeoutError):
        await provider.list_instances(KEY)

    (op,) = provider.dead_letters.list()
    assert isinstance(op.error, TimeoutError)


@pytest.mark.asyncio
async def test_create_uses_provider_create_timeout():
    inner = FlakyProvider(delay=0.2, create_timeout=1.0)
    provider = wrap(inner, call_timeout=0.05)

    created = await provider.create_instance(InstanceConfig(
        name="workers-1a2b", flavor="cx22", image="ubuntu", location="fsn1",
    ))

    assert created.name == "workers-1a2b"
    assert provider.create_timeout == 1.0


@pytest.mark.asyncio
async def test_full_dead_letter_store_does_not_mask_error():
    inner = FlakyProvider(failures=100)
    provider = wrap(inner, dead_letters=DeadLetterStore(1), retry=RetryConfig(max_retries=0))

    for _ in range(2):
        with pytest.raises(MaxRetriesExceededError):
            await provider.list_instances(KEY)

    assert len(provider.dead_letters) == 1


@pytest.mark.asyncio
async def test_close_and_identity_delegate():
    inner = FakeProvider(name="ovhcloud")
    provider = wrap(inner)
    assert provider.name == "ovhcloud"
    assert provider.inner is inner
    await provider.close()
    assert inner.closed


# ─── Registry ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_registry_builds_hetzner(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HCLOUD_TOKEN", "b" * 64)
    provider = await create_provider(Hetzner())
    try:
        assert provider.name == "hetzner"
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_registry_rejects_missing_credentials(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("HCLOUD_TOKEN", raising=False)
    for var in ("OVH_APPLICATION_KEY", "OVH_APPLICATION_SECRET", "OVH_CONSUMER_KEY", "OVH_PROJECT_ID"):
        monkeypatch.delenv(var, raising=False)

    with pytest.raises(ConfigurationError):
        await create_provider(Hetzner())
    with pytest.raises(ConfigurationError):
        await create_provider(Hetzner(token="too-short"))
    with pytest.raises(ConfigurationError, match="OVHcloud credentials missing"):
        await create_provider(OVHcloud())


@pytest.mark.asyncio
async def test_registry_rejects_unknown_config():
    with pytest.raises(ConfigurationError, match="No provider registered for dict"):
        await create_provider({"kind": "aws"})  # type: ignore[arg-type]
