from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from casty import ActorSystem, Behavior, Behaviors
from conftest import FakeProvider, make_pool

from nodeward.actors.controller import NodePoolController, pool_worker_actor
from nodeward.actors.messages import Forget, Reconcile, Retired, Trigger
from nodeward.api import NodePoolKey
from nodeward.core.exceptions import ReconcileError
from nodeward.reconciler import NodePoolReconciler, ReconcileResult
from nodeward.store import InMemoryNodePoolStore

pytestmark = [pytest.mark.unit]

WORKERS = NodePoolKey("default", "workers")
BATCH = NodePoolKey("jobs", "batch")


class RecordingReconciler:
    """Stands in for NodePoolReconciler; optionally blocks each pass on ``gate``."""

    def __init__(
        self,
        store: InMemoryNodePoolStore,
        *,
        gate: asyncio.Event | None = None,
        failures: int = 0,
    ) -> None:
        self.store = store
        self.gate = gate
        self.failures = failures
        self.calls: list[NodePoolKey] = []

    async def reconcile(self, key: NodePoolKey) -> ReconcileResult:
        self.calls.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise ReconcileError("Error", "HTTP 503: service unavailable")
        if await self.store.get(key) is None:
            return ReconcileResult(key, action="absent")
        return ReconcileResult(key)


async def eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def collector_behavior(collected: list) -> Behavior:
    async def receive(ctx, msg):
        collected.append(msg)
        return Behaviors.same()
    return Behaviors.receive(receive)


# ─── Lifecycle ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_triggers_known_pools():
    store = InMemoryNodePoolStore(make_pool("workers"), make_pool("batch", "jobs"))
    reconciler = RecordingReconciler(store)

    async with NodePoolController(reconciler, interval=60, store=store) as controller:
        await eventually(lambda: set(reconciler.calls) == {WORKERS, BATCH})
        assert await controller.pools() == frozenset({WORKERS, BATCH})

    assert not controller.running


@pytest.mark.asyncio
async def test_trigger_requires_running_controller():
    controller = NodePoolController(RecordingReconciler(InMemoryNodePoolStore()))
    with pytest.raises(RuntimeError):
        await controller.trigger(WORKERS)
    assert await controller.pools() == frozenset()


# ─── Work queue ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_triggers_during_a_pass_coalesce():
    store = InMemoryNodePoolStore(make_pool("workers"))
    gate = asyncio.Event()
    reconciler = RecordingReconciler(store, gate=gate)

    async with NodePoolController(reconciler, interval=60) as controller:
        await controller.trigger(WORKERS)
        await eventually(lambda: len(reconciler.calls) == 1)

        for _ in range(5):
            await controller.trigger(WORKERS)
        await asyncio.sleep(0.05)
        assert len(reconciler.calls) == 1

        gate.set()
        await eventually(lambda: len(reconciler.calls) == 2)
        await asyncio.sleep(0.1)
        assert len(reconciler.calls) == 2


@pytest.mark.asyncio
async def test_pool_is_requeued_after_interval():
    store = InMemoryNodePoolStore(make_pool("workers"))
    reconciler = RecordingReconciler(store)

    async with NodePoolController(reconciler, interval=0.05) as controller:
        await controller.trigger(WORKERS)
        await eventually(lambda: len(reconciler.calls) >= 3)


@pytest.mark.asyncio
async def test_failed_pass_is_retried_after_interval():
    store = InMemoryNodePoolStore(make_pool("workers"))
    reconciler = RecordingReconciler(store, failures=1)

    async with NodePoolController(reconciler, interval=0.05) as controller:
        await controller.trigger(WORKERS)
        await eventually(lambda: len(reconciler.calls) >= 2)
        assert reconciler.failures == 0


@pytest.mark.asyncio
async def test_pools_run_independently():
    store = InMemoryNodePoolStore(make_pool("workers"), make_pool("batch", "jobs"))
    gate = asyncio.Event()
    blocked = RecordingReconciler(store, gate=gate)

    async with NodePoolController(blocked, interval=60) as controller:
        await controller.trigger(WORKERS)
        await controller.trigger(BATCH)
        await eventually(lambda: set(blocked.calls) == {WORKERS, BATCH})
        gate.set()


@pytest.mark.asyncio
async def test_worker_stops_once_pool_is_gone():
    store = InMemoryNodePoolStore(make_pool("workers", finalizer=False))
    reconciler = RecordingReconciler(store)

    async with NodePoolController(reconciler, interval=60) as controller:
        await controller.trigger(WORKERS)
        await eventually(lambda: len(reconciler.calls) == 1)
        assert await controller.pools() == frozenset({WORKERS})

        store.request_delete(WORKERS)
        await controller.trigger(WORKERS)
        await eventually(lambda: len(reconciler.calls) == 2)

        for _ in range(100):
            if not await controller.pools():
                break
            await asyncio.sleep(0.01)
        assert await controller.pools() == frozenset()

        # A later event spawns a fresh worker.
        store.put(make_pool("workers"))
        await controller.trigger(WORKERS)
        await eventually(lambda: len(reconciler.calls) == 3)


@pytest.mark.asyncio
async def test_retiring_worker_hands_triggers_back():
    reconciler = RecordingReconciler(InMemoryNodePoolStore())
    received: list = []

    async with ActorSystem("test-worker") as system:
        controller = system.spawn(collector_behavior(received), "controller")
        worker = system.spawn(pool_worker_actor(WORKERS, reconciler, controller, 60), "worker")

        worker.tell(Reconcile())
        await eventually(lambda: received == [Forget(WORKERS)])

        # Routed by the controller before it handled Forget.
        worker.tell(Reconcile())
        await eventually(lambda: len(received) == 2)
        assert received[1] == Trigger(WORKERS)
        assert len(reconciler.calls) == 1

        worker.tell(Retired())
        await asyncio.sleep(0.05)
        worker.tell(Reconcile())
        await asyncio.sleep(0.05)
        assert len(received) == 2


# ─── End to end ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_controller_drives_real_reconciler(
    reconciler: NodePoolReconciler,
    store: InMemoryNodePoolStore,
    provider: FakeProvider,
):
    store.put(make_pool("workers", min_nodes=2))

    async with NodePoolController(reconciler, interval=60, store=store):
        await eventually(lambda: len(provider.created) == 2)
        await eventually(lambda: store.status_writes >= 1)

    assert all(c.name.startswith("workers-") for c in provider.created)
