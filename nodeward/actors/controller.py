"""Work queue of reconcile passes, one actor per pool.

The controller actor routes triggers to a worker keyed by pool identity.
A worker runs at most one pass at a time: triggers that arrive while a
pass is running collapse into a single follow-up pass, and after every
pass the worker requeues itself after the reconcile interval. Workers for
different pools run concurrently.

A worker whose pool is gone asks the controller to forget it and stops
only once the controller acknowledges. Triggers routed to it in between
are handed back to the controller.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

from casty import ActorContext, ActorRef, ActorSystem, Behavior, Behaviors, CastyConfig
from loguru import logger

from nodeward.actors.messages import (
    ControllerMsg,
    ControllerStopped,
    Forget,
    GetPools,
    Reconcile,
    Retired,
    StopController,
    Trigger,
    WorkerMsg,
    _PassDone,
    _PassFailed,
    _Tick,
)
from nodeward.api import NodePoolKey
from nodeward.reconciler import RECONCILE_INTERVAL, NodePoolReconciler
from nodeward.store import NodePoolStore

log = logger.bind(component="controller")


def _actor_name(key: NodePoolKey) -> str:
    return "pool-" + re.sub(r"[^a-zA-Z0-9-]", "-", f"{key.namespace}-{key.name}")


# =============================================================================
# Pool worker
# =============================================================================


@dataclass(frozen=True, slots=True)
class _WorkerState:
    generation: int = 0
    dirty: bool = False


def pool_worker_actor(
    key: NodePoolKey,
    reconciler: NodePoolReconciler,
    controller: ActorRef[ControllerMsg],
    interval: float = RECONCILE_INTERVAL,
) -> Behavior[WorkerMsg]:
    wlog = log.bind(pool=str(key))

    def _schedule(ctx: ActorContext[WorkerMsg], delay: float, generation: int) -> None:
        async def _tick() -> _Tick:
            await asyncio.sleep(delay)
            return _Tick(generation)

        ctx.pipe_to_self(
            _tick(),
            mapper=lambda r: r,
            on_failure=lambda _: _Tick(generation),
        )

    def _start(ctx: ActorContext[WorkerMsg], s: _WorkerState) -> Behavior[WorkerMsg]:
        ctx.pipe_to_self(
            reconciler.reconcile(key),
            mapper=lambda result: _PassDone(result),
            on_failure=lambda err: _PassFailed(str(err)),
        )
        return running(_WorkerState(generation=s.generation + 1))

    def idle(s: _WorkerState) -> Behavior[WorkerMsg]:
        async def receive(ctx: ActorContext[WorkerMsg], msg: WorkerMsg) -> Behavior[WorkerMsg]:
            match msg:
                case Reconcile():
                    return _start(ctx, s)
                case _Tick(generation=g) if g == s.generation:
                    return _start(ctx, s)
            return Behaviors.same()

        return Behaviors.receive(receive)

    def running(s: _WorkerState) -> Behavior[WorkerMsg]:
        async def receive(ctx: ActorContext[WorkerMsg], msg: WorkerMsg) -> Behavior[WorkerMsg]:
            match msg:
                case Reconcile():
                    return running(_WorkerState(generation=s.generation, dirty=True))

                case _PassDone(result=result):
                    if result.action in ("absent", "finalized") and not s.dirty:
                        wlog.info("Pool gone, retiring worker")
                        controller.tell(Forget(key))
                        return retiring()
                    if s.dirty:
                        return _start(ctx, s)
                    _schedule(ctx, result.requeue_after or interval, s.generation)
                    return idle(s)

                case _PassFailed(error=error):
                    wlog.warning("Pass failed, retrying in {delay}s: {err}", delay=interval, err=error)
                    if s.dirty:
                        return _start(ctx, s)
                    _schedule(ctx, interval, s.generation)
                    return idle(s)

            return Behaviors.same()

        return Behaviors.receive(receive)

    def retiring() -> Behavior[WorkerMsg]:
        # Triggers routed here before the controller saw Forget go back to it.
        async def receive(ctx: ActorContext[WorkerMsg], msg: WorkerMsg) -> Behavior[WorkerMsg]:
            match msg:
                case Reconcile():
                    controller.tell(Trigger(key))
                case Retired():
                    return Behaviors.stopped()
            return Behaviors.same()

        return Behaviors.receive(receive)

    async def setup(ctx: ActorContext[WorkerMsg]) -> Behavior[WorkerMsg]:
        return idle(_WorkerState())

    return Behaviors.setup(setup)


# =============================================================================
# Controller
# =============================================================================


def controller_actor(
    reconciler: NodePoolReconciler,
    interval: float = RECONCILE_INTERVAL,
) -> Behavior[ControllerMsg]:

    def active(
        workers: dict[NodePoolKey, ActorRef[WorkerMsg]], spawned: int,
    ) -> Behavior[ControllerMsg]:
        async def receive(
            ctx: ActorContext[ControllerMsg], msg: ControllerMsg,
        ) -> Behavior[ControllerMsg]:
            match msg:
                case Trigger(key=key):
                    ref = workers.get(key)
                    if ref is None:
                        ref = ctx.spawn(
                            pool_worker_actor(key, reconciler, ctx.self, interval),
                            f"{_actor_name(key)}-{spawned}",
                        )
                        log.debug("Worker spawned for {pool}", pool=str(key))
                        workers = {**workers, key: ref}
                        spawned += 1
                    ref.tell(Reconcile())
                    return active(workers, spawned)

                case Forget(key=key):
                    if (ref := workers.get(key)) is not None:
                        ref.tell(Retired())
                    return active({k: v for k, v in workers.items() if k != key}, spawned)

                case GetPools(reply_to=reply_to):
                    reply_to.tell(frozenset(workers))
                    return Behaviors.same()

                case StopController(reply_to=reply_to):
                    log.info("Controller stopping with {n} pools", n=len(workers))
                    reply_to.tell(ControllerStopped(pools=len(workers)))
                    return Behaviors.stopped()

            return Behaviors.same()

        return Behaviors.receive(receive)

    return active({}, 0)


class NodePoolController:
    """Runs reconcile passes for every known pool on a casty actor system.

    Example:
        controller = NodePoolController(reconciler, interval=30)
        await controller.start()
        await controller.trigger(NodePoolKey("default", "workers"))
        ...
        await controller.stop()
    """

    def __init__(
        self,
        reconciler: NodePoolReconciler,
        *,
        interval: float = RECONCILE_INTERVAL,
        store: NodePoolStore | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._interval = interval
        self._store = store
        self._system: ActorSystem | None = None
        self._ref: ActorRef[ControllerMsg] | None = None

    @property
    def running(self) -> bool:
        return self._system is not None

    async def start(self) -> None:
        """Start the actor system and trigger every pool already in the store."""
        if self._system is not None:
            return
        self._system = ActorSystem("nodeward", config=CastyConfig(
            suppress_dead_letters_on_shutdown=True
        ))
        await self._system.__aenter__()
        self._ref = self._system.spawn(
            controller_actor(self._reconciler, self._interval), "controller",
        )
        log.info("Controller started (interval={interval}s)", interval=self._interval)

        if self._store is not None:
            for key in await self._store.keys():
                self._ref.tell(Trigger(key))

    async def trigger(self, key: NodePoolKey) -> None:
        """Queue a pass for ``key``. Repeat triggers while a pass runs coalesce."""
        if self._ref is None:
            raise RuntimeError("Controller is not running")
        self._ref.tell(Trigger(key))

    async def pools(self) -> frozenset[NodePoolKey]:
        if self._system is None or self._ref is None:
            return frozenset()
        return await self._system.ask(
            self._ref, lambda reply_to: GetPools(reply_to=reply_to), timeout=5.0,
        )

    async def stop(self) -> None:
        if self._system is None:
            return
        if self._ref is not None:
            await self._system.ask(
                self._ref,
                lambda reply_to: StopController(reply_to=reply_to),
                timeout=10.0,
            )
        await self._system.__aexit__(None, None, None)
        self._system = None
        self._ref = None
        log.info("Controller stopped")

    async def __aenter__(self) -> NodePoolController:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
