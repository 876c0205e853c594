"""Messages of the controller and its per-pool workers.

The type unions are the actors' public API: ``ControllerMsg`` for the
controller, ``WorkerMsg`` for a pool worker. Underscored messages are
internal and only ever sent by an actor to itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from casty import ActorRef

from nodeward.api import NodePoolKey
from nodeward.reconciler import ReconcileResult

# =============================================================================
# Controller
# =============================================================================


@dataclass(frozen=True, slots=True)
class Trigger:
    """Ask for a pass of ``key`` as soon as its worker is free."""

    key: NodePoolKey


@dataclass(frozen=True, slots=True)
class Forget:
    """Drop the worker of a pool that no longer exists. Sent by the worker itself."""

    key: NodePoolKey


@dataclass(frozen=True, slots=True)
class GetPools:
    reply_to: ActorRef[frozenset[NodePoolKey]]


@dataclass(frozen=True, slots=True)
class StopController:
    reply_to: ActorRef[ControllerStopped]


@dataclass(frozen=True, slots=True)
class ControllerStopped:
    pools: int


type ControllerMsg = Trigger | Forget | GetPools | StopController


# =============================================================================
# Pool worker
# =============================================================================


@dataclass(frozen=True, slots=True)
class Reconcile:
    """Run a pass now, or right after the running one."""


@dataclass(frozen=True, slots=True)
class Retired:
    """The controller dropped this worker; it may stop now."""


@dataclass(frozen=True, slots=True)
class _Tick:
    generation: int


@dataclass(frozen=True, slots=True)
class _PassDone:
    result: ReconcileResult


@dataclass(frozen=True, slots=True)
class _PassFailed:
    error: str


type WorkerMsg = Reconcile | Retired | _Tick | _PassDone | _PassFailed
