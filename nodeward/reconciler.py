"""Reconciliation engine for node pools.

One ``reconcile(key)`` call is one pass: fetch the descriptor, handle a
pending deletion, make sure the finalizer is set, observe the provider,
decide the desired size, act on the difference and publish status.

Every pass-level failure is written into the pool's status (phase plus a
``Ready=False`` condition) before ``ReconcileError`` is raised. Drain and
cordon failures never fail a pass: they are returned as warnings.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Final, Literal, NoReturn

from loguru import logger

from nodeward.api import Condition, Instance, NodePool, NodePoolKey, NodePoolSpec, NodePoolStatus
from nodeward.bootstrap import resolve_join_script
from nodeward.cluster import ClusterClient
from nodeward.core.exceptions import ConfigurationError, ReconcileError
from nodeward.observability.metrics import MetricsCollector
from nodeward.providers.provider import (
    CloudProvider,
    InstanceConfig,
    firewall_specs,
    instance_name,
    ownership_labels,
)
from nodeward.providers.reliable import pool_scope
from nodeward.store import NodePoolStore

log = logger.bind(component="reconciler")

RECONCILE_INTERVAL: Final = 30.0
MAX_CONDITIONS: Final = 10
READY_STATUSES: Final = frozenset({"running", "active"})

PHASE_READY: Final = "Ready"
PHASE_ERROR: Final = "Error"
PHASE_SCALE_UP_FAILED: Final = "ScaleUpFailed"
PHASE_SCALE_DOWN_FAILED: Final = "ScaleDownFailed"
PHASE_DELETING: Final = "Deleting"

type Action = Literal["none", "absent", "scale_up", "scale_down", "finalized"]
type Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class DrainOutcome:
    """Best-effort drain of one node. Warnings mean a step failed and was skipped."""

    node: str
    cordoned: bool = False
    evicted: int = 0
    node_deleted: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.warnings


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    key: NodePoolKey
    action: Action = "none"
    desired: int | None = None
    created: tuple[str, ...] = ()
    deleted: tuple[str, ...] = ()
    drains: tuple[DrainOutcome, ...] = ()
    phase: str = ""
    requeue_after: float | None = None

    @property
    def warnings(self) -> tuple[str, ...]:
        return tuple(w for d in self.drains for w in d.warnings)


# =============================================================================
# Desired capacity
# =============================================================================


def compute_desired(spec: NodePoolSpec, current: int, pending: int) -> int:
    """Desired pool size, clamped to ``[min_nodes, max_nodes]``.

    A positive ``target_nodes`` wins. Otherwise autoscaling grows by one
    when ``pending >= scale_up_threshold`` and shrinks by one when nothing
    is pending and the pool is above its minimum.
    """
    desired = spec.min_nodes
    if spec.target_nodes > 0:
        desired = spec.target_nodes
    elif spec.auto_scaling_enabled:
        if pending >= spec.scale_up_threshold:
            desired = current + 1
        elif current > spec.min_nodes and pending == 0:
            desired = current - 1
        else:
            desired = current
    return clamp(spec, desired)


def clamp(spec: NodePoolSpec, size: int) -> int:
    return max(spec.min_nodes, min(size, spec.max_nodes))


def is_ready(instance: Instance) -> bool:
    return instance.status.lower() in READY_STATUSES


def _with_condition(
    conditions: Sequence[Condition], condition: Condition,
) -> tuple[Condition, ...]:
    return (*conditions, condition)[-MAX_CONDITIONS:]


def _last_ready(conditions: Sequence[Condition]) -> Condition | None:
    return next((c for c in reversed(conditions) if c.type == "Ready"), None)


# =============================================================================
# Reconciler
# =============================================================================


class NodePoolReconciler:
    """Drives one pool at a time towards its desired size.

    Args:
        store: Where descriptors and status live.
        providers: Provider per ``spec.provider`` name. Normally wrapped in
            ReliableProvider so every call retries through the shared breaker.
        cluster: Pending pod count, drain and join secrets.
        metrics: Optional metrics sink.
        interval: Requeue delay returned with every result.
    """

    def __init__(
        self,
        store: NodePoolStore,
        providers: Mapping[str, CloudProvider],
        cluster: ClusterClient,
        metrics: MetricsCollector | None = None,
        *,
        interval: float = RECONCILE_INTERVAL,
        clock: Clock = _now,
    ) -> None:
        self._store = store
        self._providers = providers
        self._cluster = cluster
        self._metrics = metrics
        self._interval = interval
        self._clock = clock

    async def reconcile(self, key: NodePoolKey) -> ReconcileResult:
        """Run one pass for ``key``.

        Raises:
            ReconcileError: The pass failed; the failure is already in status.
        """
        with logger.contextualize(pool=str(key)), pool_scope(key):
            pool = await self._store.get(key)
            if pool is None:
                log.debug("NodePool not found, assuming it was deleted")
                return ReconcileResult(key, action="absent")

            if pool.is_deleting:
                return await self._finalize(pool)

            if not pool.has_finalizer:
                updated = await self._store.update(pool.with_finalizer())
                if updated is None:
                    return ReconcileResult(key, action="absent")
                pool = updated
                log.debug("Finalizer added")

            return await self._reconcile(pool)

    # ─── Normal pass ────────────────────────────────────────────────

    async def _reconcile(self, pool: NodePool) -> ReconcileResult:
        key = pool.key
        try:
            pool.spec.validate()
            provider = self._provider_for(pool)
            instances = await provider.list_instances(key)
        except Exception as e:
            await self._fail(pool, PHASE_ERROR, e)

        ready = sum(1 for i in instances if is_ready(i))
        observed = replace(
            pool.status,
            current_nodes=len(instances),
            ready_nodes=ready,
            nodes=tuple(i.name for i in instances),
        )
        pool = pool.with_status(observed)

        current = len(instances)
        pending = await self._pending_pods(pool.spec)
        if pending is None:
            desired = clamp(pool.spec, current)
        else:
            desired = compute_desired(pool.spec, current, pending)
        log.debug(
            "current={current} ready={ready} pending={pending} desired={desired}",
            current=current, ready=ready, pending=pending, desired=desired,
        )

        action: Action = "none"
        created: list[str] = []
        deleted: list[str] = []
        drains: list[DrainOutcome] = []
        last_scale = pool.status.last_scale_time

        if current < desired:
            action = "scale_up"
            count = desired - current
            log.info("Scaling up from {current} to {desired}", current=current, desired=desired)
            try:
                await self._scale_up(pool, provider, count, created)
            except Exception as e:
                await self._fail(pool, PHASE_SCALE_UP_FAILED, e)
            last_scale = self._clock()
            if self._metrics:
                self._metrics.record_scale_up(key, count)

        elif current > desired:
            action = "scale_down"
            count = current - desired
            log.info("Scaling down from {current} to {desired}", current=current, desired=desired)
            try:
                for instance in instances[:count]:
                    drains.append(await self._retire(provider, instance))
                    deleted.append(instance.name)
            except Exception as e:
                await self._fail(pool, PHASE_SCALE_DOWN_FAILED, e)
            last_scale = self._clock()
            if self._metrics:
                self._metrics.record_scale_down(key, count)

        status = self._ready_status(pool.status, last_scale)
        await self._store.update_status(pool.with_status(status))
        if self._metrics:
            self._metrics.record_pool_size(key, status.current_nodes, status.ready_nodes)

        return ReconcileResult(
            key,
            action=action,
            desired=desired,
            created=tuple(created),
            deleted=tuple(deleted),
            drains=tuple(drains),
            phase=PHASE_READY,
            requeue_after=self._interval,
        )

    def _ready_status(self, status: NodePoolStatus, last_scale: datetime | None) -> NodePoolStatus:
        conditions = status.conditions
        previous = _last_ready(conditions)
        if previous is None or previous.status != "True":
            conditions = _with_condition(conditions, Condition(
                type="Ready", status="True", reason=PHASE_READY,
                message="node pool reconciled", last_transition_time=self._clock(),
            ))
        return replace(
            status, last_scale_time=last_scale, conditions=conditions, phase=PHASE_READY, message="",
        )

    def _provider_for(self, pool: NodePool) -> CloudProvider:
        provider = self._providers.get(pool.spec.provider)
        if provider is None:
            raise ConfigurationError(f"no provider configured for {pool.spec.provider!r}")
        return provider

    async def _pending_pods(self, spec: NodePoolSpec) -> int | None:
        """Cluster-wide pending pods, only consulted when autoscaling decides.

        None when the lookup failed; the pool then holds its current size.
        """
        if spec.target_nodes > 0 or not spec.auto_scaling_enabled:
            return 0
        try:
            return await self._cluster.count_pending_pods()
        except Exception as e:
            log.warning("Failed to count pending pods, holding size: {err}", err=e)
            return None

    # ─── Scale up ───────────────────────────────────────────────────

    async def _scale_up(
        self, pool: NodePool, provider: CloudProvider, count: int, created: list[str],
    ) -> None:
        key = pool.key
        spec = pool.spec
        user_data = await resolve_join_script(pool, self._cluster)
        labels = {**spec.labels, **ownership_labels(key)}

        firewall = None
        if spec.firewall_rules:
            firewall = await provider.get_or_create_firewall(
                f"{pool.name}-firewall", firewall_specs(spec.firewall_rules),
            )

        flavor, image, location, network, ssh_keys = await self._placement(spec, provider)

        for _ in range(count):
            config = InstanceConfig(
                name=instance_name(key),
                flavor=flavor,
                image=image,
                location=location,
                user_data=user_data,
                ssh_keys=ssh_keys,
                labels=labels,
                network=network,
                firewall=firewall,
            )
            instance = await provider.create_instance(config)
            created.append(instance.name)
            log.info("Instance {name} created ({iid})", name=instance.name, iid=instance.id)

    async def _placement(
        self, spec: NodePoolSpec, provider: CloudProvider,
    ) -> tuple[str, str, str, str | None, tuple[str, ...]]:
        """Flavor, image, location, network and SSH keys as the provider expects them."""
        match spec.provider:
            case "hetzner":
                cfg = spec.hetzner
                if cfg is None:
                    raise ConfigurationError("hetznerConfig is required when provider is hetzner")
                network = await provider.resolve_network(cfg.network) if cfg.network else None
                return cfg.server_type, cfg.image, cfg.location, network, spec.ssh_keys
            case "ovhcloud":
                cfg = spec.ovhcloud
                if cfg is None:
                    raise ConfigurationError("ovhcloudConfig is required when provider is ovhcloud")
                flavor = cfg.flavor_id or (
                    await provider.resolve_flavor(cfg.flavor, region=cfg.region) if cfg.flavor else ""
                )
                if not flavor:
                    raise ConfigurationError("either flavor or flavorID must be specified")
                image = cfg.image_id or (
                    await provider.resolve_image(cfg.image, region=cfg.region) if cfg.image else ""
                )
                if not image:
                    raise ConfigurationError("either image or imageID must be specified")
                network = cfg.network_id or (
                    await provider.resolve_network(cfg.network, region=cfg.region)
                    if cfg.network else None
                )
                ssh_keys = tuple([await provider.resolve_ssh_key(k) for k in spec.ssh_keys if k])
                return flavor, image, cfg.region, network, ssh_keys
            case other:
                raise ConfigurationError(f"unsupported provider: {other}")

    # ─── Scale down / deletion ──────────────────────────────────────

    async def drain(self, node_name: str) -> DrainOutcome:
        """Cordon, evict and unregister a node. Never raises."""
        warnings: list[str] = []
        cordoned = node_deleted = False
        evicted = 0

        try:
            await self._cluster.cordon(node_name)
            cordoned = True
            evicted = await self._cluster.evict_pods(node_name)
        except Exception as e:
            warnings.append(f"drain {node_name}: {e}")
            log.warning("Failed to drain node {node}, proceeding with deletion: {err}", node=node_name, err=e)

        try:
            await self._cluster.delete_node(node_name)
            node_deleted = True
        except Exception as e:
            warnings.append(f"delete node {node_name}: {e}")
            log.warning("Failed to remove node {node} from cluster: {err}", node=node_name, err=e)

        return DrainOutcome(
            node=node_name, cordoned=cordoned, evicted=evicted,
            node_deleted=node_deleted, warnings=tuple(warnings),
        )

    async def _retire(self, provider: CloudProvider, instance: Instance) -> DrainOutcome:
        outcome = await self.drain(instance.name)
        await provider.delete_instance(instance.id)
        log.info("Instance {name} deleted ({iid})", name=instance.name, iid=instance.id)
        return outcome

    async def _finalize(self, pool: NodePool) -> ReconcileResult:
        key = pool.key
        if not pool.has_finalizer:
            return ReconcileResult(key, action="finalized")

        deleted: list[str] = []
        drains: list[DrainOutcome] = []
        try:
            provider = self._provider_for(pool)
            instances = await provider.list_instances(key)
            log.info("Deleting {n} instances before release", n=len(instances))
            for instance in instances:
                drains.append(await self._retire(provider, instance))
                deleted.append(instance.name)
        except Exception as e:
            await self._fail(pool, PHASE_DELETING, e)

        await self._store.update(pool.without_finalizer())
        log.info("Finalizer removed")
        return ReconcileResult(
            key, action="finalized", deleted=tuple(deleted), drains=tuple(drains),
        )

    # ─── Failure ────────────────────────────────────────────────────

    async def _fail(self, pool: NodePool, phase: str, error: BaseException) -> NoReturn:
        """Record ``error`` in status and metrics, then raise ReconcileError."""
        message = str(error)
        log.error("{phase}: {err}", phase=phase, err=message)

        failed = replace(
            pool.status,
            conditions=_with_condition(pool.status.conditions, Condition(
                type="Ready", status="False", reason=phase,
                message=message, last_transition_time=self._clock(),
            )),
            phase=phase,
            message=message,
        )
        try:
            await self._store.update_status(pool.with_status(failed))
        except Exception as e:
            log.error("Failed to write {phase} status: {err}", phase=phase, err=e)
        if self._metrics:
            self._metrics.record_reconcile_error(pool.key)

        raise ReconcileError(phase, message) from error
