"""Operator process: wires settings, providers, cluster and controller.

Run with ``python -m nodeward.operator`` or the ``nodeward`` script.
Watches NodePool resources and triggers a pass on every change; the
controller requeues each pool on its own interval in between.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field, replace
from pathlib import Path

from aiohttp import web
from kubernetes_asyncio import client, watch
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from nodeward.actors.controller import NodePoolController
from nodeward.api import NodePoolKey
from nodeward.cluster import KubeCluster, load_api_client
from nodeward.config import Settings, load_settings
from nodeward.core.exceptions import ConfigurationError
from nodeward.observability.logging import setup_logging, teardown_logging
from nodeward.observability.metrics import MetricsCollector
from nodeward.providers.provider import CloudProvider
from nodeward.providers.registry import create_provider
from nodeward.providers.reliable import ReliableProvider
from nodeward.reconciler import NodePoolReconciler
from nodeward.reliability import CircuitBreaker, DeadLetterStore, FailedOperation
from nodeward.store import GROUP, PLURAL, VERSION, KubeNodePoolStore

log = logger.bind(component="operator")

WATCH_BACKOFF = 5.0


@dataclass
class Runtime:
    """Everything the operator owns, for orderly shutdown."""

    settings: Settings
    metrics: MetricsCollector
    dead_letters: DeadLetterStore
    providers: dict[str, CloudProvider] = field(default_factory=dict)
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)


def dead_letter_listener(metrics: MetricsCollector):
    """Log every failed operation and count it per operation type."""

    def on_dead_letter(op: FailedOperation) -> None:
        log.error(
            "Dead letter {op_id}: {operation} failed after {retries} retries: {error}",
            op_id=op.id, operation=op.operation_type, retries=op.retry_count, error=op.error,
        )
        metrics.record_dead_letter(op.operation_type)

    return on_dead_letter


async def build_providers(runtime: Runtime) -> dict[str, CloudProvider]:
    """One reliable provider per configured vendor, each with its own breaker.

    Vendors whose credentials are missing are skipped; pools using them
    fail their passes with a configuration error.
    """
    settings = runtime.settings
    providers: dict[str, CloudProvider] = {}
    for name, config in settings.providers.items():
        try:
            inner = await create_provider(config)
        except ConfigurationError as e:
            log.warning("Provider {name} unavailable: {err}", name=name, err=e)
            continue
        providers[name] = ReliableProvider(
            inner,
            retry=settings.retry,
            breaker=CircuitBreaker(settings.circuit_breaker, name=name),
            dead_letters=runtime.dead_letters,
            call_timeout=settings.controller.call_timeout,
            cancel=runtime.shutdown,
        )
        log.info("Provider {name} ready", name=name)
    return providers


# =============================================================================
# Admin HTTP
# =============================================================================


def admin_app(runtime: Runtime) -> web.Application:
    async def health(_request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def metrics(_request: web.Request) -> web.Response:
        body = generate_latest(runtime.metrics.registry)
        return web.Response(body=body, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def dead_letters(request: web.Request) -> web.Response:
        raw_limit = request.query.get("limit", "100")
        if not raw_limit.isdigit():
            return web.json_response({"error": "limit must be a non-negative integer"}, status=400)
        limit = int(raw_limit)
        op_type = request.query.get("type")
        ops = (
            runtime.dead_letters.list_by_type(op_type)
            if op_type
            else runtime.dead_letters.list_oldest(limit)
        )
        return web.json_response([
            {
                "id": op.id,
                "operation": op.operation_type,
                "error": str(op.error),
                "retries": op.retry_count,
                "metadata": dict(op.metadata),
                "timestamp": op.timestamp.isoformat() if op.timestamp else None,
            }
            for op in ops[:limit]
        ])

    async def breakers(_request: web.Request) -> web.Response:
        return web.json_response({
            name: {"state": p.breaker.state.value, "failures": p.breaker.failure_count}
            for name, p in runtime.providers.items()
            if isinstance(p, ReliableProvider)
        })

    app = web.Application()
    app.router.add_get("/healthz", health)
    app.router.add_get("/metrics", metrics)
    app.router.add_get("/dead-letters", dead_letters)
    app.router.add_get("/breakers", breakers)
    return app


# =============================================================================
# Watch
# =============================================================================


async def watch_pools(api_client: client.ApiClient, controller: NodePoolController) -> None:
    """Trigger a pass for every NodePool event until cancelled."""
    api = client.CustomObjectsApi(api_client)
    while True:
        w = watch.Watch()
        try:
            async for event in w.stream(api.list_cluster_custom_object, GROUP, VERSION, PLURAL):
                meta = event["object"].get("metadata", {})
                key = NodePoolKey(meta.get("namespace", "default"), meta["name"])
                log.debug("{type} {pool}", type=event["type"], pool=str(key))
                await controller.trigger(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("NodePool watch interrupted, restarting in {delay}s: {err}", delay=WATCH_BACKOFF, err=e)
            await asyncio.sleep(WATCH_BACKOFF)
        finally:
            w.stop()


async def run(settings: Settings) -> None:
    metrics = MetricsCollector()
    runtime = Runtime(
        settings=settings,
        metrics=metrics,
        dead_letters=DeadLetterStore(settings.controller.dead_letter_capacity),
    )
    runtime.dead_letters.add_listener(dead_letter_listener(metrics))
    runtime.providers = await build_providers(runtime)

    api_client = await load_api_client(kubeconfig=settings.controller.kubeconfig)
    cluster = KubeCluster(api_client)
    store = KubeNodePoolStore(api_client)
    reconciler = NodePoolReconciler(
        store, runtime.providers, cluster, metrics,
        interval=settings.controller.interval,
    )

    runner: web.AppRunner | None = None
    if settings.metrics_port is not None:
        runner = web.AppRunner(admin_app(runtime))
        await runner.setup()
        await web.TCPSite(runner, "0.0.0.0", settings.metrics_port).start()
        log.info("Admin endpoints on :{port}", port=settings.metrics_port)

    controller = NodePoolController(reconciler, interval=settings.controller.interval, store=store)
    try:
        async with controller:
            await watch_pools(api_client, controller)
    finally:
        runtime.shutdown.set()
        for provider in runtime.providers.values():
            await provider.close()
        if runner is not None:
            await runner.cleanup()
        await api_client.close()
        await runtime.dead_letters.drain_listeners()


def cli() -> None:
    parser = argparse.ArgumentParser(description="nodeward node pool operator")
    parser.add_argument("--config-dir", type=Path, default=None, help="Directory holding nodeward.toml")
    parser.add_argument("--kubeconfig", type=str, default=None, help="Kubeconfig path outside the cluster")
    parser.add_argument("--log-level", type=str, default=None)
    parser.add_argument("--metrics-port", type=int, default=None)
    args = parser.parse_args()

    settings = load_settings(project_dir=args.config_dir)
    if args.log_level:
        settings = replace(settings, logging=replace(settings.logging, level=args.log_level.upper()))
    if args.metrics_port is not None:
        settings = replace(settings, metrics_port=args.metrics_port)
    if args.kubeconfig:
        settings = replace(settings, controller=replace(settings.controller, kubeconfig=args.kubeconfig))

    handler_ids = setup_logging(settings.logging)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        log.info("Interrupted")
    finally:
        teardown_logging(handler_ids)


if __name__ == "__main__":
    cli()
