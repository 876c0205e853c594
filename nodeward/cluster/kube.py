"""Cluster collaborator: the Kubernetes side of draining and scaling.

``ClusterClient`` is what the reconciler consumes; ``KubeCluster`` is the
kubernetes_asyncio implementation. Missing nodes and pods count as already
handled.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Protocol, runtime_checkable

from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.rest import ApiException
from loguru import logger

from nodeward.core.exceptions import ClusterError, ConfigurationError

log = logger.bind(component="cluster")

_CONFIG_LOCK = asyncio.Lock()


@runtime_checkable
class ClusterClient(Protocol):
    async def count_pending_pods(self) -> int:
        """Pending pods across every namespace."""
        ...

    async def cordon(self, node_name: str) -> None: ...

    async def evict_pods(self, node_name: str) -> int:
        """Evict every pod scheduled on the node; returns how many were evicted."""
        ...

    async def delete_node(self, node_name: str) -> None: ...

    async def read_secret(self, namespace: str, name: str, key: str) -> str | None: ...


async def load_api_client(*, kubeconfig: str | None = None, context: str | None = None) -> client.ApiClient:
    """In-cluster config first, then the local kubeconfig.

    Raises:
        ConfigurationError: Neither source is usable.
    """
    async with _CONFIG_LOCK:
        if kubeconfig is None:
            try:
                config.load_incluster_config()
                log.info("Loaded in-cluster Kubernetes configuration")
                return client.ApiClient()
            except config.ConfigException:
                log.debug("In-cluster config not found")
        try:
            await config.load_kube_config(config_file=kubeconfig, context=context)
        except (config.ConfigException, FileNotFoundError) as e:
            raise ConfigurationError(f"no usable Kubernetes configuration: {e}") from e
        log.info("Loaded Kubernetes configuration from kubeconfig")
        return client.ApiClient()


def _api_error(action: str, e: ApiException) -> ClusterError:
    return ClusterError(f"failed to {action}: {e.status} {e.reason}", status=e.status or 0)


class KubeCluster:
    """ClusterClient over the Kubernetes core/v1 API."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)

    @classmethod
    async def create(cls, *, kubeconfig: str | None = None, context: str | None = None) -> KubeCluster:
        return cls(await load_api_client(kubeconfig=kubeconfig, context=context))

    async def count_pending_pods(self) -> int:
        try:
            pods = await self._core.list_pod_for_all_namespaces(
                field_selector="status.phase=Pending",
            )
        except ApiException as e:
            raise _api_error("list pending pods", e) from e
        return len(pods.items)

    async def cordon(self, node_name: str) -> None:
        try:
            await self._core.patch_node(node_name, {"spec": {"unschedulable": True}})
        except ApiException as e:
            if e.status == 404:
                log.debug("Node {node} not registered, nothing to cordon", node=node_name)
                return
            raise _api_error(f"cordon node {node_name}", e) from e
        log.info("Node {node} cordoned", node=node_name)

    async def evict_pods(self, node_name: str) -> int:
        try:
            pods = await self._core.list_pod_for_all_namespaces(
                field_selector=f"spec.nodeName={node_name}",
            )
        except ApiException as e:
            raise _api_error(f"list pods on {node_name}", e) from e

        evicted = 0
        for pod in pods.items:
            name, namespace = pod.metadata.name, pod.metadata.namespace
            body = client.V1Eviction(
                metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            )
            try:
                await self._core.create_namespaced_pod_eviction(name, namespace, body)
            except ApiException as e:
                if e.status == 404:
                    continue
                raise _api_error(f"evict pod {namespace}/{name}", e) from e
            evicted += 1

        log.info("Evicted {n} pods from {node}", n=evicted, node=node_name)
        return evicted

    async def delete_node(self, node_name: str) -> None:
        try:
            await self._core.delete_node(node_name)
        except ApiException as e:
            if e.status == 404:
                return
            raise _api_error(f"delete node {node_name}", e) from e
        log.info("Node {node} removed from cluster", node=node_name)

    async def read_secret(self, namespace: str, name: str, key: str) -> str | None:
        try:
            secret = await self._core.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                raise ConfigurationError(f"secret {namespace}/{name} not found") from e
            raise _api_error(f"read secret {namespace}/{name}", e) from e
        data = secret.data or {}
        if key not in data:
            return None
        return base64.b64decode(data[key]).decode()

    async def close(self) -> None:
        await self._api_client.close()
