"""nodeward - NodePool operator for Hetzner Cloud and OVHcloud.

Keeps the number of cloud instances behind each NodePool resource
between its bounds, scaling up on pending pods and draining nodes before
their instances are deleted.

Example:

    from nodeward import NodePoolController, NodePoolReconciler, KubeCluster

    reconciler = NodePoolReconciler(store, providers, await KubeCluster.create())
    async with NodePoolController(reconciler, store=store) as controller:
        await controller.trigger(NodePoolKey("default", "workers"))
"""

from nodeward.actors import NodePoolController
from nodeward.api import NodePool, NodePoolKey, NodePoolSpec, NodePoolStatus
from nodeward.cluster import ClusterClient, KubeCluster
from nodeward.config import Settings, load_settings
from nodeward.core.exceptions import (
    ClusterError,
    ConfigurationError,
    NodewardError,
    NotFoundError,
    ProviderError,
    ReconcileError,
)
from nodeward.providers import Hetzner, OVHcloud
from nodeward.providers.provider import CloudProvider
from nodeward.providers.reliable import ReliableProvider
from nodeward.reconciler import NodePoolReconciler, ReconcileResult, compute_desired
from nodeward.store import InMemoryNodePoolStore, KubeNodePoolStore, NodePoolStore

__version__ = "0.1.0"

__all__ = [
    # Resources
    "NodePool",
    "NodePoolKey",
    "NodePoolSpec",
    "NodePoolStatus",
    # Reconcile
    "NodePoolReconciler",
    "NodePoolController",
    "ReconcileResult",
    "compute_desired",
    # Collaborators
    "ClusterClient",
    "KubeCluster",
    "NodePoolStore",
    "InMemoryNodePoolStore",
    "KubeNodePoolStore",
    # Providers
    "CloudProvider",
    "ReliableProvider",
    "Hetzner",
    "OVHcloud",
    # Configuration
    "Settings",
    "load_settings",
    # Exceptions
    "NodewardError",
    "ConfigurationError",
    "ProviderError",
    "NotFoundError",
    "ClusterError",
    "ReconcileError",
    "__version__",
]
