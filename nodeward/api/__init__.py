from .model import (
    CLUSTER_TYPES,
    FINALIZER,
    PROVIDERS,
    BootstrapConfig,
    ClusterType,
    Condition,
    FirewallRule,
    HetznerConfig,
    Instance,
    K3sConfig,
    NodePool,
    NodePoolKey,
    NodePoolSpec,
    NodePoolStatus,
    ObjectMeta,
    OVHcloudConfig,
    ProviderName,
    RKE2Config,
    SecretReference,
    TalosConfig,
)

__all__ = [
    "CLUSTER_TYPES",
    "FINALIZER",
    "PROVIDERS",
    "BootstrapConfig",
    "ClusterType",
    "Condition",
    "FirewallRule",
    "HetznerConfig",
    "Instance",
    "K3sConfig",
    "NodePool",
    "NodePoolKey",
    "NodePoolSpec",
    "NodePoolStatus",
    "ObjectMeta",
    "OVHcloudConfig",
    "ProviderName",
    "RKE2Config",
    "SecretReference",
    "TalosConfig",
]
