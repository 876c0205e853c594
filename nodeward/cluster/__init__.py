from .kube import ClusterClient, KubeCluster, load_api_client

__all__ = ["ClusterClient", "KubeCluster", "load_api_client"]
