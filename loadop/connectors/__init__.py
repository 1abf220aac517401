"""
Connectors to the systems the controller talks to: cluster state and the
cloud event service.
"""

from loadop.config import settings
from loadop.connectors.cluster import ClusterClient, InMemoryCluster
from loadop.connectors.kubectl import KubectlCluster


def build_cluster() -> ClusterClient:
    """Cluster client selected by ``settings.CLUSTER_BACKEND``."""
    if settings.CLUSTER_BACKEND == "kubectl":
        return KubectlCluster()
    return InMemoryCluster()


__all__ = ["ClusterClient", "InMemoryCluster", "KubectlCluster", "build_cluster"]
