# src/autopol/services.py
"""
Kubernetes service catalog, used to point DNS egress rules at the
cluster's resolver.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .utils.logging import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Service:
    """One service port"""
    namespace: str
    service_name: str
    service_port: int
    protocol: str = "TCP"
    cluster_name: str = ""
    type: str = "ClusterIP"
    labels: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)


class KubernetesServiceCatalog:
    """Lists services through the Kubernetes API"""

    def __init__(self,
                 kubeconfig: Optional[str] = None,
                 cluster_name: str = "",
                 core_v1: Optional[client.CoreV1Api] = None):
        self.cluster_name = cluster_name

        if core_v1 is None:
            # Load kubeconfig
            try:
                if kubeconfig:
                    config.load_kube_config(config_file=kubeconfig)
                else:
                    config.load_incluster_config()  # For running inside cluster
            except Exception as e:
                logger.error(f"Failed to load kubeconfig: {e}")
                # Fallback to default
                config.load_kube_config()
            core_v1 = client.CoreV1Api()

        self.core_v1 = core_v1

    def list_services(self) -> List[Service]:
        """One Service per exposed port, across all namespaces"""
        try:
            response = self.core_v1.list_service_for_all_namespaces()
        except ApiException as e:
            logger.error(f"Failed to list services: {e}")
            return []

        services = []
        for svc in response.items:
            labels = svc.metadata.labels or {}
            for port in svc.spec.ports or []:
                services.append(Service(
                    namespace=svc.metadata.namespace,
                    service_name=svc.metadata.name,
                    service_port=int(port.port),
                    protocol=(port.protocol or "TCP").upper(),
                    cluster_name=self.cluster_name,
                    type=svc.spec.type or "ClusterIP",
                    labels=dict(labels),
                ))

        logger.info(f"Loaded {len(services)} service ports from the cluster")
        return services
