# tests/test_services.py
"""
Tests for the Kubernetes service catalog.
"""
from types import SimpleNamespace

from kubernetes.client.rest import ApiException

from conftest import fqdn_policy

from autopol.policy.synthesizer import convert_knox_policy_to_cilium
from autopol.services import KubernetesServiceCatalog, Service


def _service(name, namespace, svc_ports, labels=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels=labels),
        spec=SimpleNamespace(
            type="ClusterIP",
            ports=[SimpleNamespace(port=port, protocol=protocol) for port, protocol in svc_ports],
        ),
    )


class FakeCoreV1:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error

    def list_service_for_all_namespaces(self):
        if self.error:
            raise self.error
        return SimpleNamespace(items=self.items)


def test_one_service_per_port():
    core_v1 = FakeCoreV1([
        _service("kube-dns", "kube-system", [(53, "UDP"), (53, "TCP"), (9153, "TCP")],
                 labels={"k8s-app": "kube-dns"}),
        _service("backend", "default", [(8080, None)]),
    ])
    services = KubernetesServiceCatalog(cluster_name="kind", core_v1=core_v1).list_services()

    assert len(services) == 4
    assert services[0] == Service("kube-system", "kube-dns", 53, "UDP", "kind")
    assert services[0].labels == {"k8s-app": "kube-dns"}
    assert services[3].protocol == "TCP"


def test_api_error_returns_empty_catalog():
    catalog = KubernetesServiceCatalog(core_v1=FakeCoreV1(error=ApiException(status=403, reason="Forbidden")))
    assert catalog.list_services() == []


def test_catalog_feeds_dns_rule():
    core_v1 = FakeCoreV1([_service("kube-dns", "kube-system", [(53, "UDP"), (53, "TCP")])])
    services = KubernetesServiceCatalog(core_v1=core_v1).list_services()

    cnp = convert_knox_policy_to_cilium(services, fqdn_policy("p", ["a.com"]))
    dns_ports = cnp["spec"]["egress"][1]["toPorts"][0]["ports"]

    assert dns_ports == [{"port": "53", "protocol": "UDP"}, {"port": "53", "protocol": "TCP"}]
