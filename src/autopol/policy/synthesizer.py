# src/autopol/policy/synthesizer.py
"""
Converts canonical knox policies into CiliumNetworkPolicy objects.
"""
from typing import Any, Dict, IO, Iterable, List, Optional, Sequence, Tuple

import yaml

from ..services import Service
from .models import (
    CIDRRule,
    EgressRule,
    EntityRule,
    FQDNRule,
    IngressRule,
    KnoxNetworkPolicy,
    MatchLabelsRule,
    ServiceRule,
    SpecHTTP,
    SpecPort,
)

CILIUM_API_VERSION = "cilium.io/v2"
CILIUM_KIND = "CiliumNetworkPolicy"

KUBE_DNS_SERVICE = "kube-dns"
KUBE_DNS_NAMESPACE = "kube-system"
DEFAULT_DNS_PORT = SpecPort("53", "UDP")


def _cilium_port(port: SpecPort) -> Dict[str, str]:
    return {"port": port.port, "protocol": port.protocol.upper()}


def _http_rules(https: Sequence[SpecHTTP]) -> List[Dict[str, str]]:
    return [{"method": http.method, "path": http.path} for http in https]


def build_port_list(ports: Iterable[SpecPort],
                    https: Sequence[SpecHTTP] = ()) -> Optional[List[Dict[str, Any]]]:
    """
    Build toPorts holding a single port list.

    The list is allocated by the first port that has a number; ports without
    one are skipped. HTTP rules ride on that list when given.
    """
    to_ports = None
    for port in ports:
        if not port.port:  # if port number is none, skip
            continue

        if to_ports is None:
            to_ports = [{"ports": []}]
            if https:
                to_ports[0]["rules"] = {"http": _http_rules(https)}

        to_ports[0]["ports"].append(_cilium_port(port))

    return to_ports


def get_core_dns_endpoint(services: Sequence[Service],
                          dns_service: str = KUBE_DNS_SERVICE,
                          dns_namespace: str = KUBE_DNS_NAMESPACE) -> Tuple[List[Dict], List[Dict]]:
    """Endpoint and ports of the cluster DNS resolver, with a wildcard DNS rule"""
    match_labels = {
        "k8s:io.kubernetes.pod.namespace": dns_namespace,
        "k8s-app": dns_service,
    }
    endpoints = [{"matchLabels": match_labels}]

    ports = [
        {"port": str(svc.service_port), "protocol": svc.protocol.upper()}
        for svc in services or ()
        if svc.namespace == dns_namespace and svc.service_name == dns_service
    ]
    if not ports:  # add statically
        ports = [_cilium_port(DEFAULT_DNS_PORT)]

    to_ports = [{
        "ports": ports,
        "rules": {"dns": [{"matchPattern": "*"}]},
    }]

    return endpoints, to_ports


def build_new_cilium_network_policy(policy: KnoxNetworkPolicy,
                                    api_version: str = CILIUM_API_VERSION,
                                    kind: str = CILIUM_KIND) -> Dict[str, Any]:
    """Skeleton with metadata (name and namespace only) and the endpoint selector"""
    metadata = {"name": policy.name}
    if policy.namespace:
        metadata["namespace"] = policy.namespace

    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": metadata,
        "spec": {
            "endpointSelector": {
                "matchLabels": dict(policy.selector.match_labels),
            },
        },
    }


def _convert_egress(services: Sequence[Service],
                    rule: EgressRule,
                    dns_service: str,
                    dns_namespace: str) -> List[Dict[str, Any]]:
    """One canonical egress entry -> one or two Cilium egress entries"""
    egress: Dict[str, Any] = {}

    if isinstance(rule, MatchLabelsRule):
        egress["toEndpoints"] = [{"matchLabels": dict(rule.match_labels)}]
        to_ports = build_port_list(rule.to_ports, rule.to_https)
        if to_ports:
            egress["toPorts"] = to_ports

    elif isinstance(rule, CIDRRule):
        egress["toCIDR"] = list(rule.cidrs)
        to_ports = build_port_list(rule.to_ports)
        if to_ports:
            egress["toPorts"] = to_ports

    elif isinstance(rule, EntityRule):
        egress["toEntities"] = list(rule.entities)

    elif isinstance(rule, ServiceRule):
        egress["toServices"] = [
            {"k8sService": {"serviceName": svc.service_name, "namespace": svc.namespace}}
            for svc in rule.services
        ]

    elif isinstance(rule, FQDNRule):
        fqdn_egress: Dict[str, Any] = {
            "toFQDNs": [{"matchName": name} for name in rule.match_names],
        }
        to_ports = build_port_list(rule.to_ports)
        if to_ports:
            fqdn_egress["toPorts"] = to_ports

        # FQDN rules only work when DNS lookups to the resolver are allowed too
        egress["toEndpoints"], egress["toPorts"] = get_core_dns_endpoint(
            services, dns_service, dns_namespace)

        return [fqdn_egress, egress]

    return [egress]


def _convert_ingress(rule: IngressRule) -> Dict[str, Any]:
    ingress: Dict[str, Any] = {}

    if rule.match_labels is not None:
        ingress["fromEndpoints"] = [{"matchLabels": dict(rule.match_labels)}]
        to_ports = build_port_list(rule.to_ports, rule.to_https)
        if to_ports:
            ingress["toPorts"] = to_ports

    if rule.from_cidrs:
        ingress["fromCIDR"] = list(rule.from_cidrs)

    if rule.from_entities:
        ingress["fromEntities"] = list(rule.from_entities)

    return ingress


def convert_knox_policy_to_cilium(services: Sequence[Service],
                                  policy: KnoxNetworkPolicy,
                                  api_version: str = CILIUM_API_VERSION,
                                  kind: str = CILIUM_KIND,
                                  dns_service: str = KUBE_DNS_SERVICE,
                                  dns_namespace: str = KUBE_DNS_NAMESPACE) -> Dict[str, Any]:
    """Synthesize the CiliumNetworkPolicy for one canonical policy"""
    cilium_policy = build_new_cilium_network_policy(policy, api_version, kind)
    spec = cilium_policy["spec"]

    if policy.spec.egress:
        spec["egress"] = []
        for rule in policy.spec.egress:
            spec["egress"].extend(_convert_egress(services, rule, dns_service, dns_namespace))

    if policy.spec.ingress:
        spec["ingress"] = [_convert_ingress(rule) for rule in policy.spec.ingress]

    return cilium_policy


def convert_knox_policies_to_cilium(services: Sequence[Service],
                                    policies: Iterable[KnoxNetworkPolicy],
                                    **kwargs) -> List[Dict[str, Any]]:
    return [convert_knox_policy_to_cilium(services, policy, **kwargs) for policy in policies]


def dump_cilium_policies_yaml(policies: Iterable[Dict[str, Any]],
                              stream: Optional[IO] = None) -> Optional[str]:
    """Multi-document YAML, one document per policy"""
    return yaml.safe_dump_all(list(policies), stream, default_flow_style=False, sort_keys=False)
