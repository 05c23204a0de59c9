# tests/conftest.py
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from autopol.policy.models import (  # noqa: E402
    CIDRRule,
    FQDNRule,
    KnoxNetworkPolicy,
    LifecycleStatus,
    MatchLabelsRule,
    PolicyMetadata,
    PolicySpec,
    PolicyType,
    RuleKind,
    Selector,
    SpecPort,
)


def make_event(verdict="FORWARDED",
               src_ns="default", src_pod="frontend-6d8f7",
               dst_ns="default", dst_pod="backend-5c9b2",
               src_ip="10.0.0.11", dst_ip="10.0.0.22",
               l4=None, l7=None, **extra):
    """Build a hubble observe -o json event"""
    flow = {
        "time": "2024-05-01T10:00:00.123456789Z",
        "verdict": verdict,
        "IP": {"source": src_ip, "destination": dst_ip, "ipVersion": "IPv4"},
        "l4": l4 if l4 is not None else {
            "TCP": {"source_port": 43512, "destination_port": 8080, "flags": {"SYN": True}}
        },
        "source": {"namespace": src_ns, "pod_name": src_pod, "labels": ["k8s:app=frontend"]},
        "destination": {"namespace": dst_ns, "pod_name": dst_pod, "labels": ["k8s:app=backend"]},
        "traffic_direction": "EGRESS",
        "trace_observation_point": "TO_ENDPOINT",
        "is_reply": False,
        "node_name": "kind-worker",
    }
    if l7 is not None:
        flow["l7"] = l7
    flow.update(extra)
    return {"flow": flow, "node_name": "kind-worker"}


def ports(*pairs):
    return tuple(SpecPort(str(p), proto) for p, proto in pairs)


def cidr_policy(name, cidrs, to_ports=(), selector=None, status=LifecycleStatus.LATEST, namespace="default"):
    return KnoxNetworkPolicy(
        metadata=PolicyMetadata(name=name, namespace=namespace, policy_type=PolicyType.EGRESS,
                                rule=RuleKind.TO_CIDRS, status=status),
        spec=PolicySpec(selector=Selector(selector or {"app": "frontend"}),
                        egress=(CIDRRule(tuple(cidrs), tuple(to_ports)),)),
    )


def fqdn_policy(name, names, to_ports=(), selector=None, status=LifecycleStatus.LATEST, namespace="default"):
    return KnoxNetworkPolicy(
        metadata=PolicyMetadata(name=name, namespace=namespace, policy_type=PolicyType.EGRESS,
                                rule=RuleKind.TO_FQDNS, status=status),
        spec=PolicySpec(selector=Selector(selector or {"app": "frontend"}),
                        egress=(FQDNRule(tuple(names), tuple(to_ports)),)),
    )


def labels_policy(name, peer, to_ports=(), selector=None, namespace="default"):
    return KnoxNetworkPolicy(
        metadata=PolicyMetadata(name=name, namespace=namespace, policy_type=PolicyType.EGRESS,
                                rule=RuleKind.MATCH_LABELS),
        spec=PolicySpec(selector=Selector(selector or {"app": "frontend"}),
                        egress=(MatchLabelsRule(peer, tuple(to_ports)),)),
    )


@pytest.fixture
def cidr_knox_dict():
    """Knox policy document with one CIDR egress rule"""
    return {
        "apiVersion": "v1",
        "kind": "KnoxNetworkPolicy",
        "metadata": {
            "name": "autopol-egress-cidr",
            "namespace": "default",
            "type": "egress",
            "rule": "toCIDRs",
            "status": "latest",
        },
        "spec": {
            "selector": {"matchLabels": {"app": "frontend"}},
            "egress": [{
                "toCIDRs": [{"cidrs": ["10.0.0.0/24"]}],
                "toPorts": [{"port": "443", "protocol": "tcp"}],
            }],
        },
    }
