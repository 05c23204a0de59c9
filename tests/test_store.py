# tests/test_store.py
"""
Tests for the policy store.
"""
import threading

import pytest

from conftest import cidr_policy, fqdn_policy, ports

from autopol.errors import PolicyFormatError
from autopol.policy.deduplicator import ReconcileResult
from autopol.policy.dns_map import DnsResolutionMap
from autopol.policy.models import LifecycleStatus
from autopol.policy.store import PolicyStore, load_knox_policies


def test_reconcile_applies_result():
    store = PolicyStore([cidr_policy("e1", ["1.1.1.1/32"], ports(("80", "TCP")))])

    result = store.reconcile([cidr_policy("d1", ["1.1.1.1/32"], ports(("443", "TCP")))])

    assert result.outdated == {"e1": "d1"}
    assert store.names() == ["e1", "d1"]
    assert store.get("e1").status == LifecycleStatus.OUTDATED
    assert store.get("e1").metadata.outdated_by == "d1"
    assert store.get("d1").is_latest()


def test_second_pass_sees_first_pass_results():
    store = PolicyStore()
    store.reconcile([cidr_policy("d1", ["1.1.1.1/32"], ports(("80", "TCP")))])
    result = store.reconcile([cidr_policy("d1", ["1.1.1.1/32"], ports(("80", "TCP")))])

    assert result.policies == []
    assert len(store) == 1


def test_outdated_never_reverts():
    store = PolicyStore([cidr_policy("e1", ["1.1.1.1/32"], status=LifecycleStatus.OUTDATED)])
    store.apply(ReconcileResult(outdated={"e1": "other"}))

    assert store.get("e1").status == LifecycleStatus.OUTDATED
    assert store.get("e1").metadata.outdated_by is None


def test_list_filters():
    store = PolicyStore([
        cidr_policy("a", ["1.1.1.1/32"]),
        cidr_policy("b", ["2.2.2.2/32"], status=LifecycleStatus.OUTDATED),
        fqdn_policy("c", ["a.com"], namespace="prod"),
    ])

    assert [p.name for p in store.list(status=LifecycleStatus.LATEST)] == ["a", "c"]
    assert [p.name for p in store.list(namespace="prod")] == ["c"]
    assert store.status_counts() == {"latest": 2, "outdated": 1}
    assert store.get("missing") is None


def test_promotion_through_store():
    store = PolicyStore([cidr_policy("cidr", ["140.82.112.6/32"], ports(("443", "TCP")))])
    dns_map = DnsResolutionMap({"api.github.com": ["140.82.112.6"]})

    store.reconcile([fqdn_policy("fqdn", ["api.github.com"])], dns_map)

    assert store.get("cidr").metadata.outdated_by == "fqdn"
    assert store.get("fqdn").egress_ports() == ports(("443", "TCP"))


def test_concurrent_reconciliations_do_not_duplicate():
    store = PolicyStore()
    barrier = threading.Barrier(4)

    def run():
        barrier.wait()
        store.reconcile([cidr_policy("d1", ["1.1.1.1/32"], ports(("80", "TCP")))])

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(store) == 1


def test_yaml_round_trip(tmp_path):
    store = PolicyStore([
        cidr_policy("a", ["1.1.1.1/32"], ports(("443", "TCP"))),
        fqdn_policy("b", ["a.com"], status=LifecycleStatus.OUTDATED),
    ])
    path = tmp_path / "policies" / "knox.yaml"
    store.dump_yaml(path)

    loaded = PolicyStore()
    assert loaded.load_yaml(path) == 2
    assert loaded.list() == store.list()


def test_load_policy_list_document(tmp_path, cidr_knox_dict):
    import yaml
    path = tmp_path / "knox.yaml"
    path.write_text(yaml.safe_dump([cidr_knox_dict, dict(cidr_knox_dict, metadata=dict(
        cidr_knox_dict["metadata"], name="second"))]))

    assert [p.name for p in load_knox_policies(path)] == ["autopol-egress-cidr", "second"]


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("metadata: [unclosed")

    with pytest.raises(PolicyFormatError):
        load_knox_policies(path)
