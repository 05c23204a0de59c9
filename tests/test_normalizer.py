# tests/test_normalizer.py
"""
Tests for flow normalization.
"""
import json

import pytest
from prometheus_client import CollectorRegistry

from conftest import make_event

from autopol.models import RawFlow
from autopol.normalizer import (
    convert_documents,
    convert_mongo_documents,
    convert_mysql_documents,
    get_http,
    get_protocol_str,
    normalize_flow,
    normalize_flows,
)
from autopol.observability.metrics import AutopolMetrics


def _flow(**kwargs) -> RawFlow:
    return RawFlow.from_hubble_event(make_event(**kwargs))


def test_tcp_flow_normalized():
    log = normalize_flow(_flow(), cluster_name="kind")

    assert log is not None
    assert log.action == "allow"
    assert log.direction == "EGRESS"
    assert log.src_namespace == "default"
    assert log.src_pod_name == "frontend-6d8f7"
    assert log.dst_pod_name == "backend-5c9b2"
    assert log.protocol == 6
    assert (log.src_port, log.dst_port) == (43512, 8080)
    assert log.syn_flag is True
    assert log.observation_point == "TO_ENDPOINT"
    assert log.cluster_name == "kind"


def test_syn_ack_is_not_syn_only():
    flow = _flow(l4={"TCP": {"source_port": 8080, "destination_port": 43512,
                             "flags": {"SYN": True, "ACK": True}}})
    assert normalize_flow(flow).syn_flag is False


def test_dropped_flow_is_deny():
    log = normalize_flow(_flow(verdict="DROPPED", drop_reason=133))
    assert log.action == "deny"


def test_policy_denied_flow_is_discarded():
    """Flows dropped by a deny policy are never fed back into discovery"""
    assert normalize_flow(_flow(verdict="DROPPED", drop_reason=181)) is None


def test_missing_l3_or_l4_is_discarded():
    event = make_event()
    del event["flow"]["IP"]
    assert normalize_flow(RawFlow.from_hubble_event(event)) is None

    event = make_event()
    del event["flow"]["l4"]
    assert normalize_flow(RawFlow.from_hubble_event(event)) is None


def test_reserved_label_used_when_namespace_missing():
    event = make_event(dst_ip="8.8.8.8")
    event["flow"]["destination"] = {"labels": ["reserved:world"]}
    log = normalize_flow(RawFlow.from_hubble_event(event))

    assert log.dst_namespace == "reserved:world"
    assert log.dst_pod_name == "8.8.8.8"


def test_icmp_type_and_code_in_port_slots():
    log = normalize_flow(_flow(l4={"ICMPv4": {"type": 8, "code": 0}}))
    assert log.protocol == 1
    assert (log.src_port, log.dst_port) == (8, 0)


def test_unknown_l4_ports():
    log = normalize_flow(_flow(l4={"SCTP": {"source_port": 1}}))
    assert (log.src_port, log.dst_port) == (-1, -1)
    assert get_protocol_str(RawFlow.from_hubble_event(make_event(l4={"SCTP": {}})).l4) == "unknown"


def test_http_request_extracted():
    flow = _flow(l7={"type": "REQUEST",
                     "http": {"method": "GET", "url": "http://backend:8080//api/v1/items?page=2"}})
    log = normalize_flow(flow)

    assert log.http_method == "GET"
    assert log.http_path == "/api/v1/items"


def test_http_response_discarded():
    flow = _flow(l7={"type": "RESPONSE", "http": {"code": 200, "method": "GET", "url": "http://backend/x"}})

    assert get_http(flow) == ("", "")
    assert normalize_flow(flow) is None


def test_external_dns_response():
    flow = _flow(l4={"UDP": {"source_port": 53, "destination_port": 40000}},
                 l7={"type": "RESPONSE", "dns": {"query": "api.github.com.", "ips": ["140.82.112.6"]}})
    log = normalize_flow(flow)

    assert log.protocol == 17
    assert log.dns_query == "api.github.com"
    assert log.dns_ips == frozenset({"140.82.112.6"})


def test_internal_dns_response_discarded():
    flow = _flow(l4={"UDP": {"source_port": 53, "destination_port": 40000}},
                 l7={"type": "RESPONSE",
                     "dns": {"query": "backend.default.svc.cluster.local.", "ips": ["10.96.0.20"]}})
    assert normalize_flow(flow) is None


def test_dns_request_kept_without_dns_fields():
    flow = _flow(l4={"UDP": {"source_port": 40000, "destination_port": 53}},
                 l7={"type": "REQUEST", "dns": {"query": "api.github.com."}})
    log = normalize_flow(flow)

    assert log is not None
    assert log.dns_query == ""
    assert log.dns_ips == frozenset()


def test_normalize_flows_counts_discards():
    registry = CollectorRegistry()
    metrics = AutopolMetrics(registry=registry)
    flows = [_flow(), _flow(verdict="DROPPED", drop_reason=181), _flow()]

    logs = normalize_flows(flows, cluster_name="kind", metrics=metrics)

    assert len(logs) == 2
    assert registry.get_sample_value("autopol_network_logs_total") == 2
    assert registry.get_sample_value("autopol_records_discarded_total", {"reason": "policy_deny"}) == 1


def test_malformed_flow_does_not_abort_batch():
    registry = CollectorRegistry()
    metrics = AutopolMetrics(registry=registry)

    bad_label = make_event()
    bad_label["flow"]["destination"] = {"labels": [7]}
    bad_url = make_event(l7={"type": "REQUEST", "http": {"method": "GET", "url": 123}})
    flows = [_flow(), RawFlow.from_hubble_event(bad_label), RawFlow.from_hubble_event(bad_url), _flow()]

    logs = normalize_flows(flows, metrics=metrics)

    assert len(logs) == 2
    assert registry.get_sample_value("autopol_records_discarded_total", {"reason": "malformed"}) == 2


# ================================ #
# == Persisted flow documents   == #
# ================================ #

def _mysql_doc(doc_id, l4=None, l7=b""):
    return {
        "id": doc_id,
        "cluster_name": "kind",
        "verdict": "FORWARDED",
        "traffic_direction": "EGRESS",
        "policy_match_type": 0,
        "drop_reason": 0,
        "event_type": json.dumps({"type": 4}).encode(),
        "source": json.dumps({"namespace": "default", "pod_name": "frontend"}).encode(),
        "destination": json.dumps({"namespace": "default", "pod_name": "backend"}).encode(),
        "ip": json.dumps({"source": "10.0.0.11", "destination": "10.0.0.22"}).encode(),
        "l4": l4 if l4 is not None else json.dumps(
            {"TCP": {"source_port": 40000, "destination_port": 5432}}).encode(),
        "l7": l7,
    }


def test_mysql_documents():
    logs = convert_mysql_documents([_mysql_doc(1), _mysql_doc(2)])

    assert [log.flow_id for log in logs] == [1, 2]
    assert logs[0].cluster_name == "kind"
    assert logs[0].dst_port == 5432


def test_mysql_bad_document_skipped():
    """One undecodable document does not stop the batch"""
    docs = [_mysql_doc(1), _mysql_doc(2, l4=b"{not json"), _mysql_doc(3)]
    logs = convert_mysql_documents(docs)

    assert [log.flow_id for log in logs] == [1, 3]


def test_mysql_document_with_bad_id_skipped():
    docs = [_mysql_doc(1), _mysql_doc("not-a-number"), _mysql_doc(3)]
    assert [log.flow_id for log in convert_mysql_documents(docs)] == [1, 3]


def test_mongo_documents():
    docs = [dict(make_event()["flow"], cluster_name="kind", _id="abc")]
    logs = convert_mongo_documents(docs)

    assert len(logs) == 1
    assert logs[0].cluster_name == "kind"


def test_mongo_malformed_document_skipped():
    good = dict(make_event()["flow"], cluster_name="kind")
    bad = dict(make_event(l7={"type": "REQUEST", "http": {"url": 123}})["flow"], _id="bad")

    logs = convert_mongo_documents([good, bad, good])

    assert len(logs) == 2


@pytest.mark.parametrize("driver", ["sqlite", ""])
def test_unsupported_driver(driver):
    assert convert_documents(driver, [_mysql_doc(1)]) == []
