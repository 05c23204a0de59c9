# src/autopol/normalizer.py
"""
Normalization of Cilium flows into NetworkLog records.

Flows arrive either straight from the Hubble stream or as documents read
back from a flow store. Both paths end in normalize_flow(), which applies
the filtering rules that keep policy discovery away from noise:

- flows already dropped by a deny policy are ignored
- HTTP is only taken from requests
- DNS is only taken from responses carrying IPs, never for in-cluster names
"""
import json
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .models import (
    ICMPv4,
    ICMPv6,
    L7FlowType,
    NetworkLog,
    RawFlow,
    TCP,
    UDP,
    Verdict,
)
from .utils.logging import setup_logger

logger = setup_logger(__name__)

INTERNAL_DNS_SUFFIX = "svc.cluster.local."

# Discard reasons, also used as metric labels
DISCARD_POLICY_DENY = "policy_deny"
DISCARD_NO_L3 = "no_l3"
DISCARD_NO_L4 = "no_l4"
DISCARD_HTTP = "http_not_request"
DISCARD_INTERNAL_DNS = "internal_dns"

_PROTOCOL_NAMES = {6: "tcp", 17: "udp", 1: "icmp", 58: "icmpv6"}


def get_protocol(l4) -> int:
    """IANA protocol number of the populated L4 variant (0 when unknown)"""
    return getattr(l4, "protocol_number", 0)


def get_protocol_str(l4) -> str:
    return _PROTOCOL_NAMES.get(get_protocol(l4), "unknown")


def get_l4_ports(l4) -> Tuple[int, int]:
    """Source/destination ports; ICMP type/code; -1/-1 when unknown"""
    if isinstance(l4, (TCP, UDP, ICMPv4, ICMPv6)):
        return l4.ports()
    return -1, -1


def get_http(flow: RawFlow) -> Tuple[str, str]:
    """Method and path of an HTTP request, empty for anything else"""
    if flow.l7 is None or flow.l7.http is None:
        return "", ""
    if flow.l7.type != L7FlowType.REQUEST:
        return "", ""

    method = flow.l7.http.method
    path = urlparse(flow.l7.http.url).path
    if path.startswith("//"):
        path = path.replace("//", "/", 1)

    return method, path


def _normalize(flow: RawFlow,
               cluster_name: str = "",
               flow_id: Optional[int] = None) -> Tuple[Optional[NetworkLog], Optional[str]]:
    if flow.is_policy_denied():
        return None, DISCARD_POLICY_DENY

    if flow.ip is None:
        return None, DISCARD_NO_L3
    if flow.l4 is None:
        return None, DISCARD_NO_L4

    action = "deny" if flow.verdict == Verdict.DROPPED else "allow"

    src_namespace = flow.source.namespace or flow.source.reserved_label()
    dst_namespace = flow.destination.namespace or flow.destination.reserved_label()

    src_pod = flow.source.pod_name or flow.ip.source
    dst_pod = flow.destination.pod_name or flow.ip.destination

    protocol = get_protocol(flow.l4)
    syn_flag = flow.l4.is_syn_only() if isinstance(flow.l4, TCP) else False
    src_port, dst_port = get_l4_ports(flow.l4)

    http_method, http_path = "", ""
    if flow.l7 is not None and flow.l7.http is not None:
        http_method, http_path = get_http(flow)
        if not http_method and not http_path:
            return None, DISCARD_HTTP

    dns_query, dns_ips = "", frozenset()
    if flow.l7 is not None and flow.l7.dns is not None:
        dns = flow.l7.dns
        if flow.l7.type == L7FlowType.RESPONSE and dns.ips:
            if dns.query.endswith(INTERNAL_DNS_SUFFIX):
                return None, DISCARD_INTERNAL_DNS
            dns_query = dns.query[:-1] if dns.query.endswith(".") else dns.query
            dns_ips = frozenset(dns.ips)

    log = NetworkLog(
        action=action,
        direction=flow.traffic_direction.name,
        src_namespace=src_namespace,
        dst_namespace=dst_namespace,
        src_pod_name=src_pod,
        dst_pod_name=dst_pod,
        src_ip=flow.ip.source,
        dst_ip=flow.ip.destination,
        protocol=protocol,
        src_port=src_port,
        dst_port=dst_port,
        syn_flag=syn_flag,
        observation_point=flow.observation_point.name,
        is_reply=flow.is_reply,
        http_method=http_method,
        http_path=http_path,
        dns_query=dns_query,
        dns_ips=dns_ips,
        flow_id=flow_id,
        cluster_name=cluster_name,
    )
    return log, None


def normalize_flow(flow: RawFlow,
                   cluster_name: str = "",
                   flow_id: Optional[int] = None) -> Optional[NetworkLog]:
    """
    Convert one flow to a NetworkLog.

    Returns:
        The log, or None when the flow is filtered out or lacks L3/L4 data
    """
    log, _ = _normalize(flow, cluster_name, flow_id)
    return log


def normalize_flows(flows: Iterable[RawFlow],
                    cluster_name: str = "",
                    metrics=None) -> List[NetworkLog]:
    """Normalize a batch of streamed flows, skipping the ones that do not qualify"""
    logs = []
    discarded = Counter()

    for flow in flows:
        try:
            log, reason = _normalize(flow, cluster_name)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed flow: {e}")
            discarded["malformed"] += 1
            continue
        if log is None:
            discarded[reason] += 1
            continue
        logs.append(log)

    if metrics:
        metrics.record_logs_normalized(len(logs))
        for reason, count in discarded.items():
            metrics.record_discarded(reason, count)

    logger.info(f"Normalized {len(logs)} network logs, discarded: {dict(discarded)}")
    return logs


# ================================ #
# == Persisted flow documents   == #
# ================================ #

class _DocumentFieldError(ValueError):
    def __init__(self, field_name: str, cause: Exception):
        super().__init__(f"Error while unmarshaling {field_name}: {cause}")
        self.field_name = field_name


def _decode_field(doc: Dict[str, Any], key: str, allow_empty: bool = False) -> Optional[Dict]:
    """Decode one JSON-encoded (bytes) sub-document of a flattened flow row"""
    raw = doc.get(key)
    if raw is None:
        return None

    try:
        if isinstance(raw, (bytes, bytearray, memoryview)):
            raw = bytes(raw).decode("utf-8")
        if isinstance(raw, str):
            if raw == "" and allow_empty:
                return None
            raw = json.loads(raw)
    except ValueError as e:
        raise _DocumentFieldError(key, e)

    if not isinstance(raw, dict):
        raise _DocumentFieldError(key, TypeError(f"expected an object, got {type(raw).__name__}"))
    return raw


def _rebuild_mysql_flow(doc: Dict[str, Any]) -> Dict[str, Any]:
    event = {
        "traffic_direction": doc.get("traffic_direction"),
        "verdict": doc.get("verdict"),
        "policy_match_type": doc.get("policy_match_type"),
        "drop_reason": doc.get("drop_reason"),
    }

    for key, target in (("event_type", "event_type"),
                        ("source", "source"),
                        ("destination", "destination"),
                        ("ip", "IP"),
                        ("l4", "l4")):
        value = _decode_field(doc, key)
        if value is not None:
            event[target] = value

    l7 = _decode_field(doc, "l7", allow_empty=True)
    if l7 is not None:
        event["l7"] = l7

    return event


def convert_mysql_documents(docs: Iterable[Dict[str, Any]]) -> List[NetworkLog]:
    """Convert flattened flow rows (sub-documents stored as JSON bytes)"""
    logs = []

    for doc in docs:
        try:
            event = _rebuild_mysql_flow(doc)
            flow = RawFlow.from_hubble_event(event)
            flow_id = doc.get("id")
            log = normalize_flow(
                flow,
                cluster_name=doc.get("cluster_name") or "",
                flow_id=int(flow_id) if flow_id is not None else None,
            )
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f"Skipping flow document {doc.get('id')}: {e}")
            continue

        if log is not None:
            logs.append(log)

    return logs


def convert_mongo_documents(docs: Iterable[Dict[str, Any]]) -> List[NetworkLog]:
    """Convert flow documents stored whole"""
    logs = []

    for doc in docs:
        try:
            flow = RawFlow.from_hubble_event(doc)
            log = normalize_flow(flow, cluster_name=doc.get("cluster_name") or "")
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f"Skipping flow document {doc.get('_id')}: {e}")
            continue

        if log is not None:
            logs.append(log)

    return logs


def convert_documents(driver: str, docs: Iterable[Dict[str, Any]]) -> List[NetworkLog]:
    """Dispatch on the flow store the documents came from"""
    if driver == "mysql":
        return convert_mysql_documents(docs)
    elif driver == "mongo":
        return convert_mongo_documents(docs)

    logger.warning(f"Unsupported flow document driver: {driver}")
    return []
