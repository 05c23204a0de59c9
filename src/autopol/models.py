# src/autopol/models.py
"""
Flow records as delivered by Hubble and the canonical network log
derived from them.
"""
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union


class _ParsableEnum(Enum):
    """Enum that accepts the name, the number or nothing at all"""

    @classmethod
    def unknown(cls):
        return list(cls)[0]

    @classmethod
    def parse(cls, value: Any):
        if value is None or value == "":
            return cls.unknown()
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            if value.isdigit():
                value = int(value)
            else:
                return cls.__members__.get(value.upper(), cls.unknown())
        try:
            return cls(int(value))
        except (ValueError, TypeError):
            return cls.unknown()


class Verdict(_ParsableEnum):
    VERDICT_UNKNOWN = 0
    FORWARDED = 1
    DROPPED = 2
    ERROR = 3


class TrafficDirection(_ParsableEnum):
    TRAFFIC_DIRECTION_UNKNOWN = 0
    INGRESS = 1
    EGRESS = 2


class TraceObservationPoint(_ParsableEnum):
    UNKNOWN_POINT = 0
    TO_PROXY = 1
    TO_HOST = 2
    TO_STACK = 3
    TO_OVERLAY = 4
    TO_ENDPOINT = 101
    FROM_ENDPOINT = 5
    FROM_PROXY = 6
    FROM_HOST = 7
    FROM_STACK = 8
    FROM_OVERLAY = 9
    FROM_NETWORK = 10
    TO_NETWORK = 11


class L7FlowType(_ParsableEnum):
    UNKNOWN_L7_TYPE = 0
    REQUEST = 1
    RESPONSE = 2
    SAMPLE = 3


# Drop reason reported for flows denied by a deny policy
POLICY_DENY_DROP_REASON = 181
POLICY_DENY_DROP_REASON_DESC = "POLICY_DENY"

_FRACTION = re.compile(r"\.(\d+)")


def _get(data: Optional[Dict], *keys, default=None):
    """Return the first key present in data (hubble CLI, protojson and Go struct spellings differ)"""
    if not data:
        return default
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _unwrap_bool(value) -> Optional[bool]:
    # google.protobuf.BoolValue may be encoded as {"value": true}
    if isinstance(value, dict):
        return bool(value.get("value", False))
    if value is None:
        return None
    return bool(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse RFC3339 (nanosecond precision), epoch seconds or {"seconds", "nanos"}"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, dict):
        seconds = int(value.get("seconds", 0))
        nanos = int(value.get("nanos", 0))
        return datetime.fromtimestamp(seconds + nanos / 1e9, tz=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat handles at most microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


@dataclass
class Endpoint:
    """One side of a flow"""
    namespace: str = ""
    pod_name: str = ""
    labels: List[str] = field(default_factory=list)
    identity: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'Endpoint':
        data = data or {}
        return cls(
            namespace=_get(data, 'namespace', default=''),
            pod_name=_get(data, 'pod_name', 'podName', 'PodName', default=''),
            labels=list(_get(data, 'labels', 'Labels', default=[])),
            identity=int(_get(data, 'identity', 'Identity', default=0)),
        )

    def reserved_label(self) -> str:
        """First label carrying the reserved: prefix (host, world, ...)"""
        for label in self.labels:
            if label.startswith("reserved:"):
                return label
        return ""


@dataclass
class IPLayer:
    source: str
    destination: str
    ip_version: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> 'IPLayer':
        return cls(
            source=_get(data, 'source', 'Source', default=''),
            destination=_get(data, 'destination', 'Destination', default=''),
            ip_version=str(_get(data, 'ipVersion', 'ip_version', 'IpVersion', default='')),
        )


@dataclass
class TCPFlags:
    SYN: bool = False
    ACK: bool = False
    FIN: bool = False
    RST: bool = False
    PSH: bool = False
    URG: bool = False
    ECE: bool = False
    CWR: bool = False
    NS: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'TCPFlags':
        data = data or {}
        return cls(**{name: bool(data.get(name, False)) for name in cls.__dataclass_fields__})


@dataclass
class TCP:
    source_port: int
    destination_port: int
    flags: Optional[TCPFlags] = None

    protocol_number = 6

    def is_syn_only(self) -> bool:
        """SYN set and ACK unset, i.e. a connection attempt"""
        return self.flags is not None and self.flags.SYN and not self.flags.ACK

    def ports(self):
        return self.source_port, self.destination_port


@dataclass
class UDP:
    source_port: int
    destination_port: int

    protocol_number = 17

    def ports(self):
        return self.source_port, self.destination_port


@dataclass
class ICMPv4:
    type: int = 0
    code: int = 0

    protocol_number = 1

    def ports(self):
        return self.type, self.code


@dataclass
class ICMPv6:
    type: int = 0
    code: int = 0

    protocol_number = 58

    def ports(self):
        return self.type, self.code


@dataclass
class UnknownL4:
    protocol_number = 0

    def ports(self):
        return -1, -1


Layer4 = Union[TCP, UDP, ICMPv4, ICMPv6, UnknownL4]


def _ports_from(data: Dict):
    return (
        int(_get(data, 'source_port', 'sourcePort', 'SourcePort', default=0)),
        int(_get(data, 'destination_port', 'destinationPort', 'DestinationPort', default=0)),
    )


def parse_layer4(data: Optional[Dict]) -> Optional[Layer4]:
    """Parse the L4 oneof into exactly one variant"""
    if data is None:
        return None

    # Go struct encoding wraps the oneof as {"Protocol": {...}}
    inner = _get(data, 'Protocol', 'protocol')
    if isinstance(inner, dict):
        data = inner

    tcp = _get(data, 'TCP', 'tcp')
    if tcp is not None:
        src, dst = _ports_from(tcp)
        flags = _get(tcp, 'flags', 'Flags')
        return TCP(src, dst, TCPFlags.from_dict(flags) if flags is not None else None)

    udp = _get(data, 'UDP', 'udp')
    if udp is not None:
        return UDP(*_ports_from(udp))

    icmp = _get(data, 'ICMPv4', 'icmpv4')
    if icmp is not None:
        return ICMPv4(int(icmp.get('type', 0)), int(icmp.get('code', 0)))

    icmp6 = _get(data, 'ICMPv6', 'icmpv6')
    if icmp6 is not None:
        return ICMPv6(int(icmp6.get('type', 0)), int(icmp6.get('code', 0)))

    return UnknownL4()


@dataclass
class HTTP:
    method: str = ""
    url: str = ""
    code: int = 0
    protocol: str = ""


@dataclass
class DNS:
    query: str = ""
    ips: List[str] = field(default_factory=list)
    rcode: int = 0


@dataclass
class Layer7:
    type: L7FlowType = L7FlowType.UNKNOWN_L7_TYPE
    http: Optional[HTTP] = None
    dns: Optional[DNS] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'Layer7':
        record = _get(data, 'Record', 'record')
        if isinstance(record, dict):
            data = {**data, **record}

        http = _get(data, 'http', 'Http', 'HTTP')
        dns = _get(data, 'dns', 'Dns', 'DNS')

        return cls(
            type=L7FlowType.parse(_get(data, 'type', 'Type')),
            http=HTTP(
                method=http.get('method', ''),
                url=http.get('url', ''),
                code=int(http.get('code', 0) or 0),
                protocol=http.get('protocol', ''),
            ) if isinstance(http, dict) else None,
            dns=DNS(
                query=dns.get('query', ''),
                ips=list(dns.get('ips') or []),
                rcode=int(dns.get('rcode', 0) or 0),
            ) if isinstance(dns, dict) else None,
        )


@dataclass
class RawFlow:
    """Represents a single flow event from Hubble/Cilium"""
    verdict: Verdict = Verdict.VERDICT_UNKNOWN
    drop_reason: int = 0
    drop_reason_desc: str = ""
    traffic_direction: TrafficDirection = TrafficDirection.TRAFFIC_DIRECTION_UNKNOWN
    observation_point: TraceObservationPoint = TraceObservationPoint.UNKNOWN_POINT
    is_reply: Optional[bool] = None
    source: Endpoint = field(default_factory=Endpoint)
    destination: Endpoint = field(default_factory=Endpoint)
    ip: Optional[IPLayer] = None
    l4: Optional[Layer4] = None
    l7: Optional[Layer7] = None
    time: Optional[datetime] = None
    uuid: str = ""
    node_name: str = ""
    event_type: Dict[str, Any] = field(default_factory=dict)
    policy_match_type: int = 0

    @classmethod
    def from_hubble_event(cls, event: Dict) -> 'RawFlow':
        """Parse Hubble flow event"""
        # hubble observe -o json wraps the flow: {"flow": {...}, "node_name": ...}
        if isinstance(event.get('flow'), dict):
            event = event['flow']

        ip = _get(event, 'IP', 'ip')
        l7 = _get(event, 'l7', 'L7')
        event_type = _get(event, 'event_type', 'eventType', 'EventType', default={})

        return cls(
            verdict=Verdict.parse(_get(event, 'verdict', 'Verdict')),
            drop_reason=int(_get(event, 'drop_reason', 'dropReason', 'DropReason', default=0) or 0),
            drop_reason_desc=str(_get(event, 'drop_reason_desc', 'dropReasonDesc', 'DropReasonDesc', default='')),
            traffic_direction=TrafficDirection.parse(
                _get(event, 'traffic_direction', 'trafficDirection', 'TrafficDirection')),
            observation_point=TraceObservationPoint.parse(
                _get(event, 'trace_observation_point', 'traceObservationPoint', 'TraceObservationPoint')),
            is_reply=_unwrap_bool(_get(event, 'is_reply', 'isReply', 'IsReply')),
            source=Endpoint.from_dict(_get(event, 'source', 'Source')),
            destination=Endpoint.from_dict(_get(event, 'destination', 'Destination')),
            ip=IPLayer.from_dict(ip) if isinstance(ip, dict) else None,
            l4=parse_layer4(_get(event, 'l4', 'L4')),
            l7=Layer7.from_dict(l7) if isinstance(l7, dict) and l7 else None,
            time=parse_timestamp(_get(event, 'time', 'Time')),
            uuid=_get(event, 'uuid', 'UUID', default=''),
            node_name=_get(event, 'node_name', 'nodeName', 'NodeName', default=''),
            event_type=event_type if isinstance(event_type, dict) else {},
            policy_match_type=int(_get(event, 'policy_match_type', 'policyMatchType', default=0) or 0),
        )

    def is_policy_denied(self) -> bool:
        """Dropped by an existing deny policy"""
        if self.verdict != Verdict.DROPPED:
            return False
        return (self.drop_reason == POLICY_DENY_DROP_REASON or
                self.drop_reason_desc == POLICY_DENY_DROP_REASON_DESC)


@dataclass(frozen=True)
class NetworkLog:
    """One observed flow, normalized for policy discovery"""
    action: str
    direction: str
    src_namespace: str
    dst_namespace: str
    src_pod_name: str
    dst_pod_name: str
    src_ip: str
    dst_ip: str
    protocol: int
    src_port: int
    dst_port: int
    syn_flag: bool = False
    observation_point: str = TraceObservationPoint.UNKNOWN_POINT.name
    is_reply: Optional[bool] = None
    http_method: str = ""
    http_path: str = ""
    dns_query: str = ""
    dns_ips: FrozenSet[str] = frozenset()
    flow_id: Optional[int] = None
    cluster_name: str = ""

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["dns_ips"] = sorted(self.dns_ips)
        return data
