# src/autopol/policy/models.py
"""
Canonical (knox) network policy model.

An egress entry is exactly one of five rule shapes: label match, CIDR,
entity, service or FQDN. Ingress entries may combine a label match with
CIDR and entity peers. Policies are immutable; lifecycle changes return
modified copies.
"""
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from ..errors import PolicyFormatError

KNOX_API_VERSION = "v1"
KNOX_KIND = "KnoxNetworkPolicy"


class PolicyType(Enum):
    INGRESS = "ingress"
    EGRESS = "egress"


class LifecycleStatus(Enum):
    LATEST = "latest"
    OUTDATED = "outdated"


class RuleKind(Enum):
    MATCH_LABELS = "matchLabels"
    TO_CIDRS = "toCIDRs"
    FROM_CIDRS = "fromCIDRs"
    TO_ENTITIES = "toEntities"
    FROM_ENTITIES = "fromEntities"
    TO_SERVICES = "toServices"
    TO_FQDNS = "toFQDNs"

    @classmethod
    def from_tag(cls, tag: Union[str, 'RuleKind', None]) -> Optional['RuleKind']:
        """Parse a rule tag, including compound tags such as 'toCIDRs+toPorts'"""
        if tag is None or isinstance(tag, cls):
            return tag
        for kind in (cls.TO_FQDNS, cls.TO_CIDRS, cls.FROM_CIDRS, cls.TO_SERVICES,
                     cls.TO_ENTITIES, cls.FROM_ENTITIES, cls.MATCH_LABELS):
            if kind.value in tag:
                return kind
        return None


# ============ #
# == Ports  == #
# ============ #

@dataclass(frozen=True)
class SpecPort:
    port: str
    protocol: str = "TCP"

    def __post_init__(self):
        object.__setattr__(self, "port", "" if self.port is None else str(self.port))
        object.__setattr__(self, "protocol", (self.protocol or "").upper())

    @classmethod
    def from_dict(cls, data: Dict) -> 'SpecPort':
        return cls(port=data.get("port", ""), protocol=data.get("protocol", "TCP"))

    def to_dict(self) -> Dict[str, str]:
        return {"port": self.port, "protocol": self.protocol}


@dataclass(frozen=True)
class SpecHTTP:
    method: str
    path: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'SpecHTTP':
        return cls(method=data.get("method", ""), path=data.get("path", ""))

    def to_dict(self) -> Dict[str, str]:
        return {"method": self.method, "path": self.path}


@dataclass(frozen=True)
class SpecService:
    service_name: str
    namespace: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'SpecService':
        return cls(
            service_name=data.get("serviceName", data.get("service_name", "")),
            namespace=data.get("namespace", ""),
        )

    def to_dict(self) -> Dict[str, str]:
        return {"serviceName": self.service_name, "namespace": self.namespace}


def _tuple(values: Optional[Iterable]) -> Tuple:
    return tuple(values or ())


def _labels_key(labels: Optional[Dict[str, str]]) -> Tuple:
    return tuple(sorted((labels or {}).items()))


def _ports_dict(ports: Tuple[SpecPort, ...]) -> List[Dict[str, str]]:
    return [p.to_dict() for p in ports]


# ======================= #
# == Egress rule shapes == #
# ======================= #

@dataclass(frozen=True)
class MatchLabelsRule:
    match_labels: Dict[str, str]
    to_ports: Tuple[SpecPort, ...] = ()
    to_https: Tuple[SpecHTTP, ...] = ()

    kind = RuleKind.MATCH_LABELS

    def __post_init__(self):
        object.__setattr__(self, "match_labels", dict(self.match_labels or {}))
        object.__setattr__(self, "to_ports", _tuple(self.to_ports))
        object.__setattr__(self, "to_https", _tuple(self.to_https))

    def canonical(self) -> Tuple:
        return (self.kind.value, _labels_key(self.match_labels),
                frozenset(self.to_ports), frozenset(self.to_https))

    def to_dict(self) -> Dict[str, Any]:
        data = {"matchLabels": dict(self.match_labels)}
        if self.to_ports:
            data["toPorts"] = _ports_dict(self.to_ports)
        if self.to_https:
            data["toHTTPs"] = [h.to_dict() for h in self.to_https]
        return data


@dataclass(frozen=True)
class CIDRRule:
    cidrs: Tuple[str, ...]
    to_ports: Tuple[SpecPort, ...] = ()

    kind = RuleKind.TO_CIDRS

    def __post_init__(self):
        object.__setattr__(self, "cidrs", _tuple(self.cidrs))
        object.__setattr__(self, "to_ports", _tuple(self.to_ports))

    def canonical(self) -> Tuple:
        return (self.kind.value, frozenset(self.cidrs), frozenset(self.to_ports))

    def to_dict(self) -> Dict[str, Any]:
        data = {"toCIDRs": [{"cidrs": list(self.cidrs)}]}
        if self.to_ports:
            data["toPorts"] = _ports_dict(self.to_ports)
        return data


@dataclass(frozen=True)
class EntityRule:
    entities: Tuple[str, ...]

    kind = RuleKind.TO_ENTITIES

    def __post_init__(self):
        object.__setattr__(self, "entities", _tuple(self.entities))

    def canonical(self) -> Tuple:
        return (self.kind.value, frozenset(self.entities))

    def to_dict(self) -> Dict[str, Any]:
        return {"toEntities": list(self.entities)}


@dataclass(frozen=True)
class ServiceRule:
    services: Tuple[SpecService, ...]

    kind = RuleKind.TO_SERVICES

    def __post_init__(self):
        object.__setattr__(self, "services", _tuple(self.services))

    def canonical(self) -> Tuple:
        return (self.kind.value, frozenset(self.services))

    def to_dict(self) -> Dict[str, Any]:
        return {"toServices": [s.to_dict() for s in self.services]}


@dataclass(frozen=True)
class FQDNRule:
    match_names: Tuple[str, ...]
    to_ports: Tuple[SpecPort, ...] = ()

    kind = RuleKind.TO_FQDNS

    def __post_init__(self):
        object.__setattr__(self, "match_names", _tuple(self.match_names))
        object.__setattr__(self, "to_ports", _tuple(self.to_ports))

    def canonical(self) -> Tuple:
        return (self.kind.value, frozenset(self.match_names), frozenset(self.to_ports))

    def to_dict(self) -> Dict[str, Any]:
        data = {"toFQDNs": [{"matchNames": list(self.match_names)}]}
        if self.to_ports:
            data["toPorts"] = _ports_dict(self.to_ports)
        return data


EgressRule = Union[MatchLabelsRule, CIDRRule, EntityRule, ServiceRule, FQDNRule]


def _flatten(entries: Optional[List], key: str) -> List[str]:
    """[{key: [a, b]}, {key: [c]}] -> [a, b, c]; plain strings pass through"""
    values = []
    for entry in entries or []:
        if isinstance(entry, str):
            values.append(entry)
        else:
            values.extend(entry.get(key) or [])
    return values


def _ports(data: Dict) -> Tuple[SpecPort, ...]:
    return tuple(SpecPort.from_dict(p) for p in data.get("toPorts") or [])


def _https(data: Dict) -> Tuple[SpecHTTP, ...]:
    return tuple(SpecHTTP.from_dict(h) for h in data.get("toHTTPs") or [])


def egress_rule_from_dict(data: Dict[str, Any]) -> EgressRule:
    """Decode one egress entry, rejecting entries that populate zero or several rule shapes"""
    if not isinstance(data, dict):
        raise PolicyFormatError(f"egress rule must be a mapping, got {type(data).__name__}")

    shapes = [key for key in ("matchLabels", "toCIDRs", "toEntities", "toServices", "toFQDNs")
               if (data.get(key) is not None if key == "matchLabels" else data.get(key))]

    if len(shapes) != 1:
        raise PolicyFormatError(
            f"egress rule must populate exactly one of matchLabels/toCIDRs/toEntities/"
            f"toServices/toFQDNs, got {shapes or 'none'}"
        )

    shape = shapes[0]
    if shape == "matchLabels":
        return MatchLabelsRule(data["matchLabels"], _ports(data), _https(data))
    elif shape == "toCIDRs":
        return CIDRRule(_flatten(data["toCIDRs"], "cidrs"), _ports(data))
    elif shape == "toEntities":
        return EntityRule(data["toEntities"])
    elif shape == "toServices":
        return ServiceRule([SpecService.from_dict(s) for s in data["toServices"]])
    return FQDNRule(_flatten(data["toFQDNs"], "matchNames"), _ports(data))


# ================== #
# == Ingress rule == #
# ================== #

@dataclass(frozen=True)
class IngressRule:
    """Ingress peers may coexist on one entry"""
    match_labels: Optional[Dict[str, str]] = None
    to_ports: Tuple[SpecPort, ...] = ()
    to_https: Tuple[SpecHTTP, ...] = ()
    from_cidrs: Tuple[str, ...] = ()
    from_entities: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.match_labels is not None:
            object.__setattr__(self, "match_labels", dict(self.match_labels))
        object.__setattr__(self, "to_ports", _tuple(self.to_ports))
        object.__setattr__(self, "to_https", _tuple(self.to_https))
        object.__setattr__(self, "from_cidrs", _tuple(self.from_cidrs))
        object.__setattr__(self, "from_entities", _tuple(self.from_entities))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'IngressRule':
        return cls(
            match_labels=data.get("matchLabels"),
            to_ports=_ports(data),
            to_https=_https(data),
            from_cidrs=_flatten(data.get("fromCIDRs"), "cidrs"),
            from_entities=data.get("fromEntities") or (),
        )

    def canonical(self) -> Tuple:
        return (
            None if self.match_labels is None else _labels_key(self.match_labels),
            frozenset(self.to_ports),
            frozenset(self.to_https),
            frozenset(self.from_cidrs),
            frozenset(self.from_entities),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        if self.match_labels is not None:
            data["matchLabels"] = dict(self.match_labels)
        if self.to_ports:
            data["toPorts"] = _ports_dict(self.to_ports)
        if self.to_https:
            data["toHTTPs"] = [h.to_dict() for h in self.to_https]
        if self.from_cidrs:
            data["fromCIDRs"] = [{"cidrs": list(self.from_cidrs)}]
        if self.from_entities:
            data["fromEntities"] = list(self.from_entities)
        return data


# ============ #
# == Policy == #
# ============ #

@dataclass(frozen=True)
class Selector:
    match_labels: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "match_labels", dict(self.match_labels or {}))

    def canonical(self) -> Tuple:
        return _labels_key(self.match_labels)


def _multiset(items) -> FrozenSet:
    return frozenset(Counter(item.canonical() for item in items).items())


@dataclass(frozen=True)
class PolicySpec:
    selector: Selector = field(default_factory=Selector)
    egress: Tuple[EgressRule, ...] = ()
    ingress: Tuple[IngressRule, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "egress", _tuple(self.egress))
        object.__setattr__(self, "ingress", _tuple(self.ingress))

    def canonical(self) -> Tuple:
        """Order-independent form used for every structural comparison"""
        return (self.selector.canonical(), _multiset(self.egress), _multiset(self.ingress))

    def is_equivalent(self, other: 'PolicySpec') -> bool:
        return self.canonical() == other.canonical()


@dataclass(frozen=True)
class PolicyMetadata:
    name: str
    namespace: str = ""
    policy_type: PolicyType = PolicyType.EGRESS
    rule: Optional[RuleKind] = None
    status: LifecycleStatus = LifecycleStatus.LATEST
    outdated_by: Optional[str] = None
    cluster_name: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)


def infer_rule_kind(policy_type: PolicyType,
                    egress: Tuple[EgressRule, ...],
                    ingress: Tuple[IngressRule, ...]) -> Optional[RuleKind]:
    if policy_type == PolicyType.EGRESS:
        return egress[0].kind if egress else None

    for rule in ingress:
        if rule.match_labels is not None:
            return RuleKind.MATCH_LABELS
        if rule.from_cidrs:
            return RuleKind.FROM_CIDRS
        if rule.from_entities:
            return RuleKind.FROM_ENTITIES
    return None


@dataclass(frozen=True)
class KnoxNetworkPolicy:
    metadata: PolicyMetadata
    spec: PolicySpec = field(default_factory=PolicySpec)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def policy_type(self) -> PolicyType:
        return self.metadata.policy_type

    @property
    def rule(self) -> Optional[RuleKind]:
        return self.metadata.rule

    @property
    def status(self) -> LifecycleStatus:
        return self.metadata.status

    @property
    def selector(self) -> Selector:
        return self.spec.selector

    def is_latest(self) -> bool:
        return self.metadata.status == LifecycleStatus.LATEST

    def is_egress(self) -> bool:
        return self.metadata.policy_type == PolicyType.EGRESS

    def cidrs(self) -> FrozenSet[str]:
        """Every egress CIDR"""
        return frozenset(c for rule in self.spec.egress if isinstance(rule, CIDRRule) for c in rule.cidrs)

    def fqdn_match_names(self) -> FrozenSet[str]:
        """Every egress FQDN match name"""
        return frozenset(n for rule in self.spec.egress if isinstance(rule, FQDNRule) for n in rule.match_names)

    def has_fqdn_rule(self) -> bool:
        return any(isinstance(rule, FQDNRule) for rule in self.spec.egress)

    def egress_ports(self) -> Tuple[SpecPort, ...]:
        """Ports of the first egress entry"""
        if not self.spec.egress:
            return ()
        return getattr(self.spec.egress[0], "to_ports", ())

    def with_egress_ports(self, ports: Iterable[SpecPort]) -> 'KnoxNetworkPolicy':
        """Copy with the first egress entry's ports replaced"""
        if not self.spec.egress or not hasattr(self.spec.egress[0], "to_ports"):
            return self
        first = replace(self.spec.egress[0], to_ports=tuple(ports))
        spec = replace(self.spec, egress=(first,) + self.spec.egress[1:])
        return replace(self, spec=spec)

    def with_name(self, name: str) -> 'KnoxNetworkPolicy':
        return replace(self, metadata=replace(self.metadata, name=name))

    def mark_outdated(self, outdated_by: Optional[str]) -> 'KnoxNetworkPolicy':
        if not self.is_latest():
            return self
        return replace(self, metadata=replace(
            self.metadata, status=LifecycleStatus.OUTDATED, outdated_by=outdated_by))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KnoxNetworkPolicy':
        """Decode a policy in the knox JSON/YAML layout"""
        if not isinstance(data, dict):
            raise PolicyFormatError(f"policy must be a mapping, got {type(data).__name__}")

        meta = data.get("metadata") or {}
        spec = data.get("spec") or {}
        name = meta.get("name")
        if not name:
            raise PolicyFormatError("policy metadata.name is required")

        egress = tuple(egress_rule_from_dict(e) for e in spec.get("egress") or [])
        ingress = tuple(IngressRule.from_dict(i) for i in spec.get("ingress") or [])

        try:
            if meta.get("type"):
                policy_type = PolicyType(str(meta["type"]).lower())
            else:
                policy_type = PolicyType.EGRESS if egress else PolicyType.INGRESS
            status = LifecycleStatus(str(meta.get("status") or "latest").lower())
        except ValueError as e:
            raise PolicyFormatError(f"policy {name}: {e}")

        rule = RuleKind.from_tag(meta.get("rule")) or infer_rule_kind(policy_type, egress, ingress)
        selector = Selector((spec.get("selector") or {}).get("matchLabels") or {})

        return cls(
            metadata=PolicyMetadata(
                name=name,
                namespace=meta.get("namespace", ""),
                policy_type=policy_type,
                rule=rule,
                status=status,
                outdated_by=meta.get("outdated") or None,
                cluster_name=meta.get("cluster_name", ""),
                annotations=dict(meta.get("annotations") or {}),
            ),
            spec=PolicySpec(selector=selector, egress=egress, ingress=ingress),
        )

    def to_dict(self) -> Dict[str, Any]:
        meta = {
            "name": self.metadata.name,
            "namespace": self.metadata.namespace,
            "type": self.metadata.policy_type.value,
            "status": self.metadata.status.value,
        }
        if self.metadata.rule is not None:
            meta["rule"] = self.metadata.rule.value
        if self.metadata.outdated_by:
            meta["outdated"] = self.metadata.outdated_by
        if self.metadata.cluster_name:
            meta["cluster_name"] = self.metadata.cluster_name
        if self.metadata.annotations:
            meta["annotations"] = dict(self.metadata.annotations)

        spec = {"selector": {"matchLabels": dict(self.spec.selector.match_labels)}}
        if self.spec.egress:
            spec["egress"] = [rule.to_dict() for rule in self.spec.egress]
        if self.spec.ingress:
            spec["ingress"] = [rule.to_dict() for rule in self.spec.ingress]

        return {
            "apiVersion": KNOX_API_VERSION,
            "kind": KNOX_KIND,
            "metadata": meta,
            "spec": spec,
        }
