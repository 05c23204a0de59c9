# src/autopol/policy/deduplicator.py
"""
Reconciliation of newly discovered policies against the existing policy set.

Each discovered policy is, in order:

1. skipped when an existing policy has an equivalent spec
2. merged with the latest existing policy that targets the same CIDR set
3. merged with the latest existing policy that targets the same FQDN set
4. renamed when its name is already taken
5. emitted

A final pass marks existing CIDR policies outdated when a newly emitted
FQDN policy covers the same destination according to the DNS map.

Existing policies are never modified here; the lifecycle changes are
returned in ReconcileResult.outdated for the store to apply.
"""
import random
import string
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .dns_map import DnsResolutionMap
from .models import (
    KnoxNetworkPolicy,
    PolicyType,
    RuleKind,
    SpecPort,
)
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

EGRESS_NAME_PREFIX = "autopol-egress"
INGRESS_NAME_PREFIX = "autopol-ingress"
NAME_SUFFIX_LENGTH = 10


@dataclass
class ReconcileResult:
    """New policies to add, and existing policy name -> name of the policy superseding it"""
    policies: List[KnoxNetworkPolicy] = field(default_factory=list)
    outdated: Dict[str, str] = field(default_factory=dict)

    def mark_outdated(self, name: str, superseded_by: str):
        # the first superseding policy wins; status changes only once
        self.outdated.setdefault(name, superseded_by)


def merge_ports(base: Iterable[SpecPort], extra: Iterable[SpecPort]) -> Tuple[SpecPort, ...]:
    """base followed by every port of extra not already present"""
    merged = list(base)
    for port in extra:
        if port not in merged:
            merged.append(port)
    return tuple(merged)


def get_specs(existing: Sequence[KnoxNetworkPolicy],
              policy: KnoxNetworkPolicy) -> List[KnoxNetworkPolicy]:
    """Existing policies governing the same workload as policy"""
    selector = policy.selector.canonical()
    return [p for p in existing if p.selector.canonical() == selector]


def is_existing_policy(existing: Sequence[KnoxNetworkPolicy],
                       policy: KnoxNetworkPolicy) -> bool:
    return any(p.spec.is_equivalent(policy.spec) for p in existing)


def _find_latest(existing: Sequence[KnoxNetworkPolicy],
                 policy: KnoxNetworkPolicy,
                 kind: RuleKind,
                 targets) -> Optional[KnoxNetworkPolicy]:
    """Most recent latest-status policy with the same selector, type, rule kind and target set"""
    wanted = targets(policy)
    selector = policy.selector.canonical()

    for candidate in reversed(existing):
        if not candidate.is_latest():
            continue
        if candidate.policy_type != policy.policy_type or candidate.rule != kind:
            continue
        if candidate.selector.canonical() != selector:
            continue
        if targets(candidate) == wanted:
            return candidate

    return None


def get_latest_cidr_policy(existing: Sequence[KnoxNetworkPolicy],
                           policy: KnoxNetworkPolicy) -> Optional[KnoxNetworkPolicy]:
    return _find_latest(existing, policy, RuleKind.TO_CIDRS, lambda p: p.cidrs())


def get_latest_fqdn_policy(existing: Sequence[KnoxNetworkPolicy],
                           policy: KnoxNetworkPolicy) -> Optional[KnoxNetworkPolicy]:
    return _find_latest(existing, policy, RuleKind.TO_FQDNS, lambda p: p.fqdn_match_names())


def _consolidate(policy: KnoxNetworkPolicy,
                 latest: Optional[KnoxNetworkPolicy],
                 superseded: List[str]) -> Optional[KnoxNetworkPolicy]:
    """
    Merge policy with the latest existing policy for the same targets.

    The merged-away policy name is appended to superseded.

    Returns:
        The policy to keep, or None when it carries less than the existing one
    """
    if latest is None:
        return policy

    discovered_ports = policy.egress_ports()
    existing_ports = latest.egress_ports()

    if not discovered_ports and existing_ports:
        logger.debug(f"Dropping {policy.name}: {latest.name} already covers it with ports")
        return None

    superseded.append(latest.name)
    return policy.with_egress_ports(merge_ports(discovered_ports, existing_ports))


def update_cidr(policy: KnoxNetworkPolicy,
                existing: Sequence[KnoxNetworkPolicy],
                superseded: List[str]) -> Optional[KnoxNetworkPolicy]:
    if policy.policy_type != PolicyType.EGRESS or policy.rule != RuleKind.TO_CIDRS:
        return policy
    return _consolidate(policy, get_latest_cidr_policy(existing, policy), superseded)


def update_fqdn(policy: KnoxNetworkPolicy,
                existing: Sequence[KnoxNetworkPolicy],
                superseded: List[str]) -> Optional[KnoxNetworkPolicy]:
    if policy.policy_type != PolicyType.EGRESS or policy.rule != RuleKind.TO_FQDNS:
        return policy
    return _consolidate(policy, get_latest_fqdn_policy(existing, policy), superseded)


def generate_policy_name(policy_type: PolicyType, rng: random.Random) -> str:
    prefix = EGRESS_NAME_PREFIX if policy_type == PolicyType.EGRESS else INGRESS_NAME_PREFIX
    suffix = "".join(rng.choice(string.ascii_lowercase) for _ in range(NAME_SUFFIX_LENGTH))
    return f"{prefix}-{suffix}"


def replace_duplicated_name(policy: KnoxNetworkPolicy,
                            taken: set,
                            rng: random.Random) -> KnoxNetworkPolicy:
    name = policy.name
    while name in taken:
        name = generate_policy_name(policy.policy_type, rng)

    if name != policy.name:
        logger.debug(f"Renamed {policy.name} -> {name}")
        return policy.with_name(name)
    return policy


def update_existing_cidr_to_new_fqdn(existing: Sequence[KnoxNetworkPolicy],
                                     result: ReconcileResult,
                                     dns_map: DnsResolutionMap):
    """Fold existing CIDR egress policies into new FQDN policies resolving to the same IPs"""
    if dns_map is None or not len(dns_map):
        return

    for cidr_policy in existing:
        # outdated CIDR policies keep their first superseder; their ports already
        # live on in the latest policy that replaced them
        if not cidr_policy.is_latest() or not cidr_policy.is_egress():
            continue
        if cidr_policy.rule != RuleKind.TO_CIDRS:
            continue

        selector = cidr_policy.selector.canonical()

        for cidr in sorted(cidr_policy.cidrs()):
            ip = cidr.split("/")[0]
            domains = dns_map.domains_for_ip(ip)
            if not domains:
                continue

            index = _find_fqdn_policy(result.policies, selector, domains)
            if index is None:
                continue

            fqdn_policy = result.policies[index]
            cidr_ports = cidr_policy.egress_ports()
            if cidr_ports:
                fqdn_policy = fqdn_policy.with_egress_ports(
                    merge_ports(fqdn_policy.egress_ports(), cidr_ports))
                result.policies[index] = fqdn_policy

            result.mark_outdated(cidr_policy.name, fqdn_policy.name)
            logger.info(f"CIDR policy {cidr_policy.name} is covered by FQDN policy {fqdn_policy.name}")


def _find_fqdn_policy(policies: List[KnoxNetworkPolicy],
                      selector: Tuple,
                      domains: List[str]) -> Optional[int]:
    for domain in domains:
        for i, policy in enumerate(policies):
            if not policy.has_fqdn_rule() or policy.selector.canonical() != selector:
                continue
            if domain in policy.fqdn_match_names():
                return i
    return None


def reconcile(existing: Sequence[KnoxNetworkPolicy],
              discovered: Iterable[KnoxNetworkPolicy],
              dns_map: Optional[DnsResolutionMap] = None,
              rng: Optional[random.Random] = None) -> ReconcileResult:
    """
    Decide which discovered policies are new.

    Args:
        existing: Current policy set, oldest first
        discovered: Candidate policies from one discovery cycle
        dns_map: Domain -> IP resolutions used to relate CIDR and FQDN policies
        rng: Source of randomness for generated names

    Returns:
        ReconcileResult with the policies to add and the existing ones they supersede
    """
    rng = rng or random.Random()
    existing = list(existing)
    result = ReconcileResult()
    taken = {p.name for p in existing}

    for policy in discovered:
        if is_existing_policy(existing, policy):
            continue

        superseded = []

        policy = update_cidr(policy, existing, superseded)
        if policy is None:
            continue

        policy = update_fqdn(policy, existing, superseded)
        if policy is None:
            continue

        policy = replace_duplicated_name(policy, taken, rng)
        taken.add(policy.name)
        result.policies.append(policy)

        for name in superseded:
            result.mark_outdated(name, policy.name)
            logger.info(f"Policy {name} is superseded by {policy.name}")

    update_existing_cidr_to_new_fqdn(existing, result, dns_map)

    logger.info(f"Reconciled: {len(result.policies)} new, {len(result.outdated)} outdated")
    return result


def deduplicate_policies(existing: Sequence[KnoxNetworkPolicy],
                         discovered: Iterable[KnoxNetworkPolicy],
                         dns_map: Optional[DnsResolutionMap] = None,
                         rng: Optional[random.Random] = None) -> List[KnoxNetworkPolicy]:
    return reconcile(existing, discovered, dns_map, rng).policies
