# src/autopol/policy/store.py
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

from ..errors import PolicyFormatError
from ..utils.logging import setup_logger
from .deduplicator import ReconcileResult, reconcile
from .dns_map import DnsResolutionMap
from .models import KnoxNetworkPolicy, LifecycleStatus

logger = setup_logger(__name__)


class PolicyStore:
    """
    In-memory set of existing knox policies, oldest first.

    Reconciliation passes hold the store lock from snapshot to apply, so two
    passes never interleave.
    """

    def __init__(self, policies: Optional[Iterable[KnoxNetworkPolicy]] = None):
        self._policies: List[KnoxNetworkPolicy] = list(policies or [])
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)

    def list(self,
             status: Optional[LifecycleStatus] = None,
             namespace: Optional[str] = None) -> List[KnoxNetworkPolicy]:
        with self._lock:
            policies = list(self._policies)

        if status is not None:
            policies = [p for p in policies if p.status == status]
        if namespace is not None:
            policies = [p for p in policies if p.namespace == namespace]
        return policies

    def get(self, name: str) -> Optional[KnoxNetworkPolicy]:
        with self._lock:
            for policy in self._policies:
                if policy.name == name:
                    return policy
        return None

    def names(self) -> List[str]:
        with self._lock:
            return [p.name for p in self._policies]

    def add(self, policy: KnoxNetworkPolicy):
        with self._lock:
            self._policies.append(policy)

    def apply(self, result: ReconcileResult):
        """Record outdated marks, then append the new policies"""
        with self._lock:
            for i, policy in enumerate(self._policies):
                superseded_by = result.outdated.get(policy.name)
                if superseded_by is not None:
                    self._policies[i] = policy.mark_outdated(superseded_by)

            self._policies.extend(result.policies)

        logger.info(
            f"Applied reconciliation: {len(result.policies)} added, "
            f"{len(result.outdated)} marked outdated"
        )

    def reconcile(self,
                  discovered: Iterable[KnoxNetworkPolicy],
                  dns_map: Optional[DnsResolutionMap] = None,
                  rng=None) -> ReconcileResult:
        with self._lock:
            result = reconcile(list(self._policies), discovered, dns_map, rng)
            self.apply(result)
        return result

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in LifecycleStatus}
        for policy in self.list():
            counts[policy.status.value] += 1
        return counts

    # ============== #
    # == YAML I/O == #
    # ============== #

    def load_yaml(self, path) -> int:
        """Append every knox policy document found in path"""
        loaded = load_knox_policies(path)
        with self._lock:
            self._policies.extend(loaded)
        logger.info(f"Loaded {len(loaded)} policies from {path}")
        return len(loaded)

    def dump_yaml(self, path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            yaml.safe_dump_all([p.to_dict() for p in self.list()], f,
                               default_flow_style=False, sort_keys=False)
        logger.info(f"Saved {len(self)} policies to {path}")


def parse_knox_documents(documents: Iterable) -> List[KnoxNetworkPolicy]:
    """Decode knox documents; a document may itself be a list of policies"""
    policies = []
    for doc in documents:
        if doc is None:
            continue
        if isinstance(doc, list):
            policies.extend(KnoxNetworkPolicy.from_dict(d) for d in doc)
        else:
            policies.append(KnoxNetworkPolicy.from_dict(doc))
    return policies


def load_knox_policies(path) -> List[KnoxNetworkPolicy]:
    with open(path, 'r') as f:
        try:
            documents = list(yaml.safe_load_all(f))
        except yaml.YAMLError as e:
            raise PolicyFormatError(f"Invalid policy YAML in {path}: {e}")
    return parse_knox_documents(documents)
