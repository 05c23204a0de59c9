# src/autopol/policy/dns_map.py
import threading
from typing import Dict, Iterable, List, Set


class DnsResolutionMap:
    """Domain name -> IPs it has resolved to, accumulated from DNS responses"""

    def __init__(self, initial: Dict[str, Iterable[str]] = None):
        self._domains: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        for domain, ips in (initial or {}).items():
            self.add(domain, ips)

    def __len__(self) -> int:
        with self._lock:
            return len(self._domains)

    def __contains__(self, domain: str) -> bool:
        with self._lock:
            return domain in self._domains

    def add(self, domain: str, ips: Iterable[str]):
        if not domain:
            return
        with self._lock:
            self._domains.setdefault(domain, set()).update(ips)

    def update_from_logs(self, logs) -> int:
        """Record every DNS answer found in the logs, returning how many were seen"""
        seen = 0
        for log in logs:
            if log.dns_query and log.dns_ips:
                self.add(log.dns_query, log.dns_ips)
                seen += 1
        return seen

    def ips_for(self, domain: str) -> Set[str]:
        with self._lock:
            return set(self._domains.get(domain, ()))

    def domains_for_ip(self, ip: str) -> List[str]:
        """Domains that resolved to ip, in the order they were first seen"""
        with self._lock:
            return [domain for domain, ips in self._domains.items() if ip in ips]

    def as_dict(self) -> Dict[str, List[str]]:
        with self._lock:
            return {domain: sorted(ips) for domain, ips in self._domains.items()}
