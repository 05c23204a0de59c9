# src/autopol/orchestrator.py
"""
Main orchestrator that ties everything together:
Flow buffer → Normalization → Discovery → Reconciliation → Cilium policies
"""
import importlib
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .buffer import FlowBuffer
from .collector import HubbleFlowCollector
from .config import AutopolConfig
from .errors import ConfigError
from .models import NetworkLog, RawFlow
from .normalizer import convert_documents, normalize_flows
from .policy.dns_map import DnsResolutionMap
from .policy.models import KnoxNetworkPolicy, LifecycleStatus
from .policy.store import PolicyStore
from .policy.synthesizer import convert_knox_policies_to_cilium, dump_cilium_policies_yaml
from .utils.logging import setup_logger

logger = setup_logger(__name__)

Discoverer = Callable[[List[NetworkLog]], Iterable[KnoxNetworkPolicy]]


def no_discovery(logs: List[NetworkLog]) -> List[KnoxNetworkPolicy]:
    logger.debug(f"No discovery engine configured, ignoring {len(logs)} network logs")
    return []


def load_discoverer(target: Optional[str]) -> Discoverer:
    """Resolve a 'module:callable' discovery engine reference"""
    if not target:
        return no_discovery

    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Discovery engine must be given as module:callable, got {target}")

    try:
        module = importlib.import_module(module_name)
        discoverer = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load discovery engine {target}: {e}")

    if not callable(discoverer):
        raise ConfigError(f"Discovery engine {target} is not callable")
    return discoverer


class PolicyDiscoveryOrchestrator:
    """Runs discovery cycles over buffered flows and keeps the policy store current"""

    def __init__(self,
                 config: AutopolConfig,
                 discoverer: Discoverer,
                 buffer: Optional[FlowBuffer] = None,
                 store: Optional[PolicyStore] = None,
                 service_catalog=None,
                 dns_map: Optional[DnsResolutionMap] = None,
                 metrics=None,
                 audit_logger=None,
                 collector: Optional[HubbleFlowCollector] = None,
                 rng=None):
        logger.info("Initializing autopol orchestrator...")

        self.config = config
        self.discoverer = discoverer
        self.metrics = metrics
        self.buffer = buffer if buffer is not None else FlowBuffer(metrics=metrics)
        self.store = store if store is not None else PolicyStore()
        self.service_catalog = service_catalog
        self.dns_map = dns_map if dns_map is not None else DnsResolutionMap()
        self.audit_logger = audit_logger
        self.collector = collector
        self.rng = rng

        # Statistics
        self.stats = {
            "cycles_run": 0,
            "cycles_failed": 0,
            "flows_processed": 0,
            "logs_produced": 0,
            "policies_discovered": 0,
            "policies_added": 0,
            "policies_outdated": 0,
            "last_cycle": None,
            "start_time": datetime.now().isoformat()
        }

        logger.info("autopol orchestrator ready")

    # ================ #
    # == Collection == #
    # ================ #

    def start_collection(self):
        """Start streaming flows from hubble into the buffer"""
        if self.collector is None:
            self.collector = HubbleFlowCollector(
                self.buffer,
                hubble_config=self.config.hubble,
                drop_on_stop=self.config.discovery.drop_on_stop,
            )
        self.collector.start()

    def stop_collection(self):
        if self.collector is not None:
            self.collector.stop()

    # ============ #
    # == Cycles == #
    # ============ #

    def run_cycle(self, flows: Optional[List[RawFlow]] = None) -> Dict[str, Any]:
        """
        Run one discovery cycle.

        Args:
            flows: Flows to process; drained from the buffer when omitted

        Returns:
            Cycle summary
        """
        start_time = time.time()
        cycle_id = uuid.uuid4().hex[:12]

        try:
            if flows is None:
                flows = self.buffer.drain(self.config.discovery.trigger)
            logs = normalize_flows(flows, cluster_name=self.config.cluster_name, metrics=self.metrics)
            return self._discover(cycle_id, len(flows), logs, start_time)

        except Exception as e:
            return self._failed(cycle_id, "normalize", e)

    def run_document_cycle(self, driver: str, docs: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        """Run one discovery cycle over persisted flow documents"""
        start_time = time.time()
        cycle_id = uuid.uuid4().hex[:12]

        try:
            docs = list(docs)
            logs = convert_documents(driver, docs)
            if self.metrics:
                self.metrics.record_logs_normalized(len(logs))
            return self._discover(cycle_id, len(docs), logs, start_time)

        except Exception as e:
            return self._failed(cycle_id, "normalize", e)

    def _discover(self, cycle_id: str, flow_count: int, logs: List[NetworkLog], start_time: float) -> Dict[str, Any]:
        summary = {
            "cycle_id": cycle_id,
            "flows": flow_count,
            "logs": len(logs),
            "discovered": 0,
            "new_policies": [],
            "outdated": {},
            "cilium_policies": [],
        }

        self.stats["flows_processed"] += flow_count
        self.stats["logs_produced"] += len(logs)

        if not logs:
            self._finish(summary, start_time)
            return summary

        self.dns_map.update_from_logs(logs)

        try:
            discovered = list(self.discoverer(logs))
        except Exception as e:
            logger.error(f"Policy discovery failed in cycle {cycle_id}: {e}")
            self.stats["cycles_failed"] += 1
            if self.metrics:
                self.metrics.record_cycle_error("discover")
            if self.audit_logger:
                self.audit_logger.log_error("discover", e, cycle_id)
            discovered = []

        summary["discovered"] = len(discovered)
        self.stats["policies_discovered"] += len(discovered)

        try:
            result = self.store.reconcile(discovered, self.dns_map, self.rng)
            cilium_policies = self.synthesize(result.policies)
        except Exception as e:
            return self._failed(cycle_id, "reconcile", e, summary)

        summary["new_policies"] = [p.name for p in result.policies]
        summary["outdated"] = dict(result.outdated)
        summary["cilium_policies"] = cilium_policies

        self.stats["policies_added"] += len(result.policies)
        self.stats["policies_outdated"] += len(result.outdated)

        if self.audit_logger:
            self.audit_logger.log_reconciliation(result, cycle_id)

        if self.metrics:
            self.metrics.record_policies_discovered(len(discovered))
            for policy in result.policies:
                self.metrics.record_policy_added(policy.policy_type.value)
            self.metrics.record_policies_outdated(len(result.outdated))

        if cilium_policies and self.config.output.export_dir:
            self._export(cycle_id, cilium_policies)

        self._finish(summary, start_time)
        logger.info(
            f"Cycle {cycle_id}: {flow_count} flows, {len(logs)} logs, "
            f"{len(discovered)} discovered, {len(result.policies)} new, {len(result.outdated)} outdated"
        )
        return summary

    def _finish(self, summary: Dict[str, Any], start_time: float):
        self.stats["cycles_run"] += 1
        self.stats["last_cycle"] = datetime.now().isoformat()
        if self.metrics:
            self.metrics.record_cycle_latency(time.time() - start_time)
            self.metrics.update_buffer_size(len(self.buffer))
            self.metrics.update_policy_counts(self.store.status_counts())

    def _failed(self, cycle_id: str, stage: str, error: Exception,
                summary: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.error(f"Discovery cycle {cycle_id} failed at {stage}: {error}")
        self.stats["cycles_failed"] += 1
        if self.metrics:
            self.metrics.record_cycle_error(stage)
        if self.audit_logger:
            self.audit_logger.log_error(stage, error, cycle_id)

        summary = dict(summary or {"cycle_id": cycle_id, "flows": 0, "logs": 0, "discovered": 0})
        summary.update({"new_policies": [], "outdated": {}, "cilium_policies": [], "error": str(error)})
        return summary

    # ============ #
    # == Output == #
    # ============ #

    def _services(self):
        if self.service_catalog is None:
            return []
        return self.service_catalog.list_services()

    def synthesize(self, policies: Iterable[KnoxNetworkPolicy]) -> List[Dict[str, Any]]:
        """Cilium policies for the given knox policies"""
        output = self.config.output
        return convert_knox_policies_to_cilium(
            self._services(),
            policies,
            api_version=output.api_version,
            kind=output.kind,
            dns_service=self.config.dns.service_name,
            dns_namespace=self.config.dns.namespace,
        )

    def latest_cilium_policies(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.synthesize(self.store.list(status=LifecycleStatus.LATEST, namespace=namespace))

    def _export(self, cycle_id: str, cilium_policies: List[Dict[str, Any]]):
        export_dir = Path(self.config.output.export_dir)
        export_dir.mkdir(parents=True, exist_ok=True)
        path = export_dir / f"cilium_policies_{cycle_id}.yaml"
        try:
            with open(path, 'w') as f:
                dump_cilium_policies_yaml(cilium_policies, f)
            logger.info(f"Exported {len(cilium_policies)} cilium policies to {path}")
        except OSError as e:
            logger.error(f"Failed to export cilium policies: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics"""
        collector = None
        if self.collector is not None:
            collector = {
                "running": self.collector.running,
                "flows_received": self.collector.flows_received,
                "parse_errors": self.collector.parse_errors,
                "last_error": str(self.collector.last_error) if self.collector.last_error else None,
            }

        return {
            "orchestrator": dict(self.stats),
            "buffer_size": len(self.buffer),
            "policies": self.store.status_counts(),
            "dns_domains": len(self.dns_map),
            "collector": collector,
            "uptime": (datetime.now() - datetime.fromisoformat(self.stats["start_time"])).total_seconds()
        }
