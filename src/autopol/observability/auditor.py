# src/autopol/observability/auditor.py
"""
Audit logging of policy lifecycle decisions.
"""
import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.logging import setup_logger

logger = setup_logger(__name__)

CSV_HEADER = ['timestamp', 'event_type', 'cycle_id', 'policy_name', 'namespace',
              'policy_type', 'rule', 'superseded_by', 'detail']


class AuditLogger:
    """Structured audit logging for every reconciliation outcome"""

    def __init__(self, log_dir: str = "logs/audit"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        day = datetime.now().strftime('%Y%m%d')
        self.log_file = self.log_dir / f"audit_{day}.jsonl"
        self.csv_file = self.log_dir / f"audit_{day}.csv"

        # Set up structured logging, one logger per audit directory
        self.logger = logging.getLogger(f"autopol_audit.{self.log_dir.resolve()}")
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        if not self.logger.handlers:
            file_handler = logging.FileHandler(self.log_file)
            file_handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(file_handler)

        self._init_csv_logger()

        logger.info(f"Audit logging initialized: {log_dir}")

    def _init_csv_logger(self):
        """Initialize CSV logging with headers"""
        if not self.csv_file.exists():
            with open(self.csv_file, 'w', newline='') as f:
                csv.writer(f).writerow(CSV_HEADER)

    def _write(self, record: Dict[str, Any], level: int = logging.INFO):
        self.logger.log(level, json.dumps(record, default=str))
        for handler in self.logger.handlers:
            handler.flush()
        self._log_to_csv(**record)

    def log_new_policy(self, policy, cycle_id: Optional[str] = None):
        """Log a policy added to the store"""
        self._write({
            'timestamp': datetime.now().isoformat(),
            'event_type': 'policy_added',
            'cycle_id': cycle_id,
            'policy_name': policy.name,
            'namespace': policy.namespace,
            'policy_type': policy.policy_type.value,
            'rule': policy.rule.value if policy.rule else None,
            'policy': policy.to_dict(),
        })

    def log_outdated_policy(self, name: str, superseded_by: str, cycle_id: Optional[str] = None):
        """Log an existing policy superseded by a newer one"""
        self._write({
            'timestamp': datetime.now().isoformat(),
            'event_type': 'policy_outdated',
            'cycle_id': cycle_id,
            'policy_name': name,
            'superseded_by': superseded_by,
        })

    def log_reconciliation(self, result, cycle_id: Optional[str] = None):
        """Log every decision of one reconciliation pass"""
        for policy in result.policies:
            self.log_new_policy(policy, cycle_id)
        for name, superseded_by in result.outdated.items():
            self.log_outdated_policy(name, superseded_by, cycle_id)

    def log_error(self, stage: str, error: Any, cycle_id: Optional[str] = None):
        """Log error events"""
        self._write({
            'timestamp': datetime.now().isoformat(),
            'event_type': 'error',
            'cycle_id': cycle_id,
            'detail': f"{stage}: {error}",
        }, level=logging.ERROR)

    def _log_to_csv(self, **kwargs):
        """Log to CSV file"""
        try:
            with open(self.csv_file, 'a', newline='') as f:
                csv.writer(f).writerow([kwargs.get(column) or '' for column in CSV_HEADER])
        except OSError as e:
            logger.error(f"Failed to write to CSV: {e}")

    def get_recent_logs(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict]:
        """Get recent audit logs"""
        if not self.log_file.exists():
            return []

        logs = []
        with open(self.log_file, 'r') as f:
            for line in f:
                try:
                    log = json.loads(line.strip())
                except ValueError:
                    continue
                if not event_type or log.get('event_type') == event_type:
                    logs.append(log)

        return logs[-limit:] if limit else logs
