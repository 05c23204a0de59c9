# src/autopol/buffer.py
import logging
import threading
from datetime import datetime
from typing import List, Optional, Tuple

from .models import RawFlow

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class FlowBuffer:
    """In-memory flow buffer shared by the stream receive loop and the discovery cycle"""

    def __init__(self, metrics=None):
        self._flows: List[RawFlow] = []
        self._lock = threading.Lock()
        self.metrics = metrics

        # (first, last) event time of the most recent drained batch
        self.last_span: Optional[Tuple[Optional[datetime], Optional[datetime]]] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)

    def ingest(self, flow: RawFlow):
        """Append a flow"""
        with self._lock:
            self._flows.append(flow)

        if self.metrics:
            self.metrics.record_flow_ingested()

    def drain(self, threshold: int = 1) -> List[RawFlow]:
        """
        Take every buffered flow, but only once at least `threshold` flows are waiting.

        Returns:
            The drained flows, or an empty list when the buffer is below the threshold
        """
        with self._lock:
            count = len(self._flows)
            if count == 0 or count < threshold:
                results = []
            else:
                results = self._flows
                self._flows = []

        if not results:
            if count == 0:
                logger.info("Cilium hubble traffic flow not exist")
            else:
                logger.info(f"The number of cilium hubble traffic flow [{count}] "
                            f"is less than trigger [{threshold}]")
            return []

        times = [f.time for f in results if f.time is not None]
        start_time = min(times) if times else None
        end_time = max(times) if times else None
        self.last_span = (start_time, end_time)

        logger.info(f"The total number of cilium hubble traffic flow: [{len(results)}] "
                    f"from {_fmt(start_time)} ~ to {_fmt(end_time)}")

        if self.metrics:
            self.metrics.record_flows_drained(len(results))

        return results

    def clear(self) -> int:
        """Drop every buffered flow, returning how many were dropped"""
        with self._lock:
            dropped = len(self._flows)
            self._flows = []
        return dropped


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime(TIME_FORMAT) if value else "-"
