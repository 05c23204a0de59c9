# src/autopol/collector.py
import json
import logging
import subprocess
import threading
from collections import deque
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from .buffer import FlowBuffer
from .errors import FlowStreamError
from .models import RawFlow

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class HubbleObserveStream:
    """Streams flow events from `hubble observe --output json`"""

    def __init__(self,
                 server: Optional[str] = None,
                 since: Optional[str] = None,
                 follow: bool = True,
                 use_kubectl: bool = False,
                 kubectl_namespace: str = "kube-system",
                 kubectl_target: str = "ds/cilium",
                 kubeconfig: Optional[str] = None,
                 hubble_binary: str = "hubble"):
        self.server = server
        self.since = since
        self.follow = follow
        self.use_kubectl = use_kubectl
        self.kubectl_namespace = kubectl_namespace
        self.kubectl_target = kubectl_target
        self.kubeconfig = kubeconfig
        self.hubble_binary = hubble_binary

        self.process: Optional[subprocess.Popen] = None
        self._closed = False
        self._stderr_tail = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, hubble_config) -> 'HubbleObserveStream':
        return cls(
            server=hubble_config.server,
            since=hubble_config.since,
            use_kubectl=hubble_config.use_kubectl,
            kubectl_namespace=hubble_config.kubectl_namespace,
            kubectl_target=hubble_config.kubectl_target,
            kubeconfig=hubble_config.kubeconfig,
        )

    def command(self) -> List[str]:
        """Build the hubble observe command line"""
        cmd = [self.hubble_binary, "observe", "--output", "json"]
        if self.follow:
            cmd.append("--follow")
        if self.since:
            cmd += ["--since", self.since]
        if self.server and not self.use_kubectl:
            cmd += ["--server", self.server]

        if self.use_kubectl:
            prefix = ["kubectl"]
            if self.kubeconfig:
                prefix += ["--kubeconfig", self.kubeconfig]
            prefix += ["exec", "-n", self.kubectl_namespace, self.kubectl_target, "--"]
            cmd = prefix + cmd

        return cmd

    def __iter__(self) -> Iterator[Dict]:
        cmd = self.command()
        logger.info(f"Starting Hubble stream: {' '.join(cmd)}")

        try:
            self.process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise FlowStreamError(f"Unable to stream network flow: {e}")

        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()

        for line in self.process.stdout:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse JSON: {e}")

        returncode = self.process.wait()
        if returncode != 0 and not self._closed:
            self._stderr_thread.join(timeout=5)
            stderr = "\n".join(self._stderr_tail)
            raise FlowStreamError(
                f"Hubble process exited with code {returncode}: {stderr}",
                returncode=returncode,
            )

    def _drain_stderr(self):
        """Keep the stderr pipe empty so hubble never blocks writing warnings"""
        for line in self.process.stderr:
            line = line.rstrip()
            if line:
                self._stderr_tail.append(line)
                logger.debug(f"hubble: {line}")

    def close(self):
        """Terminate the hubble process"""
        self._closed = True
        if self.process and self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()


class HubbleFlowCollector:
    """Collects flow events from Hubble Relay into a FlowBuffer"""

    def __init__(self,
                 buffer: FlowBuffer,
                 stream_factory: Optional[Callable[[], Iterable[Dict]]] = None,
                 hubble_config=None,
                 drop_on_stop: bool = True):
        if stream_factory is None:
            if hubble_config is None:
                stream_factory = HubbleObserveStream
            else:
                stream_factory = lambda: HubbleObserveStream.from_config(hubble_config)

        self.buffer = buffer
        self.stream_factory = stream_factory
        self.drop_on_stop = drop_on_stop

        self.running = False
        self.callbacks: List[Callable[[RawFlow], None]] = []
        self.last_error: Optional[FlowStreamError] = None
        self.flows_received = 0
        self.parse_errors = 0

        self._stream = None
        self._thread: Optional[threading.Thread] = None

    def add_callback(self, callback: Callable[[RawFlow], None]):
        """Add callback for flow events"""
        self.callbacks.append(callback)

    def _run_stream(self):
        """Receive loop: parse every event and buffer it until cancelled or the stream fails"""
        stream = None
        try:
            stream = self.stream_factory()
            self._stream = stream

            for event in stream:
                if not self.running:
                    break

                try:
                    flow = RawFlow.from_hubble_event(event)
                except (AttributeError, TypeError, ValueError) as e:
                    self.parse_errors += 1
                    logger.warning(f"Failed to parse flow event: {e}")
                    continue

                self.buffer.ingest(flow)
                self.flows_received += 1

                for callback in self.callbacks:
                    try:
                        callback(flow)
                    except Exception as e:
                        logger.error(f"Callback error: {e}")
            else:
                logger.info("Cilium network flow stream ended")

        except FlowStreamError as e:
            self.last_error = e
            logger.error(f"Cilium network flow stream stopped: {e}")
        finally:
            self.running = False
            close = getattr(stream, "close", None)
            if close:
                close()

    def start(self):
        """Start collecting flows"""
        if self.running:
            return
        self.running = True
        self.last_error = None
        self._thread = threading.Thread(target=self._run_stream, daemon=True)
        self._thread.start()
        logger.info("Hubble collector started")

    def stop(self, timeout: float = 10.0):
        """Stop collecting flows"""
        self.running = False

        close = getattr(self._stream, "close", None)
        if close:
            try:
                close()
            except ValueError:
                # plain generators cannot be closed while the receive loop is inside them
                logger.debug("Stream busy, waiting for receive loop to exit")

        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

        if self.drop_on_stop:
            dropped = self.buffer.clear()
            if dropped:
                logger.info(f"Dropped {dropped} buffered flows on stop")

        logger.info("Hubble collector stopped")

    def join(self, timeout: Optional[float] = None):
        """Wait for the receive loop to finish"""
        if self._thread:
            self._thread.join(timeout=timeout)
