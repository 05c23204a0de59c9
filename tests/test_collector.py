# tests/test_collector.py
"""
Tests for the Hubble flow collector.
"""
import json
import sys
import threading

import pytest

from conftest import make_event

from autopol.buffer import FlowBuffer
from autopol.collector import HubbleFlowCollector, HubbleObserveStream
from autopol.config import HubbleConfig
from autopol.errors import FlowStreamError


class FakeStream:
    """Yields the given events, then blocks until closed"""

    def __init__(self, events, block=False):
        self.events = events
        self.block = block
        self.closed = threading.Event()

    def __iter__(self):
        for event in self.events:
            yield event
        if self.block:
            self.closed.wait(timeout=5)

    def close(self):
        self.closed.set()


def test_events_are_buffered():
    buffer = FlowBuffer()
    events = [make_event(src_pod=f"pod-{i}") for i in range(3)]
    collector = HubbleFlowCollector(buffer, stream_factory=lambda: FakeStream(events))

    collector.start()
    collector.join(timeout=5)

    assert len(buffer) == 3
    assert collector.flows_received == 3
    assert collector.running is False
    assert collector.last_error is None


def test_callbacks_receive_flows():
    received = []
    collector = HubbleFlowCollector(FlowBuffer(), stream_factory=lambda: FakeStream([make_event()]))
    collector.add_callback(received.append)

    collector.start()
    collector.join(timeout=5)

    assert len(received) == 1
    assert received[0].source.pod_name == "frontend-6d8f7"


def test_unparseable_event_is_skipped():
    events = [make_event(), {"flow": {"IP": "not-a-mapping", "l4": {"TCP": {"source_port": "x"}}}}, make_event()]
    buffer = FlowBuffer()
    collector = HubbleFlowCollector(buffer, stream_factory=lambda: FakeStream(events))

    collector.start()
    collector.join(timeout=5)

    assert len(buffer) == 2
    assert collector.parse_errors == 1


def test_stream_error_stops_without_retry():
    calls = []

    def failing_stream():
        calls.append(1)
        yield make_event()
        raise FlowStreamError("connection reset", returncode=1)

    buffer = FlowBuffer()
    collector = HubbleFlowCollector(buffer, stream_factory=failing_stream)

    collector.start()
    collector.join(timeout=5)

    assert len(calls) == 1
    assert isinstance(collector.last_error, FlowStreamError)
    assert collector.running is False
    assert len(buffer) == 1


def test_stop_closes_stream_and_drops_buffer():
    stream = FakeStream([make_event(), make_event()], block=True)
    buffer = FlowBuffer()
    collector = HubbleFlowCollector(buffer, stream_factory=lambda: stream)

    collector.start()
    for _ in range(100):
        if len(buffer) == 2:
            break
        threading.Event().wait(0.01)

    collector.stop(timeout=5)

    assert stream.closed.is_set()
    assert collector.running is False
    assert len(buffer) == 0


def test_stop_keeps_buffer_when_configured():
    buffer = FlowBuffer()
    collector = HubbleFlowCollector(buffer, stream_factory=lambda: FakeStream([make_event()]),
                                    drop_on_stop=False)
    collector.start()
    collector.join(timeout=5)
    collector.stop()

    assert len(buffer) == 1


def test_observe_command():
    stream = HubbleObserveStream(server="relay:4245", since="5m")
    assert stream.command() == ["hubble", "observe", "--output", "json", "--follow",
                                "--since", "5m", "--server", "relay:4245"]


def test_observe_command_through_kubectl():
    config = HubbleConfig(use_kubectl=True, kubeconfig="/tmp/kubeconfig")
    stream = HubbleObserveStream.from_config(config)

    assert stream.command() == ["kubectl", "--kubeconfig", "/tmp/kubeconfig",
                                "exec", "-n", "kube-system", "ds/cilium", "--",
                                "hubble", "observe", "--output", "json", "--follow"]


def test_missing_hubble_binary():
    stream = HubbleObserveStream(hubble_binary="/nonexistent/bin/hubble")
    with pytest.raises(FlowStreamError):
        list(stream)


def _fake_hubble(tmp_path, body):
    script = tmp_path / "hubble"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(0o755)
    return str(script)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_noisy_stderr_does_not_stall_stream(tmp_path):
    event = json.dumps(make_event())
    binary = _fake_hubble(tmp_path, (
        "i=0\n"
        "while [ $i -lt 4000 ]; do\n"
        "  echo 'level=warning msg=\"relay connection is slow, retrying\"' >&2\n"
        "  i=$((i+1))\n"
        "done\n"
        f"echo '{event}'\n"
    ))
    stream = HubbleObserveStream(hubble_binary=binary, follow=False)
    events = []

    reader = threading.Thread(target=lambda: events.extend(stream), daemon=True)
    reader.start()
    reader.join(timeout=10)

    assert not reader.is_alive()
    assert len(events) == 1
    assert events[0]["flow"]["verdict"] == "FORWARDED"


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_exit_error_carries_stderr_tail(tmp_path):
    binary = _fake_hubble(tmp_path, "echo 'failed to connect to relay' >&2\nexit 3\n")
    stream = HubbleObserveStream(hubble_binary=binary, follow=False)

    with pytest.raises(FlowStreamError) as exc_info:
        list(stream)

    assert exc_info.value.returncode == 3
    assert "failed to connect to relay" in str(exc_info.value)
