"""
Shared fixtures: an in-memory transport, a hand-driven clock and pubsub recorders.
"""

import collections

import pytest
from pubsub import pub

from edtsp.config import default_config
from edtsp.exceptions import NetworkError
from edtsp.network import DatagramTransport
from edtsp.node import (Node, TOPIC_ROLE_CHANGED, TOPIC_DEVICE_DISCOVERED,
                        TOPIC_DEVICE_TIMEOUT, TOPIC_DEVICE_REJECTED)
from edtsp.packets import decode


class FakeTransport(DatagramTransport):
    """Records sends and replays queued datagrams, one per receive()."""

    def __init__(self):
        self.sent = []
        self.inbox = collections.deque()
        self.fail_sends = False
        self.opened = False
        self.closed = False
        self.on_receive = None

    def open(self):
        self.opened = True

    def send(self, data: bytes):
        if self.fail_sends:
            raise NetworkError("simulated send failure")
        self.sent.append(bytes(data))

    def receive(self, timeout: float):
        if self.on_receive is not None:
            self.on_receive()
        if self.inbox:
            return self.inbox.popleft()
        return None

    def close(self):
        self.closed = True

    def sent_packets(self):
        return [decode(data) for data in self.sent]


class ManualClock:
    def __init__(self, start_ms: int = 100_000):
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class Recorder:
    """pubsub listener target; must stay referenced while subscribed (pubsub keeps weak refs)."""

    def __init__(self):
        self.role_changes = []
        self.discovered = []
        self.timeouts = []
        self.rejected = []

    def on_role_changed(self, node_id, old_role, new_role, leader_id):
        self.role_changes.append((node_id, old_role, new_role, leader_id))

    def on_discovered(self, node_id, device_id):
        self.discovered.append((node_id, device_id))

    def on_timeout(self, node_id, device_ids):
        self.timeouts.append((node_id, list(device_ids)))

    def on_rejected(self, node_id, device_id):
        self.rejected.append((node_id, device_id))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    cfg = default_config()
    cfg["device_name"] = "test-node"
    return cfg


@pytest.fixture
def make_node(config, transport, clock):
    """Factory for a Node wired to the fake transport and manual clock."""
    def _make(device_id: int, **overrides) -> Node:
        cfg = dict(config)
        cfg.update(overrides)
        return Node(config=cfg, transport=transport, device_id=device_id, clock=clock)
    return _make


@pytest.fixture
def events():
    recorder = Recorder()
    subscriptions = [
        (recorder.on_role_changed, TOPIC_ROLE_CHANGED),
        (recorder.on_discovered, TOPIC_DEVICE_DISCOVERED),
        (recorder.on_timeout, TOPIC_DEVICE_TIMEOUT),
        (recorder.on_rejected, TOPIC_DEVICE_REJECTED),
    ]
    for listener, topic in subscriptions:
        pub.subscribe(listener, topic)
    yield recorder
    for listener, topic in subscriptions:
        pub.unsubscribe(listener, topic)
