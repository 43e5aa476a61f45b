import os

import pytest

from dht_krpc import KRPCHandler
from node_pool import NodePool
from tracker import StatsTracker


class FakeTransport:
    """Records every outgoing message instead of touching the network."""

    def __init__(self):
        self.sent = []
        self.closed = False

    def send(self, msg, address):
        self.sent.append((msg, address))
        return True

    def receive_loop(self, handler, stop):
        stop.wait()

    def close(self):
        self.closed = True


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def self_id():
    return os.urandom(20)


@pytest.fixture
def pool(self_id):
    return NodePool(8, "10.0.0.1", self_id)


@pytest.fixture
def discoveries():
    return []


@pytest.fixture
def handler(self_id, pool, transport, discoveries):
    return KRPCHandler(self_id, pool, transport.send, discoveries.append, StatsTracker())
