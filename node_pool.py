"""
Bounded FIFO of freshly discovered nodes waiting for a find_node probe.

The pool is the only state shared between the receive loop (which fills it)
and the drain loop (which empties it), so every access goes through one lock.
"""

import threading
from collections import deque
from typing import Deque, Optional

from dht_utils import Candidate, valid_port


class NodePool:
    def __init__(self, capacity: int, host: str, nid: bytes):
        self.capacity = capacity
        self.host = host
        self.nid = nid
        self._nodes: Deque[Candidate] = deque()
        self._lock = threading.Lock()

    def push(self, node: Candidate) -> bool:
        """Admit `node` unless the pool is full or the node is ourselves or unreachable."""
        with self._lock:
            if len(self._nodes) >= self.capacity:
                return False
            if node.ip == self.host or node.nid == self.nid:
                return False
            if not valid_port(node.port):
                return False
            self._nodes.append(node)
            return True

    def pop(self) -> Optional[Candidate]:
        with self._lock:
            if not self._nodes:
                return None
            return self._nodes.popleft()

    def is_empty(self) -> bool:
        with self._lock:
            return not self._nodes

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)
