"""
KRPC message handling for the sniffer.

Incoming messages arrive already bdecoded (bytes keys, bytes/int values).
Nothing here keeps per-transaction state. Responses are recognised by their
shape alone, and announce tokens are recomputed from the info_hash.
"""

import logging
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple

from dht_utils import announce_token, is_node_id, nearest_node_id, parse_nodes, valid_port
from node_pool import NodePool
from tracker import StatsTracker

log = logging.getLogger(__name__)

Address = Tuple[str, int]

SERVER_ERROR = 202


class Discovery(NamedTuple):
    info_hash: str
    ip: str
    port: int

    @property
    def magnet(self) -> str:
        return f"magnet:?xt=urn:btih:{self.info_hash}"


# ---------------- Message builders ----------------
def query(tid: bytes, method: bytes, args: Dict[bytes, Any]) -> dict:
    return {b"t": tid, b"y": b"q", b"q": method, b"a": args}


def response(tid: bytes, values: Dict[bytes, Any]) -> dict:
    return {b"t": tid, b"y": b"r", b"r": values}


def error(tid: bytes, code: int = SERVER_ERROR, message: bytes = b"Server Error") -> dict:
    return {b"t": tid, b"y": b"e", b"e": [code, message]}


class KRPCHandler:
    def __init__(self, node_id: bytes, pool: NodePool,
                 send: Callable[[dict, Address], bool],
                 on_discovery: Callable[[Discovery], None],
                 stats: Optional[StatsTracker] = None):
        self.node_id = node_id
        self.pool = pool
        self.send = send
        self.on_discovery = on_discovery
        self.stats = stats
        self.actions = {
            b"get_peers": self.on_get_peers,
            b"announce_peer": self.on_announce_peer,
        }

    def _count(self, kind: str, n: int = 1):
        if self.stats is not None:
            self.stats.update(kind, n)

    def handle(self, msg: Any, address: Address):
        if not isinstance(msg, dict):
            return
        y = msg.get(b"y")
        if y == b"r":
            self.on_response(msg, address)
        elif y == b"q":
            self.on_query(msg, address)
        elif y == b"e":
            self._count("error")

    def on_response(self, msg: dict, address: Address):
        r = msg.get(b"r")
        if not isinstance(r, dict) or b"nodes" not in r:
            return
        self._count("nodes")
        admitted = 0
        for node in parse_nodes(r[b"nodes"]):
            if self.pool.push(node):
                admitted += 1
        if admitted:
            self._count("admitted", admitted)

    def on_query(self, msg: dict, address: Address):
        q = msg.get(b"q")
        action = self.actions.get(q) if isinstance(q, bytes) else None
        if action is None:
            self._count("unknown_query")
            self.play_dead(msg, address)
            return
        self._count(q.decode())
        action(msg, address)

    def on_get_peers(self, msg: dict, address: Address):
        a = msg.get(b"a")
        tid = msg.get(b"t")
        if tid is None or not isinstance(a, dict):
            log.debug("get_peers from %s:%s dropped: missing t or a", *address)
            return
        nid = a.get(b"id")
        infohash = a.get(b"info_hash")
        if not is_node_id(nid) or not is_node_id(infohash):
            log.debug("get_peers from %s:%s dropped: bad id or info_hash", *address)
            return
        if self.stats is not None:
            self.stats.seen_infohash(infohash.hex())
        self.send(response(tid, {
            b"id": nearest_node_id(infohash, self.node_id),
            b"nodes": b"",
            b"token": announce_token(infohash),
        }), address)

    def on_announce_peer(self, msg: dict, address: Address):
        a = msg.get(b"a")
        tid = msg.get(b"t")
        if tid is None or not isinstance(a, dict):
            log.debug("announce_peer from %s:%s dropped: missing t or a", *address)
            return
        infohash = a.get(b"info_hash")
        token = a.get(b"token")
        nid = a.get(b"id")
        if token is None:
            log.debug("announce_peer from %s:%s dropped: missing token", *address)
            return
        if not is_node_id(nid) or not is_node_id(infohash):
            log.debug("announce_peer from %s:%s dropped: bad id or info_hash", *address)
            return

        if token == announce_token(infohash):
            if a.get(b"implied_port", 0) != 0:
                port = address[1]
            else:
                port = a.get(b"port")
            if valid_port(port):
                self._count("discovered")
                self.on_discovery(Discovery(infohash.hex(), address[0], port))
            else:
                log.debug("announce_peer from %s:%s with bad port %r", address[0], address[1], port)

        self.send(response(tid, {b"id": nearest_node_id(nid, self.node_id)}), address)

    def play_dead(self, msg: dict, address: Address):
        tid = msg.get(b"t")
        if tid is None:
            return
        self.send(error(tid), address)
