"""
Node identities, compact node records and the protocol tunables shared by the
sniffer modules.
"""

import hashlib
import os
import socket
from typing import List, NamedTuple, Tuple

BOOTSTRAP_NODES = [
    ("router.bittorrent.com", 6881),
    ("dht.transmissionbt.com", 6881),
]

# ---------------- Tunables ----------------
NODE_ID_LENGTH = 20
COMPACT_NODE_LENGTH = 26      # id(20) + ipv4(4) + port(2)
NEIGHBOUR_SPLIT = 10          # bytes borrowed from the target id
TID_LENGTH = 2                # KRPC transaction id length
TOKEN_LENGTH = 2              # announce token = info_hash[:TOKEN_LENGTH]


class Candidate(NamedTuple):
    ip: str
    port: int
    nid: bytes

    @property
    def address(self) -> Tuple[str, int]:
        return self.ip, self.port


def random_node_id() -> bytes:
    return hashlib.sha1(os.urandom(NODE_ID_LENGTH)).digest()


def random_tid(length: int = TID_LENGTH) -> bytes:
    return os.urandom(length)


def nearest_node_id(target: bytes, base: bytes) -> bytes:
    """
    Build an id that shares its high-order bytes with `target`.

    Under XOR distance the result looks close to `target`, so the node we talk
    to (or the swarm behind an info_hash) treats us as a good neighbour.
    """
    return target[:NEIGHBOUR_SPLIT] + base[NEIGHBOUR_SPLIT:]


def parse_nodes(compact: bytes) -> List[Candidate]:
    out = []
    if not isinstance(compact, (bytes, bytearray)):
        return out
    if len(compact) % COMPACT_NODE_LENGTH != 0:
        return out
    for i in range(0, len(compact), COMPACT_NODE_LENGTH):
        s = compact[i:i + COMPACT_NODE_LENGTH]
        nid = bytes(s[:20])
        ip = socket.inet_ntoa(bytes(s[20:24]))
        port = int.from_bytes(s[24:], "big")
        out.append(Candidate(ip, port, nid))
    return out


def compact_node(ip: str, port: int, nid: bytes) -> bytes:
    return nid + socket.inet_aton(ip) + int(port).to_bytes(2, "big")


def is_node_id(value) -> bool:
    return isinstance(value, bytes) and len(value) == NODE_ID_LENGTH


def announce_token(info_hash: bytes) -> bytes:
    return info_hash[:TOKEN_LENGTH]


def valid_port(port) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535
