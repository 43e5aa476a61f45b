#!/usr/bin/env python3
# crawler.py: passive BitTorrent DHT sniffer
#
# Walks the DHT with find_node, answers get_peers/announce_peer just well
# enough to be announced to, and prints every infohash a peer announces.
#
# Three threads share one bounded node pool:
# - receive: decodes datagrams and hands them to the KRPC handler, which fills
#   the pool from find_node responses and reports announces
# - rejoin: re-bootstraps whenever the pool has run dry
# - drain: probes one pooled node at a time, paced to node_poll_max per second
#
# There is no transaction table. Any response carrying "nodes" is trusted,
# whether or not we asked for it.

import argparse
import logging
import signal
import sys
import threading
from typing import Callable, List, Optional, Tuple

from dht_krpc import Discovery, KRPCHandler, query
from dht_transport import UDPTransport
from dht_utils import BOOTSTRAP_NODES, nearest_node_id, random_node_id, random_tid
from node_pool import NodePool
from tracker import StatsTracker

log = logging.getLogger(__name__)

Address = Tuple[str, int]

# ---------------- Tunables ----------------
DEFAULT_BIND = "0.0.0.0"
DEFAULT_PORT = 6882
NODE_POLL_MAX = 500           # pool capacity, also the probe rate per second
RE_JOIN_DHT_INTERVAL = 3.0    # seconds between empty-pool checks
STATS_EVERY = 60.0            # rate line period, 0 disables


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


def print_discovery(d: Discovery) -> None:
    print(f"{d.magnet}, address:{d.ip}:{d.port}", flush=True)


class Crawler:
    def __init__(self, host: str = DEFAULT_BIND, port: int = DEFAULT_PORT,
                 node_poll_max: int = NODE_POLL_MAX,
                 rejoin_interval: float = RE_JOIN_DHT_INTERVAL,
                 bootstrap_nodes: Optional[List[Address]] = None,
                 on_discovery: Callable[[Discovery], None] = print_discovery,
                 transport=None, stats_interval: float = STATS_EVERY):
        self.nid = random_node_id()
        self.host = host
        self.node_poll_max = node_poll_max
        self.rejoin_interval = rejoin_interval
        self.stats_interval = stats_interval
        self.bootstrap_nodes = list(bootstrap_nodes or BOOTSTRAP_NODES)
        self.transport = transport if transport is not None else UDPTransport(host, port)
        self.pool = NodePool(node_poll_max, host, self.nid)
        self.stats = StatsTracker() if stats_interval > 0 else None
        self.handler = KRPCHandler(self.nid, self.pool, self.send_krpc, on_discovery, self.stats)
        self.threads: List[threading.Thread] = []
        self._stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def send_krpc(self, msg: dict, address: Address) -> bool:
        return self.transport.send(msg, address)

    def send_find_node(self, address: Address, nid: Optional[bytes] = None) -> bool:
        """Probe `address`; with `nid`, pose as one of its close neighbours."""
        my_id = nearest_node_id(nid, self.nid) if nid else self.nid
        if self.stats is not None:
            self.stats.update("find_node_sent")
        return self.send_krpc(query(random_tid(), b"find_node", {
            b"id": my_id,
            b"target": random_node_id(),
        }), address)

    def join_dht(self):
        for address in self.bootstrap_nodes:
            self.send_find_node(address)

    def rejoin_once(self) -> bool:
        if self.pool.is_empty():
            log.debug("node pool empty, rejoining via %d bootstrap nodes", len(self.bootstrap_nodes))
            self.join_dht()
            return True
        return False

    def drain_once(self) -> bool:
        node = self.pool.pop()
        if node is None:
            return False
        self.send_find_node(node.address, node.nid)
        return True

    # ---------------- Loops ----------------
    def _rejoin_loop(self):
        while not self._stop.wait(self.rejoin_interval):
            self.rejoin_once()

    def _drain_loop(self):
        wait = 1.0 / self.node_poll_max
        while not self._stop.is_set():
            self.drain_once()
            self._stop.wait(wait)

    def _stats_loop(self):
        while not self._stop.wait(self.stats_interval):
            s = self.stats.snapshot(reset=True)
            log.info("[rate %ds] get_peers=%d  announce_peer=%d  discovered=%d  unique_infohashes=%d  "
                     "responses=%d  admitted=%d  probes=%d  pool=%d",
                     round(s["window_s"]), s.get("get_peers", 0), s.get("announce_peer", 0),
                     s.get("discovered", 0), s["unique_ih"], s.get("nodes", 0),
                     s.get("admitted", 0), s.get("find_node_sent", 0), len(self.pool))

    def _spawn(self, name: str, target: Callable[[], None]):
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        self.threads.append(t)

    def start(self):
        self.join_dht()
        self._spawn("receive", lambda: self.transport.receive_loop(self.handler.handle, self._stop))
        self._spawn("rejoin", self._rejoin_loop)
        self._spawn("drain", self._drain_loop)
        if self.stats is not None:
            self._spawn("stats", self._stats_loop)

    def stop(self):
        self._stop.set()

    def wait(self, timeout: Optional[float] = None):
        for t in self.threads:
            t.join(timeout)

    def close(self):
        self.stop()
        self.transport.close()

    def run_forever(self):
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()
            self.wait(timeout=2.0)
            self.transport.close()


# ---------------- CLI ----------------
def _positive_int(value: str) -> int:
    n = int(value)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return n


def _host_port(value: str) -> Address:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit() or not 1 <= int(port) <= 65535:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host, int(port)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Passive BitTorrent DHT sniffer")
    ap.add_argument("--bind", type=str, default=DEFAULT_BIND, help="Bind address")
    ap.add_argument("--port", type=int, default=DEFAULT_PORT, help="UDP port to bind")
    ap.add_argument("--max-nodes", type=_positive_int, default=NODE_POLL_MAX,
                    help="Node pool capacity and find_node probes per second")
    ap.add_argument("--rejoin-interval", type=float, default=RE_JOIN_DHT_INTERVAL,
                    help="Seconds between empty-pool checks")
    ap.add_argument("--stats-every", type=float, default=STATS_EVERY,
                    help="Seconds between rate log lines (0 disables)")
    ap.add_argument("--bootstrap", type=_host_port, action="append", metavar="HOST:PORT",
                    help="Bootstrap node (repeatable, replaces the built-in list)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        crawler = Crawler(args.bind, args.port, node_poll_max=args.max_nodes,
                          rejoin_interval=args.rejoin_interval,
                          bootstrap_nodes=args.bootstrap,
                          stats_interval=args.stats_every)
    except OSError as e:
        log.error("cannot bind UDP %s:%s: %s", args.bind, args.port, e)
        return 1

    def on_exit(*_):
        log.info("[*] Shutting down sniffer")
        crawler.stop()

    signal.signal(signal.SIGINT, on_exit)
    signal.signal(signal.SIGTERM, on_exit)

    log.info("[*] DHT sniffer starting…")
    log.info("    Node ID: %s  UDP:%s:%s  max_nodes=%d",
             crawler.nid.hex(), args.bind, args.port, args.max_nodes)
    crawler.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
