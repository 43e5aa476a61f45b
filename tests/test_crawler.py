import argparse
import os
import socket
import time

import pytest

from crawler import Crawler, _host_port, build_parser, main, print_discovery
from dht_krpc import Discovery, query, response
from dht_utils import Candidate, compact_node, nearest_node_id

BOOTSTRAP = [("127.0.0.1", 16881), ("127.0.0.2", 16881)]


@pytest.fixture
def crawler(transport):
    c = Crawler("0.0.0.0", 0, node_poll_max=50, rejoin_interval=0.01,
                bootstrap_nodes=BOOTSTRAP, on_discovery=lambda d: None,
                transport=transport, stats_interval=0)
    yield c
    c.stop()
    c.wait(timeout=2)


def wait_for(cond, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if cond():
            return True
        time.sleep(0.01)
    return cond()


def find_nodes(transport):
    return [(m, a) for m, a in transport.sent if m.get(b"q") == b"find_node"]


def test_join_sends_unbiased_find_node_to_bootstrap(crawler, transport):
    crawler.join_dht()
    sent = find_nodes(transport)
    assert [a for _, a in sent] == BOOTSTRAP
    for msg, _ in sent:
        assert msg[b"y"] == b"q"
        assert msg[b"a"][b"id"] == crawler.nid
        assert len(msg[b"a"][b"target"]) == 20
        assert len(msg[b"t"]) == 2


def test_rejoin_only_when_pool_empty(crawler, transport):
    assert crawler.rejoin_once()
    assert len(transport.sent) == len(BOOTSTRAP)

    crawler.pool.push(Candidate("5.6.7.8", 6969, os.urandom(20)))
    assert not crawler.rejoin_once()
    assert len(transport.sent) == len(BOOTSTRAP)


def test_drain_empty_pool_sends_nothing(crawler, transport):
    assert not crawler.drain_once()
    assert transport.sent == []


def test_response_to_probe_end_to_end(crawler, transport):
    x = os.urandom(20)
    reply = response(b"tt", {b"id": os.urandom(20), b"nodes": compact_node("5.6.7.8", 6969, x)})
    crawler.handler.handle(reply, BOOTSTRAP[0])

    assert len(crawler.pool) == 1

    assert crawler.drain_once()
    assert crawler.pool.is_empty()
    msg, addr = transport.sent[-1]
    assert addr == ("5.6.7.8", 6969)
    assert msg[b"q"] == b"find_node"
    assert msg[b"a"][b"id"] == nearest_node_id(x, crawler.nid)
    assert msg[b"a"][b"target"] != x


def test_pool_admission_uses_crawler_identity(crawler):
    nodes = compact_node("5.6.7.8", 6969, crawler.nid) + compact_node("0.0.0.0", 6969, os.urandom(20))
    crawler.handler.handle(response(b"tt", {b"nodes": nodes}), BOOTSTRAP[0])
    assert crawler.pool.is_empty()


def test_loops_run_and_stop(crawler, transport):
    node = Candidate("5.6.7.8", 6969, os.urandom(20))
    crawler.start()
    assert [a for _, a in transport.sent[:2]] == BOOTSTRAP

    # empty pool: the rejoin loop keeps re-bootstrapping
    assert wait_for(lambda: len(transport.sent) > 2 * len(BOOTSTRAP))

    crawler.pool.push(node)
    assert wait_for(lambda: any(a == node.address for _, a in list(transport.sent)))

    crawler.stop()
    crawler.wait(timeout=2)
    assert crawler.stopped
    assert all(not t.is_alive() for t in crawler.threads)
    assert {t.name for t in crawler.threads} == {"receive", "rejoin", "drain"}


def test_stats_thread_is_optional(transport):
    c = Crawler("0.0.0.0", 0, rejoin_interval=10, bootstrap_nodes=BOOTSTRAP,
                transport=transport, stats_interval=0.01)
    c.start()
    try:
        assert "stats" in {t.name for t in c.threads}
    finally:
        c.close()
        c.wait(timeout=2)
    assert transport.closed


def test_disabled_stats_keep_nothing_per_infohash(crawler, transport):
    for _ in range(2000):
        crawler.handler.handle(query(b"gp", b"get_peers", {b"id": os.urandom(20), b"info_hash": os.urandom(20)}),
                               BOOTSTRAP[0])
    crawler.send_find_node(BOOTSTRAP[0])

    assert crawler.stats is None
    assert crawler.handler.stats is None
    assert len(transport.sent) == 2001


def test_enabled_stats_count_probes(transport):
    c = Crawler("0.0.0.0", 0, bootstrap_nodes=BOOTSTRAP, transport=transport, stats_interval=60)
    c.join_dht()
    c.handler.handle(query(b"gp", b"get_peers", {b"id": os.urandom(20), b"info_hash": os.urandom(20)}),
                     BOOTSTRAP[0])
    snap = c.stats.snapshot(reset=True)
    assert snap["find_node_sent"] == len(BOOTSTRAP)
    assert snap["unique_ih"] == 1
    assert c.stats.snapshot()["unique_ih"] == 0


def test_print_discovery(capsys):
    print_discovery(Discovery("ab" * 20, "1.2.3.4", 6881))
    out = capsys.readouterr().out
    assert out == f"magnet:?xt=urn:btih:{'ab' * 20}, address:1.2.3.4:6881\n"


# ---------------- CLI ----------------
def test_host_port():
    assert _host_port("router.bittorrent.com:6881") == ("router.bittorrent.com", 6881)


@pytest.mark.parametrize("value", ["nohost", ":6881", "host:", "host:0", "host:70000", "host:abc"])
def test_host_port_rejects(value):
    with pytest.raises(argparse.ArgumentTypeError):
        _host_port(value)


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.bind == "0.0.0.0"
    assert args.port == 6882
    assert args.max_nodes == 500
    assert args.rejoin_interval == 3.0
    assert args.bootstrap is None


def test_parser_options():
    args = build_parser().parse_args([
        "--bind", "127.0.0.1", "--port", "7000", "--max-nodes", "20",
        "--bootstrap", "a.example:1", "--bootstrap", "b.example:2", "-v",
    ])
    assert args.max_nodes == 20
    assert args.bootstrap == [("a.example", 1), ("b.example", 2)]
    assert args.verbose


@pytest.mark.parametrize("value", ["0", "-3", "many"])
def test_parser_rejects_bad_pool_size(value):
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--max-nodes", value])


def test_main_reports_bind_failure():
    busy = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    busy.bind(("127.0.0.1", 0))
    try:
        port = busy.getsockname()[1]
        assert main(["--bind", "127.0.0.1", "--port", str(port)]) == 1
    finally:
        busy.close()
