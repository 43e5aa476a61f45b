from collections import defaultdict
import threading
import time


class StatsTracker:
    """Per-window traffic counters for the periodic rate line."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reset()

    def _reset(self):
        self.counts = defaultdict(int)
        self.infohashes = set()
        self.since = time.time()

    def update(self, kind, n=1):
        with self._lock:
            self.counts[kind] += n

    def seen_infohash(self, ih_hex):
        with self._lock:
            self.infohashes.add(ih_hex)

    def snapshot(self, reset=False):
        with self._lock:
            snap = dict(self.counts)
            snap['unique_ih'] = len(self.infohashes)
            snap['window_s'] = time.time() - self.since
            if reset:
                self._reset()
        return snap
