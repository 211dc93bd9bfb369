"""
Traffic statistics for TSocks.

Polls the tunnel engine on a fixed interval, turns cumulative counters into
rates and publishes the resulting snapshots to any number of subscribers.
"""

from __future__ import annotations

import logging
import socket
import struct
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Iterator, List, Optional, Tuple

from .config import MIN_RATE_THRESHOLD, STAT_HOST, STATS_INTERVAL, SUBSCRIBER_BUFFER
from .engine import EngineCounters, TunnelEngine
from .exceptions import StatsUnavailable

logger = logging.getLogger(__name__)


# ---------------- Formatting ----------------

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB", "BB")
SPEED_UNITS = ("B/s", "KB/s", "MB/s", "GB/s")
FULL_SPEED_UNITS = tuple(f"{unit}/s" for unit in SIZE_UNITS)


def _format_with_units(value: float, units: Tuple[str, ...]) -> str:
    idx = 0
    value = float(value)
    while value >= 1024.0 and idx < len(units) - 1:
        value /= 1024.0
        idx += 1
    return "%.2f %s" % (value, units[idx])


def format_bytes(num_bytes: float) -> str:
    """Human readable size, e.g. "1.25 MB"."""
    return _format_with_units(num_bytes, SIZE_UNITS)


def format_speed(bytes_per_second: float) -> str:
    """Human readable rate capped at GB/s, e.g. "512.00 B/s"."""
    return _format_with_units(bytes_per_second, SPEED_UNITS)


def format_bytes_speed(bytes_per_second: float) -> str:
    """Human readable rate over the full unit range."""
    return _format_with_units(bytes_per_second, FULL_SPEED_UNITS)


# ---------------- Snapshot ----------------

@dataclass(frozen=True)
class TrafficSnapshot:
    """One poll's worth of traffic figures."""

    upload_rate: float = 0.0           # bytes/s
    download_rate: float = 0.0         # bytes/s
    upload_packet_rate: float = 0.0    # packets/s
    download_packet_rate: float = 0.0  # packets/s
    upload_total: int = 0
    download_total: int = 0
    proxy_upload_total: int = 0
    proxy_download_total: int = 0
    timestamp: float = field(default=0.0, compare=False)

    @property
    def upload_speed(self) -> str:
        return format_speed(self.upload_rate)

    @property
    def download_speed(self) -> str:
        return format_speed(self.download_rate)

    def is_idle(self) -> bool:
        return not any((
            self.upload_rate, self.download_rate,
            self.upload_packet_rate, self.download_packet_rate,
        ))

    def format_summary(self) -> str:
        return "\n".join([
            f"[STATS] ↑ {self.upload_speed}  ↓ {self.download_speed}",
            f"  Packets: ↑ {self.upload_packet_rate:.0f} pkt/s  ↓ {self.download_packet_rate:.0f} pkt/s",
            f"  Total: ↑ {format_bytes(self.upload_total)}  ↓ {format_bytes(self.download_total)}",
            f"  Proxy: ↑ {format_bytes(self.proxy_upload_total)}  ↓ {format_bytes(self.proxy_download_total)}",
        ])


# ---------------- Proxy Traffic Monitor ----------------

class ProxyTrafficMonitor:
    """
    Listener for the proxy's cumulative traffic reports.

    The proxy connects to the stat address and writes two little-endian
    unsigned 64-bit integers (tx, rx). Each connection carries one report.
    """

    REPORT = struct.Struct("<QQ")

    def __init__(self, host: str = STAT_HOST, port: int = 0):
        self._host = host
        self._port = port
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._totals: Tuple[int, int] = (0, 0)

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); port is resolved once started."""
        if self._sock is not None:
            host, port = self._sock.getsockname()[:2]
            return (host, port)
        return (self._host, self._port)

    @property
    def stat_addr(self) -> str:
        host, port = self.address
        return f"{host}:{port}"

    @property
    def totals(self) -> Tuple[int, int]:
        """Latest (tx, rx) reported by the proxy."""
        return self._totals

    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, self._port))
            sock.listen(4)
        except OSError:
            sock.close()
            raise
        sock.settimeout(0.5)
        self._sock = sock
        self._totals = (0, 0)
        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, name="proxy-stats", daemon=True)
        self._thread.start()
        logger.debug(f"[STATS] Listening for proxy reports on {self.stat_addr}")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _accept_loop(self) -> None:
        while self._running:
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.error(f"[STATS] Proxy report listener failed: {e}")
                break
            with conn:
                conn.settimeout(1.0)
                try:
                    self._read_report(conn)
                except OSError as e:
                    logger.debug(f"[STATS] Dropped proxy report: {e}")

    def _read_report(self, conn: socket.socket) -> None:
        buf = b""
        while len(buf) < self.REPORT.size:
            chunk = conn.recv(self.REPORT.size - len(buf))
            if not chunk:
                return
            buf += chunk
        self._totals = self.REPORT.unpack(buf)


# ---------------- Aggregator ----------------

class StatsAggregator:
    """
    Converts cumulative engine counters into per-second rates.

    Called from a single timer thread. The latest snapshot is published by
    plain attribute assignment, so readers on other threads never block
    the poller.
    """

    def __init__(
        self,
        engine: TunnelEngine,
        interval: float = STATS_INTERVAL,
        threshold: float = MIN_RATE_THRESHOLD,
        proxy_monitor: Optional[ProxyTrafficMonitor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.interval = interval
        self.threshold = threshold
        self.proxy_monitor = proxy_monitor
        self._clock = clock
        self._previous: Optional[EngineCounters] = None
        self._last_poll: Optional[float] = None
        self._resync = False
        self._last_snapshot: Optional[TrafficSnapshot] = None

    @property
    def last_snapshot(self) -> Optional[TrafficSnapshot]:
        return self._last_snapshot

    def reset(self) -> None:
        """Forget previous counters; the next poll starts from scratch."""
        self._previous = None
        self._last_poll = None

    def _read_counters(self) -> EngineCounters:
        try:
            counters = self.engine.stats()
        except Exception as e:
            raise StatsUnavailable(f"engine counters unreadable: {e}") from e
        if counters is None:
            raise StatsUnavailable("engine returned no counters")
        return counters

    def _filter(self, rate: float) -> float:
        return 0.0 if rate < self.threshold else rate

    def poll(self) -> TrafficSnapshot:
        now = self._clock()
        try:
            counters = self._read_counters()
        except StatsUnavailable as e:
            logger.debug(f"[STATS] {e}")
            self.reset()
            # Counters read after a gap only re-establish the baseline
            self._resync = True
            snapshot = TrafficSnapshot(timestamp=now)
            self._last_snapshot = snapshot
            return snapshot

        if self._last_poll is None:
            elapsed = self.interval
        else:
            elapsed = now - self._last_poll
            if elapsed <= 0:
                elapsed = self.interval
        previous = counters if self._resync else self._previous or (0, 0, 0, 0)
        self._resync = False

        tx_pkt, tx_bytes, rx_pkt, rx_bytes = (
            max(0, current - before) / elapsed
            for current, before in zip(counters, previous)
        )

        proxy_tx, proxy_rx = self.proxy_monitor.totals if self.proxy_monitor else (0, 0)

        snapshot = TrafficSnapshot(
            upload_rate=self._filter(tx_bytes),
            download_rate=self._filter(rx_bytes),
            upload_packet_rate=tx_pkt,
            download_packet_rate=rx_pkt,
            upload_total=counters[1],
            download_total=counters[3],
            proxy_upload_total=proxy_tx,
            proxy_download_total=proxy_rx,
            timestamp=now,
        )

        self._previous = counters
        self._last_poll = now
        self._last_snapshot = snapshot
        return snapshot


# ---------------- Broadcast ----------------

class Subscription:
    """
    A subscriber's bounded inbox.

    When the inbox is full the oldest snapshot is dropped; the producer
    never waits.
    """

    def __init__(self, broadcaster: "StatsBroadcaster", maxlen: int):
        self._broadcaster = broadcaster
        self._queue: Deque[TrafficSnapshot] = deque(maxlen=maxlen)
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, snapshot: TrafficSnapshot) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(snapshot)
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[TrafficSnapshot]:
        """Next snapshot, or None on timeout or close."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._queue or self._closed, timeout):
                return None
            if self._queue:
                return self._queue.popleft()
            return None

    def drain(self) -> List[TrafficSnapshot]:
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
            return items

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[TrafficSnapshot]:
        while True:
            item = self.get()
            if item is None:
                return
            yield item


class StatsBroadcaster:
    """Single producer, many consumers, latest value replayed on subscribe."""

    def __init__(self, buffer_size: int = SUBSCRIBER_BUFFER):
        self.buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self._latest: Optional[TrafficSnapshot] = None

    @property
    def latest(self) -> Optional[TrafficSnapshot]:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.buffer_size)
        with self._lock:
            self._subscribers.append(sub)
            latest = self._latest
        if latest is not None:
            sub._offer(latest)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, snapshot: TrafficSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            subscribers = list(self._subscribers)
        for sub in subscribers:
            sub._offer(snapshot)

    def clear(self) -> None:
        """Drop the replay value (used when a session ends)."""
        with self._lock:
            self._latest = None


# ---------------- Timer ----------------

class StatsTimer:
    """Background thread running one poll-and-publish cycle per interval."""

    def __init__(
        self,
        aggregator: StatsAggregator,
        broadcaster: StatsBroadcaster,
        interval: float = STATS_INTERVAL,
    ):
        self.aggregator = aggregator
        self.broadcaster = broadcaster
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stats-timer", daemon=True)
        self._thread.start()
        logger.debug(f"[STATS] Polling every {self.interval}s")

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                snapshot = self.aggregator.poll()
            except Exception as e:
                logger.error(f"[STATS] Poll failed: {e}")
                continue
            self.broadcaster.publish(snapshot)
