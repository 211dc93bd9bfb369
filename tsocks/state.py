"""
State management for TSocks.

Holds the service state enum, the persisted enabled/autoReconnect flags,
and the per-connection Session container.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import TYPE_CHECKING, Any, Dict, Optional

import yaml

from .config import STATE_FILE, chmod600, ensure_dir

if TYPE_CHECKING:
    from .proxy import ProxyProcessSupervisor
    from .stats import StatsAggregator, StatsTimer, TrafficSnapshot
    from .tun_interface import InterfaceHandle

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """Lifecycle of the tunnel service."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class StateStore:
    """
    Persisted service flags.

    Stores `enabled` and `auto_reconnect` plus connection bookkeeping in a
    small YAML file, written atomically on every change.
    """

    def __init__(self, path: str = STATE_FILE):
        self._lock = RLock()
        self._path = path
        self._state: Dict[str, Any] = self._load()

    @property
    def path(self) -> str:
        return self._path

    def _load(self) -> Dict[str, Any]:
        """Load state from disk."""
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
                return data if isinstance(data, dict) else {}
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"[STATE] Discarding unreadable {self._path}: {e}")
            return {}

    def _save(self) -> None:
        """Save state to disk atomically."""
        ensure_dir(os.path.dirname(self._path))
        tmp = self._path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(self._state, f, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        chmod600(tmp)
        os.replace(tmp, self._path)

    def _set(self, key: str, value: Any) -> None:
        with self._lock:
            if self._state.get(key) == value:
                return
            self._state[key] = value
            self._save()

    @property
    def enabled(self) -> bool:
        with self._lock:
            return bool(self._state.get("enabled", False))

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._set("enabled", bool(value))

    @property
    def auto_reconnect(self) -> bool:
        with self._lock:
            return bool(self._state.get("auto_reconnect", False))

    @auto_reconnect.setter
    def auto_reconnect(self, value: bool) -> None:
        self._set("auto_reconnect", bool(value))

    @property
    def connection_count(self) -> int:
        with self._lock:
            return int(self._state.get("connection_count", 0))

    @property
    def last_connected_at(self) -> Optional[float]:
        with self._lock:
            return self._state.get("last_connected_at")

    def record_connection(self) -> None:
        """Bump the connection counter and remember when it happened."""
        with self._lock:
            self._state["connection_count"] = self.connection_count + 1
            self._state["last_connected_at"] = time.time()
            self._save()


@dataclass
class Session:
    """
    Live state of one connect/disconnect cycle.

    Created by connect() and dropped as a whole by disconnect(); nothing
    in here outlives the cycle.
    """

    handle: Optional["InterfaceHandle"] = None
    supervisor: Optional["ProxyProcessSupervisor"] = None
    aggregator: Optional["StatsAggregator"] = None
    stats_timer: Optional["StatsTimer"] = None
    proxy_task: Optional[Future] = None
    engine_started: bool = False
    connected_since: float = field(default_factory=time.monotonic)

    @property
    def restart_count(self) -> int:
        return self.supervisor.restart_count if self.supervisor else 0

    @property
    def last_snapshot(self) -> Optional["TrafficSnapshot"]:
        return self.aggregator.last_snapshot if self.aggregator else None

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.connected_since
