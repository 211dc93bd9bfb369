"""
Service orchestration for TSocks.

ServiceOrchestrator owns one Session at a time and sequences the
interface, the tunnel engine, the proxy supervisor and the stats timer.

State machine:
    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED
    STARTING/RUNNING -> FAILED -> STOPPED   (unrecoverable error, after teardown)

connect() and disconnect() may be called from any thread in any state;
both run on a single control worker and return a Future.
"""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import STAT_HOST, ConfigSource, RuntimeConfig, TunnelConfig, parse_tunnel_config
from .engine import NativeTunnelEngine, TunnelEngine
from .exceptions import ConfigInvalid, ProxyFatal, ProxyLaunchFailed, TSocksError
from .proxy import ProxyProcessSupervisor, ProxyStartResult
from .state import ServiceState, Session, StateStore
from .stats import ProxyTrafficMonitor, StatsAggregator, StatsBroadcaster, StatsTimer
from .tun_interface import VirtualInterfaceBuilder

logger = logging.getLogger(__name__)

StateListener = Callable[[ServiceState], None]
Notifier = Callable[[TSocksError], None]


def _log_notification(error: TSocksError) -> None:
    logger.error(f"[SERVICE] {error}")


class ServiceOrchestrator:
    """
    Top-level controller of the tunnel.

    Args:
        runtime: Paths and timing knobs
        source: Supplies tunnel config path, routing policy and proxy config
        engine: Tunnel engine (defaults to the native library)
        builder: Interface builder (defaults to the Linux TUN backend)
        store: Persisted enabled/auto_reconnect flags
        broadcaster: Where stats snapshots are published
        notifier: Receives errors that must reach the user
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        source: ConfigSource,
        engine: Optional[TunnelEngine] = None,
        builder: Optional[VirtualInterfaceBuilder] = None,
        store: Optional[StateStore] = None,
        broadcaster: Optional[StatsBroadcaster] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.runtime = runtime
        self.source = source
        self.engine = engine or NativeTunnelEngine(
            os.path.join(runtime.native_lib_dir, runtime.engine_library)
        )
        self.builder = builder or VirtualInterfaceBuilder()
        self.store = store or StateStore(runtime.state_path)
        self.broadcaster = broadcaster or StatsBroadcaster()
        self.notifier = notifier or _log_notification

        self._lock = threading.RLock()
        self._state = ServiceState.STOPPED
        self._session: Optional[Session] = None
        self._listeners: List[StateListener] = []
        # Control worker serializes connect/disconnect; the task pool runs background work
        self._control = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tsocks-control")
        self._tasks = ThreadPoolExecutor(max_workers=2, thread_name_prefix="tsocks-task")

        self.last_error: Optional[TSocksError] = None
        self.warnings: List[str] = []

    # ---------------- State ----------------

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    def add_listener(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _set_state(self, state: ServiceState) -> None:
        with self._lock:
            if self._state == state:
                return
            logger.debug(f"[SERVICE] {self._state.name} -> {state.name}")
            self._state = state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error(f"[SERVICE] State listener failed on {state.name}: {e}")

    def _notify(self, error: TSocksError) -> None:
        self.last_error = error
        if not error.user_visible:
            return
        try:
            self.notifier(error)
        except Exception as e:
            logger.error(f"[SERVICE] Notifier failed: {e}")

    def _warn(self, message: str) -> None:
        logger.warning(f"[SERVICE] {message}")
        self.warnings.append(message)

    # ---------------- Commands ----------------

    def connect(self) -> "Future[ServiceState]":
        """Bring the tunnel up. No-op if already starting or running."""
        if self._state in (ServiceState.STARTING, ServiceState.RUNNING):
            done: Future = Future()
            done.set_result(self._state)
            return done
        return self._control.submit(self._connect)

    def disconnect(self) -> "Future[ServiceState]":
        """Tear the tunnel down. Safe in any state."""
        return self._control.submit(self._disconnect)

    def revoke(self) -> "Future[ServiceState]":
        """The OS withdrew the tunnel; handled exactly like disconnect()."""
        logger.info("[SERVICE] Tunnel revoked by the system")
        return self.disconnect()

    def check_desync(self) -> Optional["Future[ServiceState]"]:
        """
        Force teardown if the persisted flag and the OS disagree.

        Returns:
            The disconnect future when a desync was found, else None
        """
        if not self.store.enabled:
            return None
        name = self._interface_name()
        if self.builder.is_active(name):
            return None
        logger.warning(f"[SERVICE] Marked enabled but {name} is not active; forcing stop")
        return self.disconnect()

    def _interface_name(self) -> str:
        session = self._session
        if session is not None and session.handle is not None:
            return session.handle.name
        try:
            return parse_tunnel_config(self.source.tunnel_config_path).name
        except ConfigInvalid:
            return TunnelConfig().name

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Disconnect and release the worker threads."""
        self.disconnect().result(timeout)
        self._control.shutdown(wait=True)
        self._tasks.shutdown(wait=True)

    # ---------------- Connect ----------------

    def _connect(self) -> ServiceState:
        with self._lock:
            if self._state in (ServiceState.STARTING, ServiceState.RUNNING):
                return self._state
            self.warnings = []
            self.last_error = None
            session = Session()
            self._session = session
        self._set_state(ServiceState.STARTING)

        try:
            if not self.source.wait_loaded(self.runtime.config_load_timeout):
                self._warn("Configuration may not be fully loaded, continuing")

            config_path = self.source.tunnel_config_path
            policy = self.source.routing_policy()
            proxy_config = self.source.proxy_config()

            session.handle = self.builder.build(config_path, policy, proxy_config)
            logger.info(f"[SERVICE] Interface {session.handle.name} ready")

            self.engine.start(config_path, session.handle.fd)
            session.engine_started = True

            monitor = None
            if self.runtime.stat_port is not None:
                monitor = ProxyTrafficMonitor(STAT_HOST, self.runtime.stat_port)
            session.supervisor = ProxyProcessSupervisor(
                self.runtime,
                source=self.source,
                on_fatal=lambda fatal: self._on_proxy_fatal(session, fatal),
                monitor=monitor,
            )
            session.proxy_task = self._tasks.submit(
                self._start_proxy, session, proxy_config, policy.exclude_region_ips
            )

            session.aggregator = StatsAggregator(
                self.engine,
                interval=self.runtime.stats_interval,
                threshold=self.runtime.min_rate_threshold,
                proxy_monitor=monitor,
            )
            session.stats_timer = StatsTimer(
                session.aggregator, self.broadcaster, self.runtime.stats_interval
            )
            session.stats_timer.start()

            self.store.enabled = True
            self.store.record_connection()
        except Exception as e:
            error = e if isinstance(e, TSocksError) else None
            logger.error(f"[SERVICE] Connect failed: {e}")
            self._fail(session, error)
            raise

        self._set_state(ServiceState.RUNNING)
        logger.info("[SERVICE] Connected")
        return ServiceState.RUNNING

    def _fail(self, session: Session, error: Optional[TSocksError]) -> None:
        """Unwind a session that cannot continue."""
        with self._lock:
            if self._session is session:
                self._session = None
        # Listeners of FAILED read last_error to decide on a retry
        if error is not None:
            self.last_error = error
        self._set_state(ServiceState.FAILED)
        self._teardown(session)
        self._set_state(ServiceState.STOPPED)
        if error is not None:
            self._notify(error)

    def _start_proxy(self, session: Session, proxy_config, use_acl: bool) -> Optional[ProxyStartResult]:
        # Holding the lock keeps a concurrent teardown from missing the new process
        with self._lock:
            if self._session is not session or self._state not in (
                ServiceState.STARTING, ServiceState.RUNNING
            ):
                return None
            try:
                result = session.supervisor.start(proxy_config, use_acl=use_acl)
            except ProxyLaunchFailed as e:
                self._warn(f"{e}; tunnel stays up without proxy")
                self._notify(e)
                return None

        if result == ProxyStartResult.NO_USABLE_SERVER:
            self._warn("No enabled proxy server; tunnel stays up without proxy")
        return result

    def _on_proxy_fatal(self, session: Session, fatal: ProxyFatal) -> None:
        if self._session is not session:
            return
        logger.error(f"[SERVICE] {fatal}; disconnecting")
        self._control.submit(self._disconnect_session, session, fatal)

    def _disconnect_session(self, session: Session, failure: TSocksError) -> ServiceState:
        # A newer session may have replaced the one that failed
        if self._session is not session:
            return self._state
        return self._disconnect(failure)

    # ---------------- Disconnect ----------------

    def _disconnect(self, failure: Optional[TSocksError] = None) -> ServiceState:
        with self._lock:
            session, self._session = self._session, None
            already_stopped = session is None and self._state == ServiceState.STOPPED

        if not already_stopped:
            if failure is not None:
                self.last_error = failure
            self._set_state(ServiceState.FAILED if failure else ServiceState.STOPPING)
            if session is not None:
                self._teardown(session)

        try:
            self.store.enabled = False
        except OSError as e:
            logger.error(f"[SERVICE] Cannot persist disabled state: {e}")

        if not already_stopped:
            self.broadcaster.clear()
            self._set_state(ServiceState.STOPPED)
            logger.info("[SERVICE] Disconnected")
        if failure is not None:
            self._notify(failure)
        return ServiceState.STOPPED

    def _release_actions(self, session: Session) -> List[Tuple[str, Callable[[], None]]]:
        """Release steps in teardown order."""
        actions = []
        if session.stats_timer is not None:
            actions.append(("stats timer", session.stats_timer.stop))
        if session.engine_started:
            actions.append(("tunnel engine", self.engine.stop))
        if session.supervisor is not None:
            actions.append(("proxy supervisor", session.supervisor.stop))
        if session.handle is not None:
            actions.append((f"interface {session.handle.name}", session.handle.close))
        return actions

    def _teardown(self, session: Session) -> None:
        for name, release in self._release_actions(session):
            try:
                release()
            except Exception as e:
                logger.error(f"[SERVICE] Releasing {name} failed: {e}")
        session.engine_started = False

    # ---------------- Status ----------------

    def status(self) -> Dict[str, Any]:
        session = self._session
        snapshot = session.last_snapshot if session else None
        return {
            "state": self._state.value,
            "enabled": self.store.enabled,
            "auto_reconnect": self.store.auto_reconnect,
            "interface": session.handle.name if session and session.handle else None,
            "uptime": session.uptime if session else 0.0,
            "restart_count": session.restart_count if session else 0,
            "proxy_running": bool(session and session.supervisor and session.supervisor.is_running()),
            "upload_speed": snapshot.upload_speed if snapshot else None,
            "download_speed": snapshot.download_speed if snapshot else None,
            "last_error": str(self.last_error) if self.last_error else None,
        }
