"""
Proxy process supervision for TSocks.

Launches the local SOCKS5 proxy binary, keeps its output pipe drained and
restarts it with a bounded budget when it exits on its own.

State machine:
    IDLE -> LAUNCHING -> RUNNING -> (EXITED -> RESTART_PENDING -> LAUNCHING)* -> STOPPED
"""

import json
import logging
import os
import re
import shutil
import subprocess
import threading
from enum import Enum
from typing import Callable, List, Optional

from .config import (
    ACL_FILE_NAME,
    ASSETS_DIR,
    KNOWN_PLUGINS,
    PROXY_CONFIG_NAME,
    ConfigSource,
    ProxyConfig,
    RuntimeConfig,
    chmod600,
    ensure_dir,
)
from .exceptions import ProxyCrashed, ProxyFatal, ProxyLaunchFailed
from .stats import ProxyTrafficMonitor

logger = logging.getLogger(__name__)

# Output lines worth keeping; everything else is drained and dropped
_ERROR_LINE = re.compile(r"\b(ERROR|FATAL|PANIC|panicked)\b", re.IGNORECASE)
_WARN_LINE = re.compile(r"\bWARN(ING)?\b", re.IGNORECASE)


class ProxyStartResult(Enum):
    STARTED = "started"
    NO_USABLE_SERVER = "no_usable_server"


class SupervisorState(Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    EXITED = "exited"
    RESTART_PENDING = "restart_pending"
    STOPPED = "stopped"


class ProxyProcessSupervisor:
    """
    Owner of the proxy subprocess.

    One instance per session. The restart counter starts at zero on every
    start() and is only advanced by the monitor thread.

    Args:
        runtime: Paths and timing knobs (restart_limit, restart_backoff, stop_timeout)
        source: Re-read before each relaunch so retries see policy updates
        on_fatal: Called once with ProxyFatal when the restart budget is spent
        monitor: Traffic report listener passed to the proxy as --stat-addr
    """

    def __init__(
        self,
        runtime: RuntimeConfig,
        source: Optional[ConfigSource] = None,
        on_fatal: Optional[Callable[[ProxyFatal], None]] = None,
        monitor: Optional[ProxyTrafficMonitor] = None,
        assets_dir: str = ASSETS_DIR,
    ):
        self.runtime = runtime
        self.source = source
        self.on_fatal = on_fatal
        self.monitor = monitor
        self.assets_dir = assets_dir

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._state = SupervisorState.IDLE
        self._process: Optional[subprocess.Popen] = None
        self._monitor_thread: Optional[threading.Thread] = None
        self._drain_thread: Optional[threading.Thread] = None
        self._config: Optional[ProxyConfig] = None
        self._use_acl = False
        self._restart_count = 0

        self.launch_count = 0
        self.last_exit_code: Optional[int] = None

    # ---------------- Introspection ----------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def restart_count(self) -> int:
        return self._restart_count

    @property
    def pid(self) -> Optional[int]:
        proc = self._process
        return proc.pid if proc is not None else None

    def is_running(self) -> bool:
        """True while the proxy is up or being restarted."""
        return self._state in (
            SupervisorState.LAUNCHING,
            SupervisorState.RUNNING,
            SupervisorState.EXITED,
            SupervisorState.RESTART_PENDING,
        )

    # ---------------- Launch ----------------

    def start(self, proxy_config: ProxyConfig, use_acl: bool = False) -> ProxyStartResult:
        """
        Launch the proxy.

        Returns:
            NO_USABLE_SERVER without spawning anything if no server is enabled

        Raises:
            ProxyLaunchFailed: The binary could not be spawned; no restart is scheduled
        """
        with self._lock:
            if self.is_running():
                logger.info("[PROXY] Already running")
                return ProxyStartResult.STARTED

            if not proxy_config.enabled_servers():
                logger.warning("[PROXY] No enabled server; proxy not started")
                return ProxyStartResult.NO_USABLE_SERVER

            self._stop_event.clear()
            self._restart_count = 0
            self._config = proxy_config
            self._use_acl = use_acl
            self._start_monitor()
            try:
                self._launch()
            except ProxyLaunchFailed:
                self._stop_monitor()
                raise
            return ProxyStartResult.STARTED

    def _start_monitor(self) -> None:
        if self.monitor is None or self.monitor.is_running():
            return
        try:
            self.monitor.start()
        except OSError as e:
            logger.warning(f"[PROXY] Traffic report listener unavailable: {e}")

    def _stop_monitor(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()

    def resolve_plugin(self, name: str) -> Optional[str]:
        """Absolute path for a bundled plugin, or None for unknown names."""
        executable = KNOWN_PLUGINS.get(name)
        if executable is None:
            return None
        path = os.path.join(self.runtime.native_lib_dir, executable)
        logger.debug(f"[PROXY] Plugin {name} -> {path}")
        return path

    def write_config(self, proxy_config: ProxyConfig) -> str:
        """Serialize the effective config to the private config directory."""
        directory = self.runtime.private_config_dir
        ensure_dir(directory)
        path = os.path.join(directory, PROXY_CONFIG_NAME)
        tmp = path + ".tmp"
        document = proxy_config.to_dict(self.resolve_plugin)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        chmod600(tmp)
        os.replace(tmp, path)
        return path

    def extract_acl(self) -> Optional[str]:
        """Copy the bundled ACL file to private storage once."""
        target = os.path.join(self.runtime.acl_dir, ACL_FILE_NAME)
        if os.path.isfile(target) and os.path.getsize(target) > 0:
            return target

        source = os.path.join(self.assets_dir, ACL_FILE_NAME)
        try:
            ensure_dir(self.runtime.acl_dir)
            shutil.copyfile(source, target)
            chmod600(target)
        except OSError as e:
            logger.error(f"[PROXY] Cannot extract ACL {source}: {e}")
            return None
        logger.info(f"[PROXY] Extracted ACL to {target}")
        return target

    def build_command(self, config_path: str) -> List[str]:
        cmd = [self.runtime.proxy_binary_path, "-c", config_path]
        if self.monitor is not None and self.monitor.is_running():
            cmd += ["--stat-addr", self.monitor.stat_addr]
        if self._use_acl:
            acl = self.extract_acl()
            if acl:
                cmd += ["--acl", acl]
        return cmd

    def _launch(self) -> None:
        """Spawn one proxy instance. Caller holds the lock."""
        self._state = SupervisorState.LAUNCHING
        binary = self.runtime.proxy_binary_path

        try:
            config_path = self.write_config(self._config)
        except OSError as e:
            self._state = SupervisorState.STOPPED
            raise ProxyLaunchFailed(binary, f"cannot write config: {e}")

        cmd = self.build_command(config_path)
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            self._state = SupervisorState.STOPPED
            raise ProxyLaunchFailed(binary, e.strerror or str(e))

        self._process = proc
        self.launch_count += 1
        self._state = SupervisorState.RUNNING
        logger.info(f"[PROXY] Started {os.path.basename(binary)} (pid {proc.pid})")

        self._drain_thread = threading.Thread(
            target=self._drain, args=(proc,), name=f"proxy-drain-{proc.pid}", daemon=True
        )
        self._drain_thread.start()
        self._monitor_thread = threading.Thread(
            target=self._watch, args=(proc,), name=f"proxy-monitor-{proc.pid}", daemon=True
        )
        self._monitor_thread.start()

    # ---------------- Background tasks ----------------

    def _drain(self, proc: subprocess.Popen) -> None:
        stream = proc.stdout
        if stream is None:
            return
        try:
            for line in stream:
                line = line.rstrip()
                if _ERROR_LINE.search(line):
                    logger.error(f"[PROXY] {line}")
                elif _WARN_LINE.search(line):
                    logger.warning(f"[PROXY] {line}")
        except (OSError, ValueError):
            pass
        finally:
            stream.close()

    def _watch(self, proc: subprocess.Popen) -> None:
        exit_code = proc.wait()
        self.last_exit_code = exit_code
        with self._lock:
            if proc is not self._process or self._state != SupervisorState.RUNNING:
                return
            if self._stop_event.is_set():
                return
            self._state = SupervisorState.EXITED
        self._recover(exit_code)

    def _recover(self, exit_code: Optional[int]) -> None:
        limit = self.runtime.restart_limit
        while True:
            with self._lock:
                if self._stop_event.is_set():
                    return
                self._restart_count += 1
                attempt = self._restart_count
                logger.warning(f"[PROXY] {ProxyCrashed(exit_code, attempt)}")
                if attempt > limit:
                    self._state = SupervisorState.STOPPED
                    self._process = None
                    fatal = ProxyFatal(attempt - 1, exit_code)
                    break
                self._state = SupervisorState.RESTART_PENDING

            logger.info(f"[PROXY] Restarting ({attempt}/{limit}) in {self.runtime.restart_backoff}s")
            if self._stop_event.wait(self.runtime.restart_backoff):
                return

            with self._lock:
                if self._stop_event.is_set() or self._state != SupervisorState.RESTART_PENDING:
                    return
                self._process = None
                self._refresh_config()
                try:
                    self._launch()
                    return
                except ProxyLaunchFailed as e:
                    logger.error(f"[PROXY] Relaunch failed: {e.reason}")
                    self._state = SupervisorState.EXITED
                    exit_code = None

        logger.error(f"[PROXY] {fatal}")
        self._stop_monitor()
        if self.on_fatal is not None:
            try:
                self.on_fatal(fatal)
            except Exception as e:
                logger.error(f"[PROXY] Fatal handler failed: {e}")

    def _refresh_config(self) -> None:
        if self.source is None:
            return
        try:
            proxy_config = self.source.proxy_config()
            use_acl = self.source.routing_policy().exclude_region_ips
        except Exception as e:
            logger.warning(f"[PROXY] Keeping previous config, reload failed: {e}")
            return
        if not proxy_config.enabled_servers():
            logger.warning("[PROXY] Reloaded config has no enabled server, keeping previous")
            return
        self._config = proxy_config
        self._use_acl = use_acl

    # ---------------- Stop ----------------

    def stop(self) -> None:
        """Stop the proxy and cancel any pending restart. Idempotent."""
        with self._lock:
            self._stop_event.set()
            if self._state in (SupervisorState.IDLE, SupervisorState.STOPPED) and self._process is None:
                self._state = SupervisorState.STOPPED
                self._stop_monitor()
                return
            self._state = SupervisorState.STOPPED
            proc, self._process = self._process, None
            threads = [self._monitor_thread, self._drain_thread]
            self._monitor_thread = self._drain_thread = None

        if proc is not None:
            self._terminate(proc)
        current = threading.current_thread()
        for thread in threads:
            if thread is not None and thread is not current:
                thread.join(timeout=2.0)
        self._stop_monitor()
        logger.info("[PROXY] Stopped")

    def _terminate(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self.runtime.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"[PROXY] pid {proc.pid} ignored SIGTERM, killing")
            proc.kill()
            proc.wait()
