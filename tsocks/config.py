"""
Configuration constants and models for TSocks.

All paths, timing defaults, and the tunnel/proxy/policy dataclasses are
centralized here, together with the YAML file layer that fills them in.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .exceptions import ConfigInvalid, ProxyConfigError

logger = logging.getLogger(__name__)


# ---------------- File Paths ----------------

DATA_DIR = os.path.join(os.path.expanduser("~"), ".tsocks")
CONFIG_FILE = os.path.join(DATA_DIR, "config.yaml")            # User configuration
STATE_FILE = os.path.join(DATA_DIR, "state.yaml")              # enabled / autoReconnect
TUNNEL_CONFIG_NAME = "hev-socks5-tunnel.yaml"                  # Engine config file
PRIVATE_CONFIG_DIR_NAME = "configs"                            # Per-launch proxy config
PROXY_CONFIG_NAME = "current.json"
ACL_DIR_NAME = "acl"
ACL_FILE_NAME = "bypass-region.acl"
ASSETS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "assets")


# ---------------- Native Components ----------------

NATIVE_LIB_DIR = "/usr/local/lib/tsocks"
PROXY_BINARY = "sslocal"
ENGINE_LIBRARY = "libhev-socks5-tunnel.so"

# Plugin name -> executable name inside NATIVE_LIB_DIR
KNOWN_PLUGINS = {
    "v2ray-plugin": "v2ray-plugin",
    "obfs-local": "obfs-local",
}


# ---------------- Network Defaults ----------------

DEFAULT_DNS_V4 = "8.8.8.8"
DEFAULT_DNS_V6 = "2001:4860:4860::8844"
STAT_HOST = "127.0.0.1"
STAT_PORT = 8010  # Proxy pushes cumulative tx/rx here


# ---------------- Timing / Limits ----------------

STATS_INTERVAL = 2.0        # Seconds between stats polls
MIN_RATE_THRESHOLD = 50     # Byte rates below this (B/s) are shown as zero
MAX_RESTART_ATTEMPTS = 3    # Proxy restarts before giving up
RESTART_BACKOFF = 1.0       # Seconds between proxy crash and relaunch
STOP_TIMEOUT = 5.0          # Grace period between SIGTERM and SIGKILL
CONFIG_LOAD_TIMEOUT = 0.5   # Bounded wait for an in-flight config load
RECONNECT_DELAY = 3.0       # Delay before auto reconnect after a failure
RECONNECT_ATTEMPTS = 3      # Consecutive auto reconnects before waiting for a manual connect
SUBSCRIBER_BUFFER = 16      # Snapshots buffered per slow subscriber


# ---------------- Logging Configuration ----------------

LOG_DIR_NAME = "logs"
LOG_FILE_NAME = "tsocks.log"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB per log file
LOG_BACKUP_COUNT = 5  # Keep 5 rotated log files


@dataclass
class RuntimeConfig:
    """Runtime configuration that can be modified at startup."""

    data_dir: str = DATA_DIR
    native_lib_dir: str = NATIVE_LIB_DIR
    proxy_binary: str = PROXY_BINARY
    engine_library: str = ENGINE_LIBRARY
    log_to_file: bool = True
    log_level: str = "INFO"
    stats_interval: float = STATS_INTERVAL
    min_rate_threshold: int = MIN_RATE_THRESHOLD
    restart_limit: int = MAX_RESTART_ATTEMPTS
    restart_backoff: float = RESTART_BACKOFF
    stop_timeout: float = STOP_TIMEOUT
    config_load_timeout: float = CONFIG_LOAD_TIMEOUT
    stat_port: Optional[int] = STAT_PORT

    @property
    def tunnel_config_path(self) -> str:
        return os.path.join(self.data_dir, TUNNEL_CONFIG_NAME)

    @property
    def state_path(self) -> str:
        return os.path.join(self.data_dir, "state.yaml")

    @property
    def config_path(self) -> str:
        return os.path.join(self.data_dir, "config.yaml")

    @property
    def private_config_dir(self) -> str:
        return os.path.join(self.data_dir, PRIVATE_CONFIG_DIR_NAME)

    @property
    def acl_dir(self) -> str:
        return os.path.join(self.data_dir, ACL_DIR_NAME)

    @property
    def log_dir(self) -> str:
        return os.path.join(self.data_dir, LOG_DIR_NAME)

    @property
    def log_file(self) -> str:
        return os.path.join(self.log_dir, LOG_FILE_NAME)

    @property
    def proxy_binary_path(self) -> str:
        """Absolute path of the proxy executable."""
        if os.path.isabs(self.proxy_binary):
            return self.proxy_binary
        return os.path.join(self.native_lib_dir, self.proxy_binary)

    def ensure_dirs(self) -> None:
        """Create the data directory and its private subdirectories."""
        ensure_dir(self.data_dir)
        ensure_dir(self.private_config_dir)
        ensure_dir(self.acl_dir)
        if self.log_to_file:
            ensure_dir(self.log_dir)


# ---------------- Tunnel Engine Config ----------------

@dataclass(frozen=True)
class TunnelConfig:
    """The `tunnel:` section of the engine config file."""

    name: str = "tun0"
    mtu: int = 8500
    multi_queue: bool = False
    ipv4: str = "198.18.0.1"
    ipv6: str = "fc00::1"
    post_up_script: Optional[str] = None
    pre_down_script: Optional[str] = None


@dataclass
class Socks5Config:
    """The `socks5:` section: where the engine sends its traffic."""

    port: int = 1080
    address: str = "127.0.0.1"
    udp: str = "udp"
    pipeline: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    mark: int = 0


@dataclass
class MiscConfig:
    """The `misc:` section of the engine config file."""

    task_stack_size: int = 86016
    tcp_buffer_size: int = 65536
    connect_timeout: int = 5000
    read_write_timeout: int = 60000
    log_file: str = "stderr"
    log_level: str = "warn"
    pid_file: Optional[str] = None
    limit_nofile: int = 65535


# ---------------- Routing Policy ----------------

class ProxyMode(Enum):
    """Which applications are sent through the tunnel."""

    GLOBAL = 0       # Everything except ourselves
    BYPASS = 1       # Everything except the listed apps (and ourselves)
    ONLY_PROXY = 2   # Only the listed apps


@dataclass(frozen=True)
class AppEntry:
    """A per-application routing entry (package name, uid or process id)."""

    app_id: str
    enabled: bool = True


@dataclass
class RoutingPolicy:
    """Routing decisions handed to the interface builder."""

    mode: ProxyMode = ProxyMode.GLOBAL
    ipv4_enabled: bool = True
    ipv6_enabled: bool = True
    dns_v4: str = DEFAULT_DNS_V4
    dns_v6: str = DEFAULT_DNS_V6
    excluded_routes: List[str] = field(default_factory=list)
    apps: List[AppEntry] = field(default_factory=list)
    exclude_region_ips: bool = False

    def enabled_apps(self) -> List[str]:
        """App ids whose entry is switched on, in declaration order."""
        seen = []
        for app in self.apps:
            app_id = app.app_id.strip()
            if app.enabled and app_id and app_id not in seen:
                seen.append(app_id)
        return seen


# ---------------- Proxy Config ----------------

@dataclass
class LocalConfig:
    """A local listener of the proxy (the SOCKS5 endpoint the engine uses)."""

    protocol: str = "socks"
    local_address: str = "127.0.0.1"
    local_port: int = 1080
    mode: str = "tcp_and_udp"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "local_address": self.local_address,
            "local_port": self.local_port,
            "mode": self.mode,
        }


@dataclass
class ServerConfig:
    """An upstream proxy server."""

    address: str
    port: int = 8388
    method: str = "aes-256-gcm"
    password: str = ""
    plugin: Optional[str] = None
    plugin_opts: Optional[str] = None
    plugin_args: List[str] = field(default_factory=list)
    plugin_mode: str = "tcp_only"
    enabled: bool = True
    remark: str = ""

    def to_dict(self, plugin_path: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "server": self.address,
            "server_port": self.port,
            "method": self.method,
            "password": self.password,
            "disabled": not self.enabled,
        }
        plugin = plugin_path or self.plugin
        if plugin:
            data["plugin"] = plugin
            data["plugin_mode"] = self.plugin_mode
            if self.plugin_opts:
                data["plugin_opts"] = self.plugin_opts
            if self.plugin_args:
                data["plugin_args"] = list(self.plugin_args)
        if self.remark:
            data["remarks"] = self.remark
        return data


@dataclass
class ProxyConfig:
    """
    Configuration of the SOCKS5 proxy process.

    At most one server may be enabled unless load balancing is on.
    """

    locals: List[LocalConfig] = field(default_factory=lambda: [LocalConfig()])
    servers: List[ServerConfig] = field(default_factory=list)
    balancer_enabled: bool = False
    max_server_rtt: int = 5
    check_interval: int = 10
    log_level: int = 1
    runtime_mode: str = "single_thread"
    worker_count: int = 10

    @property
    def listen(self) -> Tuple[str, int]:
        """(address, port) of the primary local listener."""
        if not self.locals:
            return ("127.0.0.1", 1080)
        first = self.locals[0]
        return (first.local_address, first.local_port)

    def enabled_servers(self) -> List[ServerConfig]:
        return [s for s in self.servers if s.enabled]

    def validate(self) -> None:
        """Raise ProxyConfigError if the server set is inconsistent."""
        enabled = self.enabled_servers()
        if not self.balancer_enabled and len(enabled) > 1:
            raise ProxyConfigError(
                f"{len(enabled)} servers enabled but load balancing is off"
            )
        for server in self.servers:
            if not 0 < server.port < 65536:
                raise ProxyConfigError(f"Invalid port {server.port} for {server.address}")

    def to_dict(self, resolve_plugin: Optional[Callable[[str], Optional[str]]] = None) -> Dict[str, Any]:
        """
        Build the proxy's JSON document.

        Args:
            resolve_plugin: Maps a plugin name to an absolute path, or None
                to leave the name untouched

        Returns:
            JSON-serializable dict
        """
        servers = []
        for server in self.servers:
            plugin_path = None
            if server.plugin and resolve_plugin is not None:
                plugin_path = resolve_plugin(server.plugin)
            servers.append(server.to_dict(plugin_path))

        data: Dict[str, Any] = {
            "locals": [local.to_dict() for local in self.locals],
            "servers": servers,
            "log": {"level": self.log_level},
            "runtime": {"mode": self.runtime_mode, "worker_count": self.worker_count},
        }
        if self.balancer_enabled:
            data["balancer"] = {
                "max_server_rtt": self.max_server_rtt,
                "check_interval": self.check_interval,
            }
        return data


# ---------------- Helpers ----------------

def ensure_dir(path: str, mode: int = 0o700) -> None:
    """Create a private directory if it doesn't exist."""
    Path(path).mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, mode)
    except OSError:
        pass  # Best effort on non-POSIX filesystems


def chmod600(path: str) -> None:
    """Set file permissions to 0600 (owner read/write only)."""
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass  # Best effort on non-POSIX filesystems


def load_config_file(path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        Configuration dict (empty if file doesn't exist or is unparsable)
    """
    config_path = path or CONFIG_FILE

    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"[CONFIG] Ignoring unreadable {config_path}: {e}")
        return {}


DEFAULT_CONFIG = """\
# TSocks Configuration

# Paths to native components
native:
  lib_dir: /usr/local/lib/tsocks
  proxy_binary: sslocal
  engine_library: libhev-socks5-tunnel.so

# Logging settings
logging:
  to_file: true
  # DEBUG, INFO, WARNING, ERROR
  level: INFO

# Supervision knobs
timing:
  stats_interval: 2.0
  restart_limit: 3
  restart_backoff: 1.0
  stop_timeout: 5.0

# Which traffic goes through the tunnel
routing:
  # global, bypass or only_proxy
  mode: global
  ipv4: true
  ipv6: false
  dns_v4: 8.8.8.8
  dns_v6: "2001:4860:4860::8844"
  exclude_region_ips: false
  excluded_routes: []
  # - {app: "1000", enabled: true}
  apps: []

# Local SOCKS5 proxy process
proxy:
  locals:
    - {protocol: socks, local_address: 127.0.0.1, local_port: 1080, mode: tcp_and_udp}
  balancer: false
  servers: []
  # - address: example.com
  #   port: 8388
  #   method: aes-256-gcm
  #   password: secret
  #   plugin: v2ray-plugin
  #   plugin_opts: "tls;host=example.com"
"""


def save_default_config(path: Optional[str] = None) -> bool:
    """
    Save default configuration file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        True if saved successfully
    """
    config_path = path or CONFIG_FILE

    try:
        ensure_dir(os.path.dirname(config_path))
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(DEFAULT_CONFIG)
        chmod600(config_path)
        return True
    except OSError as e:
        logger.error(f"[CONFIG] Cannot write {config_path}: {e}")
        return False


def apply_config_file(runtime_config: RuntimeConfig, file_config: dict) -> None:
    """
    Apply file configuration to runtime config.

    File config values are used as defaults, CLI args take precedence.
    """
    native = file_config.get("native") or {}
    if "lib_dir" in native:
        runtime_config.native_lib_dir = os.path.expanduser(native["lib_dir"])
    if "proxy_binary" in native:
        runtime_config.proxy_binary = native["proxy_binary"]
    if "engine_library" in native:
        runtime_config.engine_library = native["engine_library"]

    logging_config = file_config.get("logging") or {}
    if "to_file" in logging_config:
        runtime_config.log_to_file = bool(logging_config["to_file"])
    if "level" in logging_config:
        runtime_config.log_level = str(logging_config["level"])

    timing = file_config.get("timing") or {}
    if "stats_interval" in timing:
        runtime_config.stats_interval = float(timing["stats_interval"])
    if "restart_limit" in timing:
        runtime_config.restart_limit = int(timing["restart_limit"])
    if "restart_backoff" in timing:
        runtime_config.restart_backoff = float(timing["restart_backoff"])
    if "stop_timeout" in timing:
        runtime_config.stop_timeout = float(timing["stop_timeout"])


_MODE_NAMES = {
    "global": ProxyMode.GLOBAL,
    "bypass": ProxyMode.BYPASS,
    "only_proxy": ProxyMode.ONLY_PROXY,
}


def policy_from_dict(data: Optional[dict]) -> RoutingPolicy:
    """Build a RoutingPolicy from the `routing:` section."""
    data = data or {}
    raw_mode = data.get("mode", "global")
    if isinstance(raw_mode, int):
        mode = ProxyMode(raw_mode)
    else:
        try:
            mode = _MODE_NAMES[str(raw_mode).lower()]
        except KeyError:
            raise ProxyConfigError(f"Unknown proxy mode: {raw_mode!r}")

    apps = []
    for item in data.get("apps") or []:
        if isinstance(item, dict):
            apps.append(AppEntry(str(item.get("app", "")), bool(item.get("enabled", True))))
        else:
            apps.append(AppEntry(str(item)))

    return RoutingPolicy(
        mode=mode,
        ipv4_enabled=bool(data.get("ipv4", True)),
        ipv6_enabled=bool(data.get("ipv6", True)),
        dns_v4=str(data.get("dns_v4") or ""),
        dns_v6=str(data.get("dns_v6") or ""),
        excluded_routes=[str(r) for r in data.get("excluded_routes") or []],
        apps=apps,
        exclude_region_ips=bool(data.get("exclude_region_ips", False)),
    )


def proxy_config_from_dict(data: Optional[dict]) -> ProxyConfig:
    """Build and validate a ProxyConfig from the `proxy:` section."""
    data = data or {}

    locals_ = [
        LocalConfig(
            protocol=item.get("protocol", "socks"),
            local_address=item.get("local_address", "127.0.0.1"),
            local_port=int(item.get("local_port", 1080)),
            mode=item.get("mode", "tcp_and_udp"),
        )
        for item in data.get("locals") or [{}]
    ]

    servers = []
    for item in data.get("servers") or []:
        if "address" not in item:
            raise ProxyConfigError(f"Server entry without address: {item!r}")
        enabled = item.get("enabled", not item.get("disabled", False))
        servers.append(ServerConfig(
            address=str(item["address"]),
            port=int(item.get("port", 8388)),
            method=item.get("method", "aes-256-gcm"),
            password=str(item.get("password", "")),
            plugin=item.get("plugin"),
            plugin_opts=item.get("plugin_opts"),
            plugin_args=[str(a) for a in item.get("plugin_args") or []],
            plugin_mode=item.get("plugin_mode", "tcp_only"),
            enabled=bool(enabled),
            remark=item.get("remark", ""),
        ))

    config = ProxyConfig(
        locals=locals_,
        servers=servers,
        balancer_enabled=bool(data.get("balancer", False)),
        max_server_rtt=int(data.get("max_server_rtt", 5)),
        check_interval=int(data.get("check_interval", 10)),
        log_level=int(data.get("log_level", 1)),
        runtime_mode=data.get("runtime_mode", "single_thread"),
        worker_count=int(data.get("worker_count", 10)),
    )
    config.validate()
    return config


# ---------------- Engine Config File ----------------

def parse_tunnel_config(path: str) -> TunnelConfig:
    """
    Read the tunnel section of the engine config file.

    The file must exist, be readable and non-empty before anything else
    happens with it.

    Raises:
        ConfigInvalid: If the file is missing, empty or lacks mtu/ipv4/ipv6
    """
    check_config_file(path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigInvalid(path, f"not valid YAML ({e})")
    except OSError as e:
        raise ConfigInvalid(path, f"unreadable ({e.strerror})")

    section = document.get("tunnel") if isinstance(document, dict) else None
    if not isinstance(section, dict):
        raise ConfigInvalid(path, "no tunnel section")

    for key in ("mtu", "ipv4", "ipv6"):
        if section.get(key) in (None, ""):
            raise ConfigInvalid(path, f"tunnel.{key} is not set")

    mtu = section["mtu"]
    if isinstance(mtu, bool) or not isinstance(mtu, int) or mtu <= 0:
        raise ConfigInvalid(path, f"tunnel.mtu must be a positive integer, got {mtu!r}")

    return TunnelConfig(
        name=str(section.get("name", "tun0")),
        mtu=mtu,
        multi_queue=bool(section.get("multi-queue", False)),
        ipv4=str(section["ipv4"]),
        ipv6=str(section["ipv6"]),
        post_up_script=section.get("post-up-script"),
        pre_down_script=section.get("pre-down-script"),
    )


def check_config_file(path: str) -> None:
    """Raise ConfigInvalid unless path is an existing, readable, non-empty file."""
    if not os.path.isfile(path):
        raise ConfigInvalid(path, "file does not exist")
    if not os.access(path, os.R_OK):
        raise ConfigInvalid(path, "file is not readable")
    if os.path.getsize(path) == 0:
        raise ConfigInvalid(path, "file is empty")


def render_tunnel_config(
    tunnel: TunnelConfig,
    socks5: Optional[Socks5Config] = None,
    misc: Optional[MiscConfig] = None,
) -> str:
    """
    Render the engine config document.

    Optional keys are only written when they differ from the engine's
    built-in defaults.
    """
    socks5 = socks5 or Socks5Config()
    misc = misc or MiscConfig()
    misc_defaults = MiscConfig()

    tunnel_section: Dict[str, Any] = {
        "name": tunnel.name,
        "mtu": tunnel.mtu,
        "multi-queue": tunnel.multi_queue,
        "ipv4": tunnel.ipv4,
        "ipv6": tunnel.ipv6,
    }
    if tunnel.post_up_script:
        tunnel_section["post-up-script"] = tunnel.post_up_script
    if tunnel.pre_down_script:
        tunnel_section["pre-down-script"] = tunnel.pre_down_script

    socks5_section: Dict[str, Any] = {
        "port": socks5.port,
        "address": socks5.address,
        "udp": socks5.udp,
    }
    if socks5.pipeline:
        socks5_section["pipeline"] = True
    if socks5.username:
        socks5_section["username"] = socks5.username
    if socks5.password:
        socks5_section["password"] = socks5.password
    if socks5.mark:
        socks5_section["mark"] = socks5.mark

    misc_section: Dict[str, Any] = {"task-stack-size": misc.task_stack_size}
    optional = [
        ("tcp-buffer-size", misc.tcp_buffer_size, misc_defaults.tcp_buffer_size),
        ("connect-timeout", misc.connect_timeout, misc_defaults.connect_timeout),
        ("read-write-timeout", misc.read_write_timeout, misc_defaults.read_write_timeout),
        ("log-file", misc.log_file, misc_defaults.log_file),
        ("log-level", misc.log_level, misc_defaults.log_level),
        ("pid-file", misc.pid_file, misc_defaults.pid_file),
        ("limit-nofile", misc.limit_nofile, misc_defaults.limit_nofile),
    ]
    for key, value, default in optional:
        if value != default:
            misc_section[key] = value

    document = {"tunnel": tunnel_section, "socks5": socks5_section, "misc": misc_section}
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def write_tunnel_config(
    path: str,
    tunnel: TunnelConfig,
    socks5: Optional[Socks5Config] = None,
    misc: Optional[MiscConfig] = None,
) -> None:
    """Write the engine config file atomically with 0600 permissions."""
    ensure_dir(os.path.dirname(path))
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(render_tunnel_config(tunnel, socks5, misc))
        f.flush()
        os.fsync(f.fileno())
    chmod600(tmp)
    os.replace(tmp, path)


# ---------------- Config Sources ----------------

class ConfigSource(ABC):
    """Read-only provider of the values a session is built from."""

    @property
    @abstractmethod
    def tunnel_config_path(self) -> str:
        """Path of the engine config file."""
        pass

    @abstractmethod
    def routing_policy(self) -> RoutingPolicy:
        pass

    @abstractmethod
    def proxy_config(self) -> ProxyConfig:
        pass

    def wait_loaded(self, timeout: float) -> bool:
        """Block until an in-flight load completes. True if loaded."""
        return True


class StaticConfigSource(ConfigSource):
    """ConfigSource over values supplied in code."""

    def __init__(
        self,
        tunnel_config_path: str,
        policy: Optional[RoutingPolicy] = None,
        proxy: Optional[ProxyConfig] = None,
    ):
        self._tunnel_config_path = tunnel_config_path
        self.policy = policy or RoutingPolicy()
        self.proxy = proxy or ProxyConfig()

    @property
    def tunnel_config_path(self) -> str:
        return self._tunnel_config_path

    def routing_policy(self) -> RoutingPolicy:
        return self.policy

    def proxy_config(self) -> ProxyConfig:
        return self.proxy


class FileConfigSource(ConfigSource):
    """
    ConfigSource backed by the YAML config file.

    Loads may run on a background thread; wait_loaded() lets the service
    wait a bounded time for one that is in flight.
    """

    def __init__(self, runtime: RuntimeConfig, path: Optional[str] = None):
        self._runtime = runtime
        self._path = path or runtime.config_path
        self._lock = threading.RLock()
        self._loaded = threading.Event()
        self._policy = RoutingPolicy()
        self._proxy = ProxyConfig()

    @property
    def path(self) -> str:
        return self._path

    @property
    def tunnel_config_path(self) -> str:
        return self._runtime.tunnel_config_path

    def load(self) -> None:
        """Read the config file and replace the current values."""
        self._loaded.clear()
        file_config = load_config_file(self._path)
        policy = policy_from_dict(file_config.get("routing"))
        proxy = proxy_config_from_dict(file_config.get("proxy"))
        with self._lock:
            self._policy = policy
            self._proxy = proxy
        self._loaded.set()
        logger.debug(
            f"[CONFIG] Loaded {self._path}: mode={policy.mode.name}, "
            f"servers={len(proxy.servers)}"
        )

    def load_async(self) -> threading.Thread:
        """Start a background load and return its thread."""
        self._loaded.clear()

        def _run() -> None:
            try:
                self.load()
            except Exception as e:
                logger.error(f"[CONFIG] Background load of {self._path} failed: {e}")

        thread = threading.Thread(target=_run, name="config-load", daemon=True)
        thread.start()
        return thread

    def is_loaded(self) -> bool:
        return self._loaded.is_set()

    def wait_loaded(self, timeout: float) -> bool:
        return self._loaded.wait(timeout)

    def routing_policy(self) -> RoutingPolicy:
        with self._lock:
            return self._policy

    def proxy_config(self) -> ProxyConfig:
        with self._lock:
            return self._proxy
