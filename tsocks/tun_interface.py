"""
TSocks TUN Interface - OS-level integration.

Builds the virtual network interface (tun0 by default) that the tunnel
engine reads packets from:

- Validates the engine config file before touching the OS
- Assigns addresses, default routes and DNS per address family
- Excludes routes and applications from the tunnel via policy rules
- Hands back a non-blocking file descriptor owned by an InterfaceHandle

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │                      Applications                           │
    └───────────────────────┬─────────────────────────────────────┘
                            │  ip rule (uid / excluded CIDRs)
    ┌───────────────────────▼─────────────────────────────────────┐
    │        tun0 (TUN interface, routing table 2022)              │
    └───────────────────────┬─────────────────────────────────────┘
                            │  fd
    ┌───────────────────────▼─────────────────────────────────────┐
    │             Tunnel engine (tun2socks)                       │
    └───────────────────────┬─────────────────────────────────────┘
                            │  SOCKS5
    ┌───────────────────────▼─────────────────────────────────────┐
    │             Local proxy process (sslocal)                   │
    └─────────────────────────────────────────────────────────────┘
"""

import fcntl
import ipaddress
import logging
import os
import platform
import pwd
import shutil
import struct
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from scapy.all import get_if_list

from .config import (
    DEFAULT_DNS_V4,
    DEFAULT_DNS_V6,
    ProxyConfig,
    ProxyMode,
    RoutingPolicy,
    TunnelConfig,
    parse_tunnel_config,
)
from .exceptions import InterfaceEstablishFailed
from .logging_setup import format_block

logger = logging.getLogger(__name__)

# =============================================================================
# Platform Detection
# =============================================================================

PLATFORM = platform.system().lower()
IS_LINUX = PLATFORM == 'linux'

# =============================================================================
# Platform-specific Constants
# =============================================================================

TUN_DEVICE = "/dev/net/tun"
TUNSETIFF = 0x400454ca
IFF_TUN = 0x0001
IFF_NO_PI = 0x1000
IFF_MULTI_QUEUE = 0x0100

# Policy routing layout
TUN_ROUTE_TABLE = 2022
PRIO_EXCLUDED_ROUTES = 9000   # to <cidr> lookup main
PRIO_DISALLOWED_APPS = 9100   # uidrange U-U lookup main
PRIO_TUNNEL = 9200            # (uidrange U-U) lookup TUN_ROUTE_TABLE

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class InterfacePlan:
    """Everything the OS needs to know to establish the interface."""

    name: str
    mtu: int
    multi_queue: bool = False
    addresses: List[Tuple[str, int]] = field(default_factory=list)
    routes: List[str] = field(default_factory=list)
    dns_servers: List[str] = field(default_factory=list)
    excluded_routes: List[IPNetwork] = field(default_factory=list)
    allowed_apps: List[str] = field(default_factory=list)
    disallowed_apps: List[str] = field(default_factory=list)

    @property
    def families(self) -> List[int]:
        """IP versions that have an address on the interface."""
        versions = []
        for address, _ in self.addresses:
            version = ipaddress.ip_address(address).version
            if version not in versions:
                versions.append(version)
        return versions

    def describe(self) -> List[str]:
        return [
            f"name      : {self.name} (mtu {self.mtu}, multi-queue {self.multi_queue})",
            f"addresses : {', '.join(f'{a}/{p}' for a, p in self.addresses) or '-'}",
            f"routes    : {', '.join(self.routes) or '-'}",
            f"dns       : {', '.join(self.dns_servers) or '-'}",
            f"excluded  : {', '.join(str(n) for n in self.excluded_routes) or '-'}",
            f"allowed   : {', '.join(self.allowed_apps) or '-'}",
            f"disallowed: {', '.join(self.disallowed_apps) or '-'}",
        ]


def parse_excluded_route(entry: str) -> Optional[IPNetwork]:
    """
    Parse an excluded-route entry.

    "10.0.0.5" becomes a /32 host route, "2001:db8::1/64" keeps its /64.
    Malformed entries are logged and yield None.
    """
    entry = entry.strip()
    if not entry:
        return None
    try:
        if "/" in entry:
            address, prefix = entry.split("/", 1)
            ip = ipaddress.ip_address(address.strip())
            prefix_len = int(prefix)
        else:
            ip = ipaddress.ip_address(entry)
            prefix_len = ip.max_prefixlen
        return ipaddress.ip_network(f"{ip}/{prefix_len}", strict=False)
    except ValueError as e:
        logger.error(f"[TUN] Skipping malformed excluded route {entry!r}: {e}")
        return None


def apply_app_filter(policy: RoutingPolicy, self_app_id: str) -> Tuple[List[str], List[str]]:
    """
    Resolve the per-application rules of a routing policy.

    Returns:
        (allowed_apps, disallowed_apps). When allowed_apps is non-empty only
        those apps use the tunnel; disallowed apps always bypass it.
    """
    apps = policy.enabled_apps()

    if policy.mode == ProxyMode.GLOBAL:
        logger.debug(f"[TUN] Global mode: excluding only {self_app_id}")
        return [], [self_app_id]

    if policy.mode == ProxyMode.BYPASS:
        disallowed = list(apps)
        if self_app_id not in disallowed:
            disallowed.append(self_app_id)
        logger.debug(f"[TUN] Bypass mode: excluding {', '.join(disallowed)}")
        return [], disallowed

    # ONLY_PROXY
    if not apps:
        logger.debug(f"[TUN] Only-proxy mode with no apps: excluding {self_app_id}")
        return [], [self_app_id]
    logger.debug(f"[TUN] Only-proxy mode: tunnelling {', '.join(apps)}")
    return apps, []


def build_plan(
    tunnel: TunnelConfig,
    policy: RoutingPolicy,
    self_app_id: str,
    proxy: Optional[ProxyConfig] = None,
) -> InterfacePlan:
    """Compute the interface plan for a session without touching the OS."""
    plan = InterfacePlan(name=tunnel.name, mtu=tunnel.mtu, multi_queue=tunnel.multi_queue)

    if policy.ipv4_enabled:
        plan.addresses.append((tunnel.ipv4, 32))
        plan.routes.append("0.0.0.0/0")
        plan.dns_servers.append(policy.dns_v4.strip() or DEFAULT_DNS_V4)

    if policy.ipv6_enabled:
        plan.addresses.append((tunnel.ipv6, 128))
        plan.routes.append("::/0")
        plan.dns_servers.append(policy.dns_v6.strip() or DEFAULT_DNS_V6)

    for entry in policy.excluded_routes:
        network = parse_excluded_route(entry)
        if network is not None and network not in plan.excluded_routes:
            plan.excluded_routes.append(network)

    # Upstream servers given as literal addresses must never loop back into the tunnel
    if proxy is not None:
        for server in proxy.enabled_servers():
            try:
                ip = ipaddress.ip_address(server.address)
            except ValueError:
                continue
            network = ipaddress.ip_network(f"{ip}/{ip.max_prefixlen}")
            if network not in plan.excluded_routes:
                plan.excluded_routes.append(network)

    plan.allowed_apps, plan.disallowed_apps = apply_app_filter(policy, self_app_id)
    return plan


def interface_exists(name: str) -> bool:
    """True if the OS currently lists an interface called name."""
    try:
        return name in get_if_list()
    except OSError as e:
        logger.debug(f"[TUN] Interface listing failed ({e}), checking sysfs")
        return os.path.exists(f"/sys/class/net/{name}")


# =============================================================================
# Interface Handle
# =============================================================================

class InterfaceHandle:
    """
    Owner of the interface file descriptor.

    close() is the only release action and may be called any number of
    times from any thread.
    """

    def __init__(self, fd: int, plan: InterfacePlan, backend: "InterfaceBackend"):
        self._fd: Optional[int] = fd
        self.plan = plan
        self._backend = backend
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.plan.name

    @property
    def fd(self) -> int:
        if self._fd is None:
            raise ValueError(f"{self.plan.name} is already closed")
        return self._fd

    @property
    def closed(self) -> bool:
        return self._fd is None

    def close(self) -> None:
        """Tear down policy rules and close the descriptor."""
        with self._lock:
            if self._fd is None:
                return
            fd, self._fd = self._fd, None

        try:
            self._backend.teardown(self.plan)
        except Exception as e:
            logger.error(f"[TUN] Rule cleanup for {self.plan.name} failed: {e}")
        finally:
            try:
                os.close(fd)
            except OSError as e:
                logger.error(f"[TUN] Closing fd {fd} of {self.plan.name} failed: {e}")
        logger.info(f"[TUN] Released interface {self.plan.name}")

    def __repr__(self) -> str:
        return f"InterfaceHandle(name={self.plan.name!r}, fd={self._fd})"


# =============================================================================
# Backends
# =============================================================================

class InterfaceBackend(ABC):
    """
    Platform-specific interface creation.

    Implementations turn an InterfacePlan into a live interface and undo
    whatever routing state they installed.
    """

    @abstractmethod
    def establish(self, plan: InterfacePlan) -> int:
        """Create and configure the interface; return a non-blocking fd."""
        pass

    @abstractmethod
    def teardown(self, plan: InterfacePlan) -> None:
        """Remove routing state installed by establish()."""
        pass

    @abstractmethod
    def is_active(self, name: str) -> bool:
        """True if the OS currently has the interface."""
        pass


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=10)


def resolve_uid(app_id: str) -> Optional[int]:
    """Map an app id (numeric uid or user name) to a uid."""
    if app_id.isdigit():
        return int(app_id)
    try:
        return pwd.getpwnam(app_id).pw_uid
    except KeyError:
        return None


class LinuxTunBackend(InterfaceBackend):
    """
    Linux TUN interface using /dev/net/tun and iproute2.

    Applications are identified by uid; routes for the tunnel live in a
    dedicated table selected by `ip rule`.

    Requires:
    - Root or CAP_NET_ADMIN capability
    - tun kernel module loaded (modprobe tun)
    """

    def __init__(self, table: int = TUN_ROUTE_TABLE):
        self.table = table

    def establish(self, plan: InterfacePlan) -> int:
        if not IS_LINUX:
            raise InterfaceEstablishFailed(plan.name, f"unsupported platform {PLATFORM}")

        fd = self._open_tun(plan)
        try:
            self._configure_link(plan)
            self._install_rules(plan)
            self._configure_dns(plan)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            self._cleanup_after_failure(plan, fd)
            raise InterfaceEstablishFailed(plan.name, f"{' '.join(e.cmd)}: {stderr or e}")
        except (OSError, subprocess.TimeoutExpired) as e:
            self._cleanup_after_failure(plan, fd)
            raise InterfaceEstablishFailed(plan.name, str(e))

        logger.info(f"[TUN] Established {plan.name} (fd {fd})")
        return fd

    def _open_tun(self, plan: InterfacePlan) -> int:
        try:
            fd = os.open(TUN_DEVICE, os.O_RDWR | os.O_NONBLOCK)
        except FileNotFoundError:
            raise InterfaceEstablishFailed(plan.name, "TUN device not found, try: sudo modprobe tun")
        except PermissionError:
            raise InterfaceEstablishFailed(plan.name, "permission denied, run as root or with CAP_NET_ADMIN")

        flags = IFF_TUN | IFF_NO_PI
        if plan.multi_queue:
            flags |= IFF_MULTI_QUEUE
        ifr = struct.pack('16sH', plan.name.encode(), flags)
        try:
            fcntl.ioctl(fd, TUNSETIFF, ifr)
        except OSError as e:
            os.close(fd)
            raise InterfaceEstablishFailed(plan.name, f"TUNSETIFF failed: {e.strerror}")
        return fd

    def _configure_link(self, plan: InterfacePlan) -> None:
        _run(["ip", "link", "set", "dev", plan.name, "mtu", str(plan.mtu)])
        for address, prefix in plan.addresses:
            family = "-6" if ipaddress.ip_address(address).version == 6 else "-4"
            _run(["ip", family, "addr", "add", f"{address}/{prefix}", "dev", plan.name])
        _run(["ip", "link", "set", "dev", plan.name, "up"])
        for route in plan.routes:
            family = "-6" if ":" in route else "-4"
            _run(["ip", family, "route", "replace", route, "dev", plan.name, "table", str(self.table)])

    def _install_rules(self, plan: InterfacePlan) -> None:
        families = plan.families

        for network in plan.excluded_routes:
            if network.version not in families:
                continue
            _run(["ip", f"-{network.version}", "rule", "add", "to", str(network),
                  "lookup", "main", "priority", str(PRIO_EXCLUDED_ROUTES)])

        for version in families:
            for app_id in plan.disallowed_apps:
                uid = resolve_uid(app_id)
                if uid is None:
                    logger.error(f"[TUN] Cannot exclude unknown app {app_id!r}")
                    continue
                _run(["ip", f"-{version}", "rule", "add", "uidrange", f"{uid}-{uid}",
                      "lookup", "main", "priority", str(PRIO_DISALLOWED_APPS)])

            if plan.allowed_apps:
                for app_id in plan.allowed_apps:
                    uid = resolve_uid(app_id)
                    if uid is None:
                        logger.error(f"[TUN] Cannot allow unknown app {app_id!r}")
                        continue
                    _run(["ip", f"-{version}", "rule", "add", "uidrange", f"{uid}-{uid}",
                          "lookup", str(self.table), "priority", str(PRIO_TUNNEL)])
            else:
                _run(["ip", f"-{version}", "rule", "add", "lookup", str(self.table),
                      "priority", str(PRIO_TUNNEL)])

    def _configure_dns(self, plan: InterfacePlan) -> None:
        if not plan.dns_servers:
            return
        if shutil.which("resolvectl") is None:
            logger.warning(f"[TUN] resolvectl not found; DNS {', '.join(plan.dns_servers)} not applied")
            return
        try:
            _run(["resolvectl", "dns", plan.name, *plan.dns_servers])
            _run(["resolvectl", "domain", plan.name, "~."])
        except subprocess.CalledProcessError as e:
            # Resolver state is advisory; the tunnel itself is usable without it
            logger.warning(f"[TUN] Setting DNS on {plan.name} failed: {(e.stderr or '').strip()}")

    def _cleanup_after_failure(self, plan: InterfacePlan, fd: int) -> None:
        try:
            self.teardown(plan)
        finally:
            try:
                os.close(fd)
            except OSError:
                pass

    def teardown(self, plan: InterfacePlan) -> None:
        for version in (4, 6):
            for priority in (PRIO_EXCLUDED_ROUTES, PRIO_DISALLOWED_APPS, PRIO_TUNNEL):
                # `ip rule del priority N` removes one rule per call
                for _ in range(256):
                    result = subprocess.run(
                        ["ip", f"-{version}", "rule", "del", "priority", str(priority)],
                        capture_output=True, text=True, timeout=10,
                    )
                    if result.returncode != 0:
                        break
            subprocess.run(
                ["ip", f"-{version}", "route", "flush", "table", str(self.table)],
                capture_output=True, text=True, timeout=10,
            )

    def is_active(self, name: str) -> bool:
        return interface_exists(name)


# =============================================================================
# Builder
# =============================================================================

class VirtualInterfaceBuilder:
    """
    Constructs the session's virtual interface.

    build() validates the engine config file first, so a bad config never
    leaves OS state behind.
    """

    def __init__(
        self,
        backend: Optional[InterfaceBackend] = None,
        self_app_id: Optional[str] = None,
    ):
        self.backend = backend or LinuxTunBackend()
        self.self_app_id = self_app_id or str(os.getuid())

    def plan(
        self,
        tunnel_config_path: str,
        policy: RoutingPolicy,
        proxy: Optional[ProxyConfig] = None,
    ) -> Tuple[TunnelConfig, InterfacePlan]:
        """Validate the config file and compute the plan."""
        tunnel = parse_tunnel_config(tunnel_config_path)
        return tunnel, build_plan(tunnel, policy, self.self_app_id, proxy)

    def build(
        self,
        tunnel_config_path: str,
        policy: RoutingPolicy,
        proxy: Optional[ProxyConfig] = None,
    ) -> InterfaceHandle:
        """
        Build the interface.

        Raises:
            ConfigInvalid: Engine config missing, empty or malformed
            InterfaceEstablishFailed: The OS refused to create the interface
        """
        tunnel, plan = self.plan(tunnel_config_path, policy, proxy)
        logger.debug(format_block("TUN plan", plan.describe()))

        fd = self.backend.establish(plan)
        os.set_blocking(fd, False)
        return InterfaceHandle(fd, plan, self.backend)

    def is_active(self, name: str) -> bool:
        return self.backend.is_active(name)
