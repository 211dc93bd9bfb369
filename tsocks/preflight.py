"""
Pre-flight checks for TSocks.

Validates system requirements before bringing the tunnel up.
"""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
from typing import List, Tuple

from .config import RuntimeConfig, parse_tunnel_config
from .exceptions import ConfigInvalid, InterfaceError
from .tun_interface import TUN_DEVICE

# Failing these only degrades the tunnel (no proxy backing, no desync check)
NON_CRITICAL = ("Proxy binary", "Scapy")


def check_root_privileges() -> Tuple[bool, str]:
    """
    Check if running with sufficient privileges to create TUN interfaces.

    Returns:
        Tuple of (success, message)
    """
    if platform.system() != "Linux":
        return False, f"TUN interfaces are only supported on Linux, not {platform.system()}"

    if os.geteuid() == 0:
        return True, "Running as root"

    try:
        result = subprocess.run(
            ["getcap", sys.executable],
            capture_output=True,
            text=True,
            timeout=5,
        )
        if "cap_net_admin" in result.stdout.lower():
            return True, "Python has CAP_NET_ADMIN capability"
    except (OSError, subprocess.TimeoutExpired):
        pass

    return False, (
        "Creating a TUN interface requires root privileges. "
        "Try running with sudo, or: "
        f"sudo setcap cap_net_admin+ep {sys.executable}"
    )


def check_tun_device() -> Tuple[bool, str]:
    if os.path.exists(TUN_DEVICE):
        return True, f"{TUN_DEVICE} present"
    return False, f"{TUN_DEVICE} not found, try: sudo modprobe tun"


def check_ip_tool() -> Tuple[bool, str]:
    path = shutil.which("ip")
    if path:
        return True, f"iproute2 at {path}"
    return False, "'ip' command not found, install iproute2"


def check_proxy_binary(path: str) -> Tuple[bool, str]:
    if not os.path.isfile(path):
        return False, f"{path} not found"
    if not os.access(path, os.X_OK):
        return False, f"{path} is not executable"
    return True, f"{path} executable"


def check_engine_library(path: str) -> Tuple[bool, str]:
    if os.path.isfile(path):
        return True, f"{path} present"
    return False, f"{path} not found"


def check_scapy_available() -> Tuple[bool, str]:
    """
    Check if Scapy is installed and can list interfaces.

    Returns:
        Tuple of (success, message)
    """
    try:
        import scapy
        from scapy.all import get_if_list
        get_if_list()
        return True, f"Scapy {scapy.VERSION} available"
    except ImportError as e:
        return False, f"Scapy not installed: {e}"
    except Exception as e:
        return False, f"Scapy error: {e}"


def check_tunnel_config(path: str) -> Tuple[bool, str]:
    try:
        tunnel = parse_tunnel_config(path)
    except ConfigInvalid as e:
        return False, e.reason
    return True, f"{tunnel.name} mtu={tunnel.mtu} ipv4={tunnel.ipv4} ipv6={tunnel.ipv6}"


def run_preflight_checks(runtime: RuntimeConfig, verbose: bool = True) -> List[Tuple[str, bool, str]]:
    """
    Run all pre-flight checks.

    Args:
        runtime: Paths of the native components and config files
        verbose: Whether to print results

    Returns:
        List of (check_name, success, message) tuples
    """
    engine_path = os.path.join(runtime.native_lib_dir, runtime.engine_library)
    checks = [
        ("Privileges", check_root_privileges),
        ("TUN device", check_tun_device),
        ("iproute2", check_ip_tool),
        ("Tunnel config", lambda: check_tunnel_config(runtime.tunnel_config_path)),
        ("Engine library", lambda: check_engine_library(engine_path)),
        ("Proxy binary", lambda: check_proxy_binary(runtime.proxy_binary_path)),
        ("Scapy", check_scapy_available),
    ]

    results = []
    for name, check_fn in checks:
        success, message = check_fn()
        results.append((name, success, message))

        if verbose:
            if success:
                status = "[OK]"
            elif name in NON_CRITICAL:
                status = "[WARN]"
            else:
                status = "[FAIL]"
            print(f"  {status} {name}: {message}")

    return results


def validate_startup(runtime: RuntimeConfig) -> None:
    """
    Validate system is ready to bring the tunnel up.

    Raises InterfaceError if any critical check fails.
    """
    results = run_preflight_checks(runtime, verbose=False)
    failures = [
        (name, msg) for name, success, msg in results
        if not success and name not in NON_CRITICAL
    ]

    if failures:
        error_lines = ["Pre-flight checks failed:"]
        for name, msg in failures:
            error_lines.append(f"  - {name}: {msg}")
        raise InterfaceError("\n".join(error_lines))
