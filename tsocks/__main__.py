"""
Entry point for TSocks.

Run with: python -m tsocks connect
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import Optional

from .config import (
    CONFIG_FILE,
    RuntimeConfig,
    Socks5Config,
    TunnelConfig,
    FileConfigSource,
    apply_config_file,
    load_config_file,
    parse_tunnel_config,
    save_default_config,
    write_tunnel_config,
)
from .exceptions import ConfigInvalid, InterfaceError, TSocksError
from .logging_setup import format_block, setup_logging
from .preflight import NON_CRITICAL, run_preflight_checks, validate_startup
from .receiver import ServiceReceiver
from .service import ServiceOrchestrator
from .state import ServiceState, StateStore
from .tun_interface import interface_exists

logger = logging.getLogger("tsocks")

# Seconds between receiver status checks while connected
STATUS_CHECK_INTERVAL = 30.0


def _setup_signal_handlers(stop_flag: threading.Event) -> None:
    """Map termination signals to the Disconnect command."""

    def _shutdown_handler(signum: int, frame) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(f"[SHUTDOWN] Received {sig_name}, disconnecting...")
        stop_flag.set()

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _shutdown_handler)


def _notify_user(error: TSocksError) -> None:
    print(f"\n[tsocks] {error}", file=sys.stderr)


def _build_runtime(args: argparse.Namespace) -> RuntimeConfig:
    """File config first, then CLI overrides."""
    runtime = RuntimeConfig()
    if args.data_dir:
        runtime.data_dir = os.path.expanduser(args.data_dir)
    apply_config_file(runtime, load_config_file(args.config or runtime.config_path))
    if args.no_log_file:
        runtime.log_to_file = False
    if args.log_level:
        runtime.log_level = args.log_level
    return runtime


def ensure_tunnel_config(runtime: RuntimeConfig, source: FileConfigSource) -> None:
    """Write a default engine config pointing at the proxy listener if none exists."""
    path = runtime.tunnel_config_path
    if os.path.exists(path):
        return
    address, port = source.proxy_config().listen
    write_tunnel_config(path, TunnelConfig(), Socks5Config(port=port, address=address))
    logger.info(f"[CONFIG] Wrote default engine config to {path}")


def cmd_init_config(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    config_path = args.config or runtime.config_path
    if not save_default_config(config_path):
        print(f"Failed to save configuration to: {config_path}")
        return 1
    print(f"Default configuration saved to: {config_path}")

    if not os.path.exists(runtime.tunnel_config_path) or args.force:
        write_tunnel_config(runtime.tunnel_config_path, TunnelConfig(), Socks5Config())
        print(f"Default engine configuration saved to: {runtime.tunnel_config_path}")
    return 0


def cmd_preflight(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    print("Running pre-flight checks...")
    results = run_preflight_checks(runtime, verbose=True)
    return 0 if all(ok for name, ok, _ in results if name not in NON_CRITICAL) else 1


def cmd_status(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    store = StateStore(runtime.state_path)
    last = store.last_connected_at
    try:
        name = parse_tunnel_config(runtime.tunnel_config_path).name
    except ConfigInvalid:
        name = TunnelConfig().name
    lines = [
        f"enabled         : {store.enabled}",
        f"auto reconnect  : {store.auto_reconnect}",
        f"connections     : {store.connection_count}",
        f"last connected  : {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(last)) if last else '-'}",
        f"{name} active     : {interface_exists(name)}",
    ]
    print(format_block("STATUS", lines))
    return 0


def cmd_connect(args: argparse.Namespace) -> int:
    runtime = _build_runtime(args)
    runtime.ensure_dirs()
    setup_logging(
        log_file=runtime.log_file if runtime.log_to_file else None,
        log_to_console=True,
        log_level=runtime.log_level,
    )

    source = FileConfigSource(runtime, args.config)
    try:
        source.load()
    except TSocksError as e:
        print(f"Error: {e}")
        return 1
    ensure_tunnel_config(runtime, source)

    if not args.skip_preflight:
        print("Running pre-flight checks...")
        try:
            validate_startup(runtime)
            print("All pre-flight checks passed.\n")
        except InterfaceError as e:
            print(f"\nError: {e}")
            print("\nTry running with sudo or check the native component paths.")
            return 1

    store = StateStore(runtime.state_path)
    if args.auto_reconnect is not None:
        store.auto_reconnect = args.auto_reconnect

    orchestrator = ServiceOrchestrator(runtime, source, store=store, notifier=_notify_user)
    receiver = ServiceReceiver(orchestrator)
    receiver.attach()

    stop_flag = threading.Event()
    _setup_signal_handlers(stop_flag)

    try:
        orchestrator.connect().result()
    except TSocksError as e:
        logger.error(f"[SERVICE] {e}")
        if not store.auto_reconnect:
            orchestrator.shutdown()
            return 1

    subscription = orchestrator.broadcaster.subscribe()
    next_check = time.monotonic() + STATUS_CHECK_INTERVAL
    try:
        while not stop_flag.is_set():
            snapshot = subscription.get(timeout=1.0)
            if snapshot is not None and not args.quiet:
                logger.info(snapshot.format_summary())
            if orchestrator.state == ServiceState.STOPPED and not store.auto_reconnect:
                logger.info("[SERVICE] Tunnel is down, exiting")
                break
            if time.monotonic() >= next_check:
                receiver.check_status()
                next_check = time.monotonic() + STATUS_CHECK_INTERVAL
    finally:
        subscription.close()
        receiver.detach()
        orchestrator.shutdown(timeout=runtime.stop_timeout + 5.0)
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main entry point for TSocks."""
    ap = argparse.ArgumentParser(
        prog="tsocks",
        description="TSocks - TUN to SOCKS5 tunnel with a supervised local proxy",
    )
    ap.add_argument(
        "--config",
        help=f"Path to config file (default: {CONFIG_FILE})",
    )
    ap.add_argument(
        "--data-dir",
        help="Directory for state, generated configs and logs (default: ~/.tsocks)",
    )
    ap.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable file logging",
    )
    ap.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    p_connect = sub.add_parser("connect", help="Bring the tunnel up and stay in the foreground")
    p_connect.add_argument("--skip-preflight", action="store_true", help="Do not run pre-flight checks")
    p_connect.add_argument("--quiet", action="store_true", help="Do not log traffic snapshots")
    reconnect = p_connect.add_mutually_exclusive_group()
    reconnect.add_argument("--auto-reconnect", dest="auto_reconnect", action="store_true", default=None,
                           help="Reconnect automatically after failures")
    reconnect.add_argument("--no-auto-reconnect", dest="auto_reconnect", action="store_false",
                           help="Do not reconnect after failures")
    p_connect.set_defaults(func=cmd_connect)

    p_init = sub.add_parser("init-config", help="Generate default configuration files and exit")
    p_init.add_argument("--force", action="store_true", help="Overwrite the engine config too")
    p_init.set_defaults(func=cmd_init_config)

    p_pre = sub.add_parser("preflight", help="Check system requirements")
    p_pre.set_defaults(func=cmd_preflight)

    p_status = sub.add_parser("status", help="Show persisted service state")
    p_status.set_defaults(func=cmd_status)

    args = ap.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
