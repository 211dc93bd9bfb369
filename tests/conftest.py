"""
Pytest configuration and fixtures for TSocks tests.
"""

import os
import sys
import time

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tsocks.config import (
    ProxyConfig,
    RoutingPolicy,
    RuntimeConfig,
    ServerConfig,
    StaticConfigSource,
    TunnelConfig,
    write_tunnel_config,
)
from tsocks.engine import TunnelEngine
from tsocks.exceptions import EngineStartFailed, InterfaceEstablishFailed
from tsocks.tun_interface import InterfaceBackend, VirtualInterfaceBuilder


class FakeEngine(TunnelEngine):
    """Records calls; counters are set by the test."""

    def __init__(self, events=None, fail=False):
        self.events = events if events is not None else []
        self.fail = fail
        self.available = True
        self.counters = (0, 0, 0, 0)
        self.running = False
        self.started_with = None
        self.stop_calls = 0

    def start(self, config_path, fd):
        self.events.append(("engine.start", fd))
        if self.fail:
            raise EngineStartFailed("rejected by test", fd=fd)
        os.fstat(fd)
        self.started_with = (config_path, fd)
        self.running = True

    def stop(self):
        self.events.append(("engine.stop",))
        self.stop_calls += 1
        self.running = False

    def stats(self):
        if not self.running or not self.available:
            return None
        return self.counters


class FakeBackend(InterfaceBackend):
    """Hands out pipe descriptors instead of TUN devices."""

    def __init__(self, events=None, fail=False):
        self.events = events if events is not None else []
        self.fail = fail
        self.plans = []
        self.active = set()
        self.teardown_calls = 0
        self.on_teardown = None

    def establish(self, plan):
        self.events.append(("interface.establish", plan.name))
        if self.fail:
            raise InterfaceEstablishFailed(plan.name, "device busy")
        read_fd, write_fd = os.pipe()
        os.close(write_fd)
        self.plans.append(plan)
        self.active.add(plan.name)
        return read_fd

    def teardown(self, plan):
        self.events.append(("interface.teardown", plan.name))
        self.teardown_calls += 1
        if self.on_teardown is not None:
            self.on_teardown()
        self.active.discard(plan.name)

    def is_active(self, name):
        return name in self.active


def make_script(directory, name, body):
    """Write an executable shell script and return its path."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(0o755)
    return str(path)


def count_lines(path):
    if not os.path.exists(path):
        return 0
    with open(path) as f:
        return sum(1 for _ in f)


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def runtime(tmp_path):
    """Runtime config rooted in a temp directory with fast timings."""
    lib_dir = tmp_path / "lib"
    lib_dir.mkdir()
    return RuntimeConfig(
        data_dir=str(tmp_path / "data"),
        native_lib_dir=str(lib_dir),
        log_to_file=False,
        stats_interval=0.05,
        restart_backoff=0.01,
        stop_timeout=2.0,
        config_load_timeout=0.05,
        stat_port=None,
    )


@pytest.fixture
def tunnel_config(runtime):
    """A valid engine config file; returns its path."""
    write_tunnel_config(runtime.tunnel_config_path, TunnelConfig())
    return runtime.tunnel_config_path


@pytest.fixture
def launch_log(tmp_path):
    """File each fake proxy appends its argv to."""
    return str(tmp_path / "launches.log")


@pytest.fixture
def make_proxy(tmp_path, runtime, launch_log):
    """Factory installing a fake proxy binary with the given shell body."""

    def _make(body):
        script = f'echo "$@" >> "{launch_log}"\n{body}'
        runtime.proxy_binary = make_script(tmp_path, "sslocal", script)
        return runtime.proxy_binary

    return _make


@pytest.fixture
def long_running_proxy(make_proxy):
    return make_proxy("exec sleep 30")


@pytest.fixture
def crashing_proxy(make_proxy):
    return make_proxy('echo "ERROR proxy failed to bind"\nexit 1')


@pytest.fixture
def crash_once_proxy(make_proxy, tmp_path):
    """Crashes on the first launch only, then stays up."""
    marker = tmp_path / "crashed.marker"
    return make_proxy(
        f'if [ -e "{marker}" ]; then exec sleep 30; fi\n'
        f'touch "{marker}"\n'
        'exit 3'
    )


@pytest.fixture
def one_server_proxy_config():
    return ProxyConfig(servers=[ServerConfig(address="203.0.113.10", password="secret")])


@pytest.fixture
def ipv4_policy():
    return RoutingPolicy(ipv4_enabled=True, ipv6_enabled=False, dns_v4="", dns_v6="")


@pytest.fixture
def static_source(tunnel_config, ipv4_policy, one_server_proxy_config):
    return StaticConfigSource(tunnel_config, ipv4_policy, one_server_proxy_config)


@pytest.fixture
def events():
    return []


@pytest.fixture
def fake_engine(events):
    return FakeEngine(events)


@pytest.fixture
def fake_backend(events):
    return FakeBackend(events)


@pytest.fixture
def builder(fake_backend):
    return VirtualInterfaceBuilder(fake_backend, self_app_id="1000")
