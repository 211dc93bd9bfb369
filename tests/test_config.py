"""
Tests for tsocks.config module.
"""

import os
import stat

import pytest
import yaml

from tsocks.config import (
    AppEntry,
    FileConfigSource,
    MiscConfig,
    ProxyConfig,
    ProxyMode,
    RoutingPolicy,
    RuntimeConfig,
    ServerConfig,
    Socks5Config,
    TunnelConfig,
    apply_config_file,
    load_config_file,
    parse_tunnel_config,
    policy_from_dict,
    proxy_config_from_dict,
    render_tunnel_config,
    save_default_config,
    write_tunnel_config,
)
from tsocks.exceptions import ConfigInvalid, ProxyConfigError


class TestRuntimeConfig:
    """Tests for RuntimeConfig paths."""

    def test_paths_follow_data_dir(self, tmp_path):
        runtime = RuntimeConfig(data_dir=str(tmp_path))

        assert runtime.tunnel_config_path == str(tmp_path / "hev-socks5-tunnel.yaml")
        assert runtime.private_config_dir == str(tmp_path / "configs")
        assert runtime.acl_dir == str(tmp_path / "acl")
        assert runtime.state_path == str(tmp_path / "state.yaml")

    def test_proxy_binary_path(self):
        runtime = RuntimeConfig(native_lib_dir="/opt/lib", proxy_binary="sslocal")
        assert runtime.proxy_binary_path == "/opt/lib/sslocal"

        runtime.proxy_binary = "/usr/bin/sslocal"
        assert runtime.proxy_binary_path == "/usr/bin/sslocal"

    def test_default_timings(self):
        runtime = RuntimeConfig()

        assert runtime.stats_interval == 2.0
        assert runtime.restart_limit == 3
        assert runtime.restart_backoff == 1.0
        assert runtime.min_rate_threshold == 50

    def test_ensure_dirs_private(self, tmp_path):
        runtime = RuntimeConfig(data_dir=str(tmp_path / "data"), log_to_file=False)
        runtime.ensure_dirs()

        assert os.path.isdir(runtime.private_config_dir)
        assert os.path.isdir(runtime.acl_dir)
        assert stat.S_IMODE(os.stat(runtime.data_dir).st_mode) == 0o700


class TestTunnelConfigFile:
    """Tests for the engine config file."""

    def test_parse_written_config(self, tmp_path):
        path = str(tmp_path / "tunnel.yaml")
        write_tunnel_config(path, TunnelConfig(name="tun7", mtu=1500, ipv4="10.1.0.1"))

        tunnel = parse_tunnel_config(path)

        assert tunnel.name == "tun7"
        assert tunnel.mtu == 1500
        assert tunnel.ipv4 == "10.1.0.1"
        assert tunnel.ipv6 == "fc00::1"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigInvalid) as exc:
            parse_tunnel_config(str(tmp_path / "nope.yaml"))
        assert "does not exist" in exc.value.reason

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        with pytest.raises(ConfigInvalid) as exc:
            parse_tunnel_config(str(path))
        assert "empty" in exc.value.reason

    def test_missing_ipv6(self, tmp_path):
        path = tmp_path / "tunnel.yaml"
        path.write_text("tunnel:\n  mtu: 8500\n  ipv4: 198.18.0.1\n")

        with pytest.raises(ConfigInvalid):
            parse_tunnel_config(str(path))

    def test_non_integer_mtu(self, tmp_path):
        path = tmp_path / "tunnel.yaml"
        path.write_text("tunnel:\n  mtu: big\n  ipv4: 198.18.0.1\n  ipv6: 'fc00::1'\n")

        with pytest.raises(ConfigInvalid):
            parse_tunnel_config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "tunnel.yaml"
        path.write_text("tunnel: [unclosed\n")

        with pytest.raises(ConfigInvalid):
            parse_tunnel_config(str(path))

    def test_render_omits_defaults(self):
        document = yaml.safe_load(render_tunnel_config(TunnelConfig()))

        assert list(document) == ["tunnel", "socks5", "misc"]
        assert document["misc"] == {"task-stack-size": 86016}
        assert "username" not in document["socks5"]

    def test_render_includes_overrides(self):
        text = render_tunnel_config(
            TunnelConfig(post_up_script="/etc/up.sh"),
            Socks5Config(port=1081, username="u", password="p"),
            MiscConfig(log_level="debug"),
        )
        document = yaml.safe_load(text)

        assert document["tunnel"]["post-up-script"] == "/etc/up.sh"
        assert document["socks5"]["port"] == 1081
        assert document["socks5"]["username"] == "u"
        assert document["misc"]["log-level"] == "debug"


class TestProxyConfig:
    """Tests for ProxyConfig invariants and serialization."""

    def test_single_enabled_server_ok(self):
        config = ProxyConfig(servers=[
            ServerConfig(address="a.example"),
            ServerConfig(address="b.example", enabled=False),
        ])
        config.validate()
        assert [s.address for s in config.enabled_servers()] == ["a.example"]

    def test_two_enabled_without_balancer(self):
        config = ProxyConfig(servers=[
            ServerConfig(address="a.example"),
            ServerConfig(address="b.example"),
        ])
        with pytest.raises(ProxyConfigError):
            config.validate()

    def test_two_enabled_with_balancer(self):
        config = ProxyConfig(
            servers=[ServerConfig(address="a.example"), ServerConfig(address="b.example")],
            balancer_enabled=True,
        )
        config.validate()
        assert "balancer" in config.to_dict()

    def test_invalid_port(self):
        config = ProxyConfig(servers=[ServerConfig(address="a.example", port=70000)])
        with pytest.raises(ProxyConfigError):
            config.validate()

    def test_plugin_resolution(self):
        config = ProxyConfig(servers=[
            ServerConfig(address="a.example", plugin="v2ray-plugin", plugin_opts="tls"),
        ])

        data = config.to_dict(lambda name: f"/lib/{name}")
        server = data["servers"][0]

        assert server["plugin"] == "/lib/v2ray-plugin"
        assert server["plugin_opts"] == "tls"
        assert server["server"] == "a.example"
        assert server["disabled"] is False

    def test_listen(self):
        assert ProxyConfig().listen == ("127.0.0.1", 1080)
        assert ProxyConfig(locals=[]).listen == ("127.0.0.1", 1080)


class TestRoutingPolicy:
    """Tests for routing policy parsing."""

    def test_enabled_apps_skips_disabled_and_duplicates(self):
        policy = RoutingPolicy(apps=[
            AppEntry("1001"),
            AppEntry("1002", enabled=False),
            AppEntry("1001"),
            AppEntry(" "),
        ])
        assert policy.enabled_apps() == ["1001"]

    def test_mode_names(self):
        assert policy_from_dict({"mode": "bypass"}).mode == ProxyMode.BYPASS
        assert policy_from_dict({"mode": "ONLY_PROXY"}).mode == ProxyMode.ONLY_PROXY
        assert policy_from_dict({"mode": 0}).mode == ProxyMode.GLOBAL
        assert policy_from_dict(None).mode == ProxyMode.GLOBAL

    def test_unknown_mode(self):
        with pytest.raises(ProxyConfigError):
            policy_from_dict({"mode": "sometimes"})

    def test_apps_and_routes(self):
        policy = policy_from_dict({
            "apps": [{"app": "1001", "enabled": False}, "1002"],
            "excluded_routes": ["10.0.0.5", "2001:db8::1/64"],
            "ipv6": False,
        })

        assert policy.apps == [AppEntry("1001", False), AppEntry("1002", True)]
        assert policy.excluded_routes == ["10.0.0.5", "2001:db8::1/64"]
        assert policy.ipv6_enabled is False


class TestConfigFile:
    """Tests for the YAML config file layer."""

    def test_missing_file_is_empty(self, tmp_path):
        assert load_config_file(str(tmp_path / "missing.yaml")) == {}

    def test_unparsable_file_is_empty(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("routing: {mode: [\n")
        assert load_config_file(str(path)) == {}

    def test_default_config_loads(self, tmp_path):
        path = str(tmp_path / "config.yaml")
        assert save_default_config(path)

        data = load_config_file(path)
        policy = policy_from_dict(data["routing"])
        proxy = proxy_config_from_dict(data["proxy"])

        assert policy.mode == ProxyMode.GLOBAL
        assert policy.ipv6_enabled is False
        assert proxy.listen == ("127.0.0.1", 1080)
        assert proxy.servers == []
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_apply_config_file(self):
        runtime = RuntimeConfig()
        apply_config_file(runtime, {
            "native": {"lib_dir": "/opt/tsocks", "proxy_binary": "ss-local"},
            "logging": {"to_file": False, "level": "DEBUG"},
            "timing": {"restart_limit": 5, "restart_backoff": 0.5, "stats_interval": 1},
        })

        assert runtime.native_lib_dir == "/opt/tsocks"
        assert runtime.proxy_binary_path == "/opt/tsocks/ss-local"
        assert runtime.log_to_file is False
        assert runtime.log_level == "DEBUG"
        assert runtime.restart_limit == 5
        assert runtime.restart_backoff == 0.5
        assert runtime.stats_interval == 1.0

    def test_server_without_address(self):
        with pytest.raises(ProxyConfigError):
            proxy_config_from_dict({"servers": [{"port": 8388}]})

    def test_disabled_key(self):
        proxy = proxy_config_from_dict({"servers": [
            {"address": "a.example", "disabled": True},
            {"address": "b.example"},
        ]})
        assert [s.address for s in proxy.enabled_servers()] == ["b.example"]


class TestFileConfigSource:
    """Tests for FileConfigSource."""

    def _write(self, runtime, text):
        os.makedirs(runtime.data_dir, exist_ok=True)
        with open(runtime.config_path, "w") as f:
            f.write(text)

    def test_not_loaded_until_load(self, runtime):
        source = FileConfigSource(runtime)

        assert not source.is_loaded()
        assert source.wait_loaded(0.01) is False

    def test_load(self, runtime):
        self._write(runtime, (
            "routing:\n  mode: bypass\n  apps: ['1001']\n"
            "proxy:\n  servers:\n    - {address: a.example, port: 8389}\n"
        ))
        source = FileConfigSource(runtime)
        source.load()

        assert source.is_loaded()
        assert source.routing_policy().mode == ProxyMode.BYPASS
        assert source.proxy_config().servers[0].port == 8389
        assert source.tunnel_config_path == runtime.tunnel_config_path

    def test_load_async(self, runtime):
        self._write(runtime, "routing:\n  mode: only_proxy\n")
        source = FileConfigSource(runtime)

        thread = source.load_async()

        assert source.wait_loaded(2.0)
        thread.join(timeout=2.0)
        assert source.routing_policy().mode == ProxyMode.ONLY_PROXY

    def test_invalid_proxy_section_raises(self, runtime):
        self._write(runtime, (
            "proxy:\n  servers:\n    - {address: a.example}\n    - {address: b.example}\n"
        ))
        source = FileConfigSource(runtime)

        with pytest.raises(ProxyConfigError):
            source.load()
        assert not source.is_loaded()
