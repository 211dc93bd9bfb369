"""
Tests for tsocks.preflight module.
"""

import pytest

from tsocks.config import TunnelConfig, write_tunnel_config
from tsocks.exceptions import InterfaceError
from tsocks.preflight import (
    NON_CRITICAL,
    check_engine_library,
    check_proxy_binary,
    check_tunnel_config,
    run_preflight_checks,
    validate_startup,
)


class TestIndividualChecks:
    """Tests for single checks."""

    def test_proxy_binary(self, tmp_path):
        missing = str(tmp_path / "sslocal")
        ok, msg = check_proxy_binary(missing)
        assert not ok
        assert "not found" in msg

        path = tmp_path / "sslocal"
        path.write_text("#!/bin/sh\n")
        path.chmod(0o644)
        ok, msg = check_proxy_binary(str(path))
        assert not ok
        assert "not executable" in msg

        path.chmod(0o755)
        assert check_proxy_binary(str(path))[0]

    def test_engine_library(self, tmp_path):
        path = tmp_path / "libhev-socks5-tunnel.so"
        assert not check_engine_library(str(path))[0]
        path.write_bytes(b"\x7fELF")
        assert check_engine_library(str(path))[0]

    def test_tunnel_config(self, tmp_path):
        path = str(tmp_path / "tunnel.yaml")
        ok, msg = check_tunnel_config(path)
        assert not ok
        assert "does not exist" in msg

        write_tunnel_config(path, TunnelConfig(name="tun3"))
        ok, msg = check_tunnel_config(path)
        assert ok
        assert "tun3" in msg


class TestRunPreflight:
    """Tests for the aggregated checks."""

    def test_all_checks_reported(self, runtime, capsys):
        results = run_preflight_checks(runtime, verbose=True)

        names = [name for name, _, _ in results]
        assert names == [
            "Privileges", "TUN device", "iproute2", "Tunnel config",
            "Engine library", "Proxy binary", "Scapy",
        ]
        out = capsys.readouterr().out
        assert "Tunnel config" in out

    def test_quiet(self, runtime, capsys):
        run_preflight_checks(runtime, verbose=False)
        assert capsys.readouterr().out == ""

    def test_validate_startup_lists_failures(self, runtime):
        # No tunnel config and no engine library under the temp runtime
        with pytest.raises(InterfaceError) as exc:
            validate_startup(runtime)

        message = str(exc.value)
        assert "Tunnel config" in message
        assert "Engine library" in message
        for name in NON_CRITICAL:
            assert f"{name}:" not in message
