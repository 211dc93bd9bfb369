"""
Tests for the tsocks command line.
"""

import os

import pytest

from tsocks.__main__ import main
from tsocks.config import load_config_file, parse_tunnel_config
from tsocks.state import StateStore


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


def run(data_dir, *args):
    return main(["--data-dir", data_dir, "--no-log-file", *args])


class TestInitConfig:
    """Tests for the init-config command."""

    def test_writes_both_files(self, data_dir, tmp_path, capsys):
        config = str(tmp_path / "config.yaml")

        assert run(data_dir, "--config", config, "init-config") == 0

        assert "routing" in load_config_file(config)
        tunnel = parse_tunnel_config(os.path.join(data_dir, "hev-socks5-tunnel.yaml"))
        assert tunnel.name == "tun0"
        assert "Default configuration saved" in capsys.readouterr().out

    def test_keeps_existing_engine_config(self, data_dir, tmp_path):
        config = str(tmp_path / "config.yaml")
        engine_config = os.path.join(data_dir, "hev-socks5-tunnel.yaml")
        run(data_dir, "--config", config, "init-config")
        with open(engine_config, "a") as f:
            f.write("# local edit\n")

        run(data_dir, "--config", config, "init-config")
        with open(engine_config) as f:
            assert "# local edit" in f.read()

        run(data_dir, "--config", config, "init-config", "--force")
        with open(engine_config) as f:
            assert "# local edit" not in f.read()


class TestStatus:
    """Tests for the status command."""

    def test_reports_persisted_flags(self, data_dir, tmp_path, capsys):
        store = StateStore(os.path.join(data_dir, "state.yaml"))
        store.enabled = True
        store.record_connection()

        assert run(data_dir, "--config", str(tmp_path / "none.yaml"), "status") == 0

        out = capsys.readouterr().out
        assert "enabled         : True" in out
        assert "connections     : 1" in out
        assert "tun0 active" in out


class TestArguments:
    """Tests for argument parsing."""

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])

    def test_connect_flags_exclusive(self, data_dir):
        with pytest.raises(SystemExit):
            run(data_dir, "connect", "--auto-reconnect", "--no-auto-reconnect")
