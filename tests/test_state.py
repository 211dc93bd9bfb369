"""
Tests for tsocks.state module.
"""

import os
import stat
import time

from tsocks.state import ServiceState, Session, StateStore


class TestStateStore:
    """Tests for persisted service flags."""

    def test_defaults(self, tmp_path):
        store = StateStore(str(tmp_path / "state.yaml"))

        assert store.enabled is False
        assert store.auto_reconnect is False
        assert store.connection_count == 0
        assert store.last_connected_at is None

    def test_flags_survive_reload(self, tmp_path):
        path = str(tmp_path / "data" / "state.yaml")
        store = StateStore(path)
        store.enabled = True
        store.auto_reconnect = True

        reloaded = StateStore(path)

        assert reloaded.enabled is True
        assert reloaded.auto_reconnect is True
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert not os.path.exists(path + ".tmp")

    def test_unchanged_value_not_rewritten(self, tmp_path):
        path = str(tmp_path / "state.yaml")
        store = StateStore(path)
        store.enabled = False

        assert not os.path.exists(path)

    def test_corrupt_file_falls_back(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("enabled: [oops\n")

        store = StateStore(str(path))

        assert store.enabled is False
        store.enabled = True
        assert StateStore(str(path)).enabled is True

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("- just\n- a list\n")
        assert StateStore(str(path)).auto_reconnect is False

    def test_record_connection(self, tmp_path):
        path = str(tmp_path / "state.yaml")
        store = StateStore(path)
        before = time.time()

        store.record_connection()
        store.record_connection()

        reloaded = StateStore(path)
        assert reloaded.connection_count == 2
        assert reloaded.last_connected_at >= before


class TestSession:
    """Tests for the per-connection container."""

    def test_empty_session(self):
        session = Session()

        assert session.handle is None
        assert session.restart_count == 0
        assert session.last_snapshot is None
        assert session.engine_started is False
        assert session.uptime >= 0

    def test_states(self):
        assert {s.value for s in ServiceState} == {
            "stopped", "starting", "running", "stopping", "failed",
        }
