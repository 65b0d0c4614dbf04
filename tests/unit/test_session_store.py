"""
Unit Tests for Session Id Store
"""

import pytest
import json
import sys
import os

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "graph_gullible", "src"))

from graph_gullible.session_store import SessionIdStore, session_key


class TestSessionIdStore:

    @pytest.fixture
    def path(self, tmp_path):
        return tmp_path / "ids.json"

    def test_key_format(self):
        assert session_key(3, "a@b.c") == "gg_session_3_a@b.c"

    def test_get_or_create_is_stable(self, path):
        store = SessionIdStore(path=path)
        first = store.get_or_create(1, "a@b.c")
        assert store.get_or_create(1, "a@b.c") == first
        assert store.get(1, "a@b.c") == first

    def test_pairs_are_independent(self, path):
        store = SessionIdStore(path=path)
        ids = {
            store.get_or_create(1, "a@b.c"),
            store.get_or_create(2, "a@b.c"),
            store.get_or_create(1, "x@y.z"),
        }
        assert len(ids) == 3

    def test_survives_restart(self, path):
        session_id = SessionIdStore(path=path).get_or_create(101, "a@b.c")

        reloaded = SessionIdStore(path=path)

        assert reloaded.get(101, "a@b.c") == session_id
        assert json.loads(path.read_text())[session_key(101, "a@b.c")] == session_id

    def test_unreadable_file_is_ignored(self, path):
        path.write_text("{not json")
        store = SessionIdStore(path=path)
        assert store.get(1, "a@b.c") is None
        assert store.get_or_create(1, "a@b.c")

    def test_memory_only(self, path):
        store = SessionIdStore(path=path, persist=False)
        store.get_or_create(1, "a@b.c")
        assert not path.exists()

    def test_path_from_env(self, tmp_path, monkeypatch):
        env_path = tmp_path / "env" / "ids.json"
        monkeypatch.setenv("GG_SESSION_STORE_PATH", str(env_path))

        SessionIdStore().get_or_create(1, "a@b.c")

        assert env_path.exists()
