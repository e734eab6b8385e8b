# ============================================================================
# Pitboss -- State Store Tests (tests/test_state_store.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Exercises pitboss/core/state_store.py: versioned writes, path
#   validation, change history, subscriptions, and the crash-safe
#   persist/load cycle (including corrupt-file quarantine).
#
# USAGE:
#   pytest tests/test_state_store.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

import json
import threading
from unittest.mock import patch

import pytest

import sys as _sys, os as _os
_sys.path.insert(0, _os.path.dirname(__file__))
from conftest import FakeClock, make_config

from pitboss.core.exceptions import InvalidPathError, PersistenceError
from pitboss.core.state_store import StateStore


# ============================================================================
# SECTION 1: READS AND WRITES
# ============================================================================

class TestReadsAndWrites:

    def test_set_returns_increasing_versions(self, store):
        """
        WHAT: Every write to a path bumps its version by one.
        WHY:  Versions are how the engine tells "same value rewritten"
              apart from "nothing happened".
        """
        assert store.set("game.tables.42.pot", 1000) == 1
        assert store.set("game.tables.42.pot", 1000) == 2
        assert store.version("game.tables.42.pot") == 2
        assert store.version("game.tables.99.pot") == 0

    def test_get_returns_private_copy(self, store):
        """
        WHAT: Mutating what get() returned does not change the store.
        WHY:  Committed state must only change through set()/update().
        """
        store.set("game.tables.42", {"seats": [1, 2]})
        value = store.get("game.tables.42")
        value["seats"].append(3)
        assert store.get("game.tables.42") == {"seats": [1, 2]}

    def test_caller_mutation_after_set_is_ignored(self, store):
        payload = {"pot": 10}
        store.set("game.tables.1", payload)
        payload["pot"] = 99
        assert store.get("game.tables.1") == {"pot": 10}

    def test_get_missing_returns_default(self, store):
        assert store.get("game.nothing") is None
        assert store.get("game.nothing", 5) == 5

    def test_update_is_atomic_under_threads(self, store):
        """
        WHAT: 8 threads x 200 increments through update() lose nothing.
        WHY:  update() is the read-modify-write primitive counters use.
        """
        def bump():
            for _ in range(200):
                store.update("system.counters.bets", lambda n: (n or 0) + 1)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get("system.counters.bets") == 1600
        assert store.version("system.counters.bets") == 1600

    @pytest.mark.parametrize("path", ["", "game..pot", ".game", "game.", "game. pot", "weather.today"])
    def test_invalid_paths_rejected(self, store, path):
        with pytest.raises(InvalidPathError) as exc:
            store.set(path, 1)
        assert exc.value.error_code == "STA-001"

    def test_validate_path_checks_without_writing(self, store):
        store.validate_path("game.tables.42.pot")
        with pytest.raises(InvalidPathError):
            store.validate_path("weather.today")
        assert len(store) == 0

    def test_subtree_builds_nested_dict(self, store):
        store.set("game.chips.total", 5000)
        store.set("game.chips.by_table.42", 3000)
        store.set("game.chips.by_table.7", 2000)
        assert store.subtree("game.chips") == {
            "total": 5000,
            "by_table": {"42": 3000, "7": 2000},
        }

    def test_snapshot_and_keys_filter_by_prefix(self, store):
        store.set("game.a", 1)
        store.set("game.b", 2)
        store.set("system.c", 3)
        assert store.keys("game") == ["game.a", "game.b"]
        assert store.snapshot("system") == {"system.c": 3}


# ============================================================================
# SECTION 2: HISTORY, SUBSCRIPTIONS, LISTENERS
# ============================================================================

class TestHistory:

    def test_history_records_digests_not_values(self, store):
        store.set("game.pot", 100)
        store.set("game.pot", 200)
        records = store.history(prefix="game.pot")
        assert [r.version for r in records] == [1, 2]
        assert records[0].old_digest is None
        assert records[1].old_digest == records[0].new_digest
        assert "value" not in records[1].to_dict()

    def test_history_since_and_prefix(self, store, clock):
        store.set("game.a", 1)
        clock.advance(10)
        cutoff = clock()
        store.set("game.b", 2)
        store.set("system.c", 3)
        since = store.history(since=cutoff)
        assert [r.path for r in since] == ["game.b", "system.c"]
        assert [r.path for r in store.history(since=cutoff, prefix="game")] == ["game.b"]

    def test_history_is_bounded(self, tmp_path):
        config = make_config(tmp_path, state_store={"history_limit": 3})
        s = StateStore(config.state_store, clock=FakeClock())
        for i in range(10):
            s.set("game.n", i)
        records = s.history()
        assert len(records) == 3
        assert records[-1].version == 10

    def test_caused_by_issue_id_is_kept(self, store):
        store.set("game.pot", 1, caused_by_issue_id="abc123")
        assert store.history()[-1].caused_by_issue_id == "abc123"


class TestSubscriptions:

    def test_subscription_sees_matching_changes_in_order(self, store):
        sub = store.subscribe("game.tables")
        store.set("game.tables.1", "a")
        store.set("system.x", 1)
        store.set("game.tables.1", "b")
        records = sub.drain()
        assert [r.version for r in records] == [1, 2]
        assert all(r.path == "game.tables.1" for r in records)
        sub.close()

    def test_closed_subscription_stops_receiving(self, store):
        sub = store.subscribe("game")
        sub.close()
        store.set("game.x", 1)
        assert sub.get(timeout=0.01) is None

    def test_listener_runs_synchronously(self, store):
        seen = []
        remove = store.add_listener(seen.append, prefix="game")
        store.set("game.x", 1)
        assert len(seen) == 1 and seen[0].path == "game.x"
        remove()
        store.set("game.x", 2)
        assert len(seen) == 1

    def test_broken_listener_does_not_fail_writer(self, store):
        def boom(record):
            raise RuntimeError("listener exploded")

        store.add_listener(boom)
        assert store.set("game.x", 1) == 1
        assert store.get("game.x") == 1


# ============================================================================
# SECTION 3: PERSISTENCE
# ============================================================================

class TestPersistence:

    def test_round_trip_with_tables(self, config, clock):
        """
        WHAT: Entries, versions and attached tables survive persist/load.
        WHY:  A restart must resume learning and issue state exactly.
        """
        first = StateStore(config.state_store, clock=clock)
        table = {"rows": [1, 2, 3]}
        first.attach_table("demo", lambda: table, lambda data: None)
        first.set("game.pot", 1000)
        first.set("game.pot", 1200)
        path = first.persist()
        assert path.exists()
        assert not path.with_name(path.name + ".tmp").exists()

        second = StateStore(config.state_store, clock=clock)
        loaded = []
        assert second.load() is True
        assert second.get("game.pot") == 1200
        assert second.version("game.pot") == 2
        # Table read before attach is handed over on attach
        second.attach_table("demo", lambda: {}, loaded.append)
        assert loaded == [{"rows": [1, 2, 3]}]

    def test_missing_file_is_fresh_start(self, store):
        assert store.load() is False
        assert store.keys() == []

    def test_corrupt_file_is_quarantined(self, config, clock):
        """
        WHAT: A garbage state file is moved aside and the store starts empty.
        WHY:  A bad file must never stop the engine from booting.
        """
        s = StateStore(config.state_store, clock=clock)
        s.persist_path.parent.mkdir(parents=True, exist_ok=True)
        s.persist_path.write_text("{not json", encoding="utf-8")
        s.set("game.leftover", 1)

        assert s.load() is False
        assert s.keys() == []
        assert not s.persist_path.exists()
        backups = list(s.persist_path.parent.glob(s.persist_path.name + ".corrupt.*"))
        assert len(backups) == 1

    def test_schema_invalid_file_is_quarantined(self, config, clock):
        s = StateStore(config.state_store, clock=clock)
        s.persist_path.parent.mkdir(parents=True, exist_ok=True)
        s.persist_path.write_text(json.dumps({"schema_version": 1, "entries": {"game.x": {"version": 0}}}))
        assert s.load() is False
        assert list(s.persist_path.parent.glob("*.corrupt.*"))

    def test_legacy_blob_is_migrated(self, config, clock):
        s = StateStore(config.state_store, clock=clock)
        s.persist_path.parent.mkdir(parents=True, exist_ok=True)
        s.persist_path.write_text(json.dumps({
            "state": {"game": {"tables": {"42": {"pot": 500}}}},
            "eventLog": [{"ignored": True}],
            "savedAt": 123.0,
        }))
        assert s.load() is True
        assert s.get("game.tables.42.pot") == 500
        assert s.version("game.tables.42.pot") == 1

    def test_bad_table_data_does_not_break_load(self, config, clock):
        first = StateStore(config.state_store, clock=clock)
        first.attach_table("demo", lambda: {"x": 1}, lambda data: None)
        first.set("game.pot", 1)
        first.persist()

        def strict(data):
            raise ValueError("unexpected table shape")

        second = StateStore(config.state_store, clock=clock)
        second.attach_table("demo", lambda: {}, strict)
        assert second.load() is True
        assert second.get("game.pot") == 1

    def test_unwritable_path_raises_persistence_error(self, tmp_path, clock):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a folder")
        config = make_config(tmp_path)
        config.state_store.persist_path = str(blocker / "state.json")
        s = StateStore(config.state_store, clock=clock)
        s.set("game.x", 1)
        with pytest.raises(PersistenceError):
            s.persist()

    def test_crash_before_rename_keeps_previous_snapshot(self, config, clock):
        """
        WHAT: The temp file is written but the rename never happens, and
              a half-written temp file is left behind.
        WHY:  Reload must come back to the last complete snapshot, not
              to nothing and not to the torn write.
        """
        first = StateStore(config.state_store, clock=clock)
        first.set("game.pot", 1000)
        first.set("game.pot", 1200)
        path = first.persist()

        first.set("game.pot", 1500)
        first.set("game.chips.total", 9000)
        with patch("pitboss.core.state_store.os.replace", side_effect=OSError("power lost")):
            with pytest.raises(PersistenceError):
                first.persist()
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text('{"schema_version": 1, "entr', encoding="utf-8")

        second = StateStore(config.state_store, clock=clock)
        assert second.load() is True
        assert second.get("game.pot") == 1200
        assert second.version("game.pot") == 2
        assert second.get("game.chips.total") is None
        assert not list(path.parent.glob("*.corrupt.*"))
