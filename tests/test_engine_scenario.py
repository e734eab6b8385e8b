# ============================================================================
# Pitboss -- End-to-End Engine Tests (tests/test_engine_scenario.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Boots the whole engine (pitboss/core/boot.py) and walks through the
#   situations it exists for:
#     - a pot mismatch is detected, misdiagnosed, fixed, and learned from
#     - the learning survives a restart and helps the next occurrence
#     - log files are tailed by the ingestion worker
#     - background workers start, stop, and persist on the way out
#     - a corrupt state file or bad config never stops boot
#
# USAGE:
#   pytest tests/test_engine_scenario.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

from unittest.mock import MagicMock

import sys as _sys, os as _os
_sys.path.insert(0, _os.path.dirname(__file__))
from conftest import make_config

from pitboss.core.boot import boot_pitboss
from pitboss.core.config import SourceConfig
from pitboss.core.exceptions import PersistenceError
from pitboss.core.models import AttemptResult, IssueStatus, Severity
from pitboss.core.workers import AnomalyWorker, IngestionWorker, PersistenceWorker


POT_LINE = "[game] [ERROR] pot_mismatch table=42 expected=1000 actual=950"


# ============================================================================
# SECTION 1: THE POT MISMATCH STORY
# ============================================================================

class TestPotMismatchScenario:

    def test_detect_misdiagnose_fix_learn_restart(self, config, clock):
        """
        WHAT: The full loop an operator lives through:
              1. A side-pot write lands on table 42
              2. The game logs a pot mismatch -> HIGH Issue, active,
                 with the side-pot write as its nearest cause
              3. Resetting the pot fails; the response already carries
                 the next suggestions
              4. Recomputing the pot from bets works -> resolved, and the
                 reset is recorded as a misdiagnosis
              5. After a restart of Pitboss itself, the same mismatch
                 comes back as a NEW Issue: recompute_from_bets is the
                 first suggestion and reset_pot carries a warning
        """
        engine = boot_pitboss(config=config, clock=clock)
        facade = engine.facade

        # 1 + 2
        engine.set_state("game.tables.42.side_pot", 50)
        clock.advance(2)
        _event, result = engine.ingest_line(POT_LINE, source="game")
        issue_id = result.created[0]
        issue = facade.get_issue(issue_id).data
        assert issue["type"] == "pot_mismatch"
        assert issue["severity"] == "high"
        assert issue["status"] == "active"
        assert issue["evidence"]["causal"]["nearest"]["path"] == "game.tables.42.side_pot"

        # 3
        facade.start_attempt(issue_id, "reset_pot")
        clock.advance(120)
        failed = facade.record_attempt(issue_id, "reset_pot", "failure")
        assert failed.ok
        assert failed.data["issue"]["status"] == "active"
        assert failed.data["attempt"]["duration_ms"] == 120_000

        # 4
        facade.start_attempt(issue_id, "recompute_from_bets")
        clock.advance(10)
        fixed = facade.record_attempt(issue_id, "recompute_from_bets", "success")
        assert fixed.data["issue"]["status"] == "resolved"
        records = facade.query("misdiagnosis for pot_mismatch").data["records"]
        assert records[0]["attempted_method"] == "reset_pot"
        assert records[0]["correct_method"] == "recompute_from_bets"
        assert records[0]["actual_root_cause"] == "game.tables.42.side_pot"
        assert records[0]["time_wasted_ms"] == 120_000

        # Workers were never started, so write the state file by hand
        engine.store.persist()

        # 5
        clock.advance(3600)
        rebooted = boot_pitboss(config=config, clock=clock)
        assert rebooted.boot_result.state_loaded is True
        assert rebooted.detector.issues.get(issue_id).status == IssueStatus.RESOLVED

        _event, again = rebooted.ingest_line(POT_LINE, source="game")
        assert again.created == [f"{issue_id}-r1"]
        fixes = rebooted.facade.get_suggested_fixes(f"{issue_id}-r1").data
        methods = [s["method"] for s in fixes["suggestions"]]
        assert methods == ["recompute_from_bets", "reset_pot"]
        assert "recompute_from_bets fixed it instead" in fixes["suggestions"][1]["warning"]
        assert fixes["prevention"]["correct_approach"] == "recompute_from_bets"

    def test_ingest_lines_combines_results(self, engine):
        result = engine.ingest_lines([
            POT_LINE,
            POT_LINE,
            "DEBUG noise that is filtered",
            "[database] [ERROR] mysql query failed: deadlock detected",
        ], source="game")
        assert len(result.created) == 2
        assert len(result.issues) == 3
        assert engine.ingestor.stats()["filtered"] == 1


# ============================================================================
# SECTION 2: LOG SOURCES AND WORKERS
# ============================================================================

class TestWorkers:

    def test_configured_source_is_tailed(self, tmp_path, clock):
        log_file = tmp_path / "game.log"
        config = make_config(tmp_path)
        config.ingest.sources = [SourceConfig(name="game", path=str(log_file))]
        engine = boot_pitboss(config=config, clock=clock)
        assert engine.boot_result.sources == ["game"]
        assert any("not found yet" in w for w in engine.boot_result.warnings)

        worker = IngestionWorker(engine.tailers[0], engine.detector)
        assert worker.run_once() is True
        assert worker.events == 0

        log_file.write_text(POT_LINE + "\nINFO hand dealt table=42\n")
        worker.run_once()
        assert worker.events == 2
        assert [i.type for i in engine.detector.issues.all()] == ["pot_mismatch"]

    def test_failed_cycle_is_counted_not_fatal(self):
        detector = MagicMock()
        detector.sample_signals.side_effect = RuntimeError("numpy went away")
        worker = AnomalyWorker(detector, interval=60)
        assert worker.run_once() is False
        assert worker.run_once() is False
        assert worker.failures == 2
        assert worker.cycles == 2

    def test_anomaly_worker_drains_deferred_work(self, tmp_path, clock):
        engine = boot_pitboss(config=make_config(tmp_path, detection={"budget_ms": 0.0}), clock=clock)
        engine.set_state("game.tables.42.pot", 950)
        clock.advance(1)
        engine.ingest_line(POT_LINE, source="game")
        assert engine.detector.deferred_count == 1
        AnomalyWorker(engine.detector, engine.decisions).run_once()
        assert engine.detector.deferred_count == 0

    def test_persistence_failure_reports_self_issue(self, engine):
        store = MagicMock()
        store.persist.side_effect = PersistenceError("disk full", path="/nowhere")
        reported = []
        worker = PersistenceWorker(store, interval=60, on_error=reported.append)
        assert worker.run_once() is False
        assert worker.failures == 1
        assert worker.cycles == 1
        assert len(reported) == 1

        store.persist.side_effect = None
        assert worker.run_once() is True
        assert worker.failures == 1
        assert worker.cycles == 2
        issue = engine.detector.report_internal_failure("persistence", reported[0])
        assert issue.type == "strategy_failure"
        assert issue.evidence["error_type"] == "PersistenceError"

    def test_start_and_stop_persist_on_exit(self, tmp_path, clock):
        config = make_config(
            tmp_path,
            state_store={"persist_interval_seconds": 60.0},
            anomaly={"recompute_interval_seconds": 60.0},
        )
        engine = boot_pitboss(config=config, clock=clock)
        engine.start()
        try:
            assert engine.running is True
            assert set(engine.status()["workers"]) == {"anomaly", "persistence"}
            engine.set_state("game.tables.42.pot", 950)
        finally:
            engine.stop()
        assert engine.running is False
        assert engine.store.persist_path.exists()
        assert '"game.tables.42.pot"' in engine.store.persist_path.read_text()


# ============================================================================
# SECTION 3: BOOT RESILIENCE
# ============================================================================

class TestBoot:

    def test_fresh_boot_summary(self, engine):
        summary = engine.boot_result.summary()
        assert "READY" in summary
        assert "FRESH" in summary
        assert engine.boot_result.errors == []

    def test_corrupt_state_file_boots_empty(self, config, clock):
        path = config.state_store.persist_path
        _os.makedirs(_os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("\x00\x01 definitely not json")

        engine = boot_pitboss(config=config, clock=clock)
        assert engine.boot_result.success is True
        assert engine.boot_result.state_loaded is False
        assert any("could not be read" in w for w in engine.boot_result.warnings)
        assert len(engine.store) == 0

    def test_invalid_config_is_reported_not_fatal(self, tmp_path, clock):
        config = make_config(tmp_path, anomaly={"z_threshold": -1.0})
        engine = boot_pitboss(config=config, clock=clock)
        assert engine.boot_result.success is True
        assert any("z_threshold" in e for e in engine.boot_result.errors)

    def test_unknown_activation_severity_falls_back_to_medium(self, tmp_path, clock):
        config = make_config(tmp_path, decision={"activation_severity": "urgent"})
        engine = boot_pitboss(config=config, clock=clock)
        assert engine.boot_result.success is True
        assert any("activation_severity" in e for e in engine.boot_result.errors)
        assert engine.decisions.activation_severity == Severity.MEDIUM

        _event, result = engine.ingest_line(POT_LINE, source="game")
        assert engine.detector.issues.get(result.created[0]).status == IssueStatus.ACTIVE

    def test_attempt_results_accept_enum_and_text(self, engine):
        _event, result = engine.ingest_line(POT_LINE, source="game")
        issue_id = result.created[0]
        engine.decisions.record_outcome(issue_id, "reset_pot", AttemptResult.FAILURE)
        outcome = engine.decisions.record_outcome(issue_id, "recompute_from_bets", "success")
        assert outcome.issue.status == IssueStatus.RESOLVED
