# ============================================================================
# Pitboss -- Issue Detector Tests (tests/test_issue_detector.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Exercises pitboss/core/issue_detector.py and the strategies it runs:
#     - log signature matching and rule ordering
#     - merge/dedup, severity escalation, recurrence after resolution
#     - state invariants re-checked on writes
#     - rolling z-score anomalies with warm-up
#     - causal backtracking, cascades, and the per-event time budget
#     - failure isolation: a broken strategy becomes a low-severity Issue
#
# USAGE:
#   pytest tests/test_issue_detector.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

import re
from unittest.mock import MagicMock

import pytest

import sys as _sys, os as _os
_sys.path.insert(0, _os.path.dirname(__file__))
from conftest import make_config

from pitboss.core.exceptions import InvariantViolation
from pitboss.core.invariants import Invariant
from pitboss.core.issue_detector import IssueDetector, SignatureRule
from pitboss.core.models import (
    DetectionMethod,
    IssueCandidate,
    IssueStatus,
    LogEvent,
    Severity,
)
from pitboss.core.state_store import StateStore


@pytest.fixture
def detector(store, config, clock):
    d = IssueDetector(store, config, clock=clock)
    d.attach()
    yield d
    d.detach()


def _event(clock, message, level="ERROR", subsystem="game", **fields):
    return LogEvent(
        source=subsystem,
        subsystem=subsystem,
        level=level,
        message=message,
        timestamp=clock(),
        fields=fields,
        signature=message,
        raw=f"[{level}] {message}",
    )


def _issues_of_type(detector, issue_type):
    return [i for i in detector.issues.all() if i.type == issue_type]


# ============================================================================
# SECTION 1: PATTERN MATCHING
# ============================================================================

class TestPatternMatching:

    def test_pot_mismatch_line_creates_issue(self, detector, clock):
        result = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert len(result.created) == 1
        issue = result.issues[0]
        assert issue.type == "pot_mismatch"
        assert issue.severity == Severity.HIGH
        assert issue.source == "game"
        assert issue.detection_method == DetectionMethod.PATTERN
        assert issue.status == IssueStatus.DETECTED
        assert issue.evidence["rule"] == "pot_mismatch"
        assert issue.first_seen == clock()

    def test_critical_rules_are_tried_first(self, detector, clock):
        # Matches both the chip (critical) and the pot (high) signatures
        result = detector.process_event(_event(clock, "chips mismatch after pot error"))
        assert result.issues[0].type == "chip_mismatch"
        assert result.issues[0].severity == Severity.CRITICAL

    def test_snake_case_token_becomes_issue_type(self, detector, clock):
        result = detector.process_event(_event(clock, "seat_reservation_timeout for player 3"))
        assert result.issues[0].type == "seat_reservation_timeout"
        assert result.issues[0].severity == Severity.MEDIUM

    def test_unrecognised_error_is_low_severity(self, detector, clock):
        result = detector.process_event(_event(clock, "something broke badly"))
        assert result.issues[0].type == "unclassified_error"
        assert result.issues[0].severity == Severity.LOW

    def test_info_lines_never_match(self, detector, clock):
        result = detector.process_event(_event(clock, "pot_mismatch resolved", level="INFO"))
        assert result.issues == []

    def test_custom_rule_registration(self, detector, clock):
        detector.register_rule(SignatureRule(
            name="shuffle_bias",
            severity=Severity.HIGH,
            pattern=re.compile(r"deck bias", re.I),
            priority=1,
            levels=("WARN",),
        ))
        result = detector.process_event(_event(clock, "Deck bias detected", level="WARN"))
        assert result.issues[0].type == "shuffle_bias"


# ============================================================================
# SECTION 2: MERGE AND DEDUP
# ============================================================================

class TestMerge:

    def test_same_problem_twice_is_one_issue(self, detector, clock):
        """
        WHAT: The same pot mismatch reported twice is a single Issue.
        WHY:  Operators need one record per problem, with a count.
        """
        first = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        clock.advance(3)
        second = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert first.issue_ids == second.issue_ids
        assert second.created == []
        issue = detector.issues.get(first.issue_ids[0])
        assert issue.occurrence_count == 2
        assert issue.last_seen == clock()
        assert issue.first_seen == clock() - 3

    def test_different_tables_are_different_issues(self, detector, clock):
        a = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        b = detector.process_event(_event(clock, "pot_mismatch table=17", table_id=17))
        assert a.issue_ids != b.issue_ids

    def test_severity_takes_the_worst_and_methods_accumulate(self, detector, clock):
        signature = {"table_id": 42}
        low, _ = detector.merge(IssueCandidate(
            type="pot_mismatch", severity=Severity.MEDIUM, source="game",
            method=DetectionMethod.PATTERN, signature=signature, detected_at=clock(),
        ))
        high, created = detector.merge(IssueCandidate(
            type="pot_mismatch", severity=Severity.HIGH, source="game",
            method=DetectionMethod.ANOMALY, signature=signature, detected_at=clock(),
        ))
        assert created is False
        assert high.id == low.id
        assert high.severity == Severity.HIGH
        assert high.methods == ["pattern", "anomaly"]

    def test_recurrence_after_resolution_is_a_new_issue(self, detector, clock):
        first = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        issue_id = first.issue_ids[0]
        detector.issues.transition(issue_id, IssueStatus.RESOLVED, resolution="manual", at=clock())

        clock.advance(60)
        again = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert again.issue_ids == [f"{issue_id}-r1"]
        assert again.created == [f"{issue_id}-r1"]
        old = detector.issues.get(issue_id)
        assert old.status == IssueStatus.RESOLVED
        assert old.occurrence_count == 1

    def test_resolution_racing_a_merge_starts_a_recurrence(self, detector, clock):
        """
        WHAT: The Issue is resolved after merge has read the index but
              before it writes; the new evidence becomes <key>-r1.
        WHY:  A closed Issue must never have its count bumped.
        """
        first = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        issue_id = first.issue_ids[0]
        modify = detector.issues.modify

        def resolved_meanwhile(target_id, fn, caused_by_issue_id=None):
            detector.issues.modify = modify
            detector.issues.transition(target_id, IssueStatus.RESOLVED, resolution="manual", at=clock())
            return modify(target_id, fn, caused_by_issue_id)

        detector.issues.modify = resolved_meanwhile
        again = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert again.created == [f"{issue_id}-r1"]
        old = detector.issues.get(issue_id)
        assert old.status == IssueStatus.RESOLVED
        assert old.occurrence_count == 1

    def test_listener_hears_created_and_merged(self, detector, clock):
        heard = []
        detector.add_issue_listener(lambda issue, created: heard.append((issue.id, created)))
        detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert [c for _id, c in heard] == [True, False]

    def test_broken_listener_does_not_stop_merge(self, detector, clock):
        def boom(issue, created):
            raise RuntimeError("listener down")

        detector.add_issue_listener(boom)
        result = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert len(result.created) == 1


# ============================================================================
# SECTION 3: STATE INVARIANTS
# ============================================================================

class TestInvariants:

    def test_chip_conservation_violation(self, detector, store):
        """
        WHAT: Writing a chip ledger that does not add up creates a
              critical chip_mismatch Issue, with no log line involved.
        """
        store.set("game.chips", {"total": 1000, "by_table": {"42": 600}, "by_player": {"7": 300}})
        issues = _issues_of_type(detector, "chip_mismatch")
        assert len(issues) == 1
        issue = issues[0]
        assert issue.severity == Severity.CRITICAL
        assert issue.detection_method == DetectionMethod.STATE
        assert issue.evidence["expected"] == 1000
        assert issue.evidence["actual"] == 900
        assert issue.evidence["path"] == "game.chips"

    def test_balanced_ledger_raises_nothing(self, detector, store):
        store.set("game.chips", {"total": 1000, "by_table": {"42": 700}, "by_player": {"7": 300}})
        assert _issues_of_type(detector, "chip_mismatch") == []

    def test_invalid_phase_per_table(self, detector, store):
        store.set("game.tables.42.phase", "flop")
        store.set("game.tables.17.phase", "dancing")
        issues = _issues_of_type(detector, "invalid_game_phase")
        assert len(issues) == 1
        assert issues[0].signature["table_id"] == "17"

    def test_engine_writes_are_not_checked(self, detector, store):
        before = detector.stats()["state_checks"]
        store.set("engine.marker", 1)
        store.set("learning.anything", 1)
        assert detector.stats()["state_checks"] == before

    def test_predicate_may_raise_violation(self, detector, store):
        def strict(tables):
            raise InvariantViolation("table 9 has two dealers", evidence={"table_id": "9"})

        detector.register_invariant(Invariant(
            name="one_dealer",
            issue_type="duplicate_dealer",
            severity=Severity.HIGH,
            watch_prefix="game.tables",
            predicate=strict,
        ))
        store.set("game.tables.9.phase", "flop")
        issues = _issues_of_type(detector, "duplicate_dealer")
        assert len(issues) == 1
        assert "two dealers" in issues[0].evidence["message"]

    def test_orphan_check_ignores_unrelated_game_writes(self, detector, store):
        store.set("game.players.7", {"table_id": "99"})
        orphans = _issues_of_type(detector, "orphaned_player")
        assert len(orphans) == 1
        assert orphans[0].occurrence_count == 1

        store.set("game.deck.remaining", 40)
        store.set("game.chips", {"total": 100, "by_table": {}, "by_player": {"7": 100}})
        assert detector.issues.get(orphans[0].id).occurrence_count == 1

        store.set("game.tables.42.phase", "flop")
        assert detector.issues.get(orphans[0].id).occurrence_count == 2


# ============================================================================
# SECTION 4: ANOMALIES
# ============================================================================

class TestAnomalies:

    def _timings(self, detector, clock, values):
        results = []
        for value in values:
            clock.advance(1)
            results.append(detector.process_event(
                _event(clock, "request handled", level="INFO", subsystem="server", duration_ms=value)
            ))
        return results

    def test_spike_after_warm_up_is_flagged(self, tmp_path, clock):
        config = make_config(tmp_path, anomaly={"min_samples": 5})
        d = IssueDetector(StateStore(config.state_store, clock=clock), config, clock=clock)
        self._timings(d, clock, [100, 102, 98, 101, 99])
        result = self._timings(d, clock, [1000])[0]
        assert len(result.issues) == 1
        issue = result.issues[0]
        assert issue.type == "server_duration_ms_anomaly"
        assert issue.detection_method == DetectionMethod.ANOMALY
        assert issue.severity == Severity.CRITICAL
        assert issue.evidence["samples"] == 5

    def test_nothing_flagged_during_warm_up(self, tmp_path, clock):
        config = make_config(tmp_path, anomaly={"min_samples": 5})
        d = IssueDetector(StateStore(config.state_store, clock=clock), config, clock=clock)
        results = self._timings(d, clock, [100, 5000, 1, 9000])
        assert all(r.issues == [] for r in results)

    def test_flat_baseline_gives_zero_z(self, tmp_path, clock):
        config = make_config(tmp_path, anomaly={"min_samples": 5})
        d = IssueDetector(StateStore(config.state_store, clock=clock), config, clock=clock)
        self._timings(d, clock, [100] * 5)
        assert self._timings(d, clock, [500])[0].issues == []

    def test_monitored_state_path_is_sampled(self, tmp_path, clock):
        config = make_config(tmp_path, anomaly={
            "min_samples": 5,
            "monitored_paths": {"players_online": "system.server.players_online"},
        })
        s = StateStore(config.state_store, clock=clock)
        d = IssueDetector(s, config, clock=clock)
        for value in [200, 201, 199, 200, 202]:
            s.set("system.server.players_online", value)
            d.sample_signals()
        # Unchanged version is not sampled twice
        assert d.sample_signals().issues == []
        s.set("system.server.players_online", 5)
        result = d.sample_signals()
        assert [i.type for i in result.issues] == ["players_online_anomaly"]


# ============================================================================
# SECTION 5: CAUSAL ANALYSIS AND TIME BUDGET
# ============================================================================

class TestCausal:

    def test_nearest_change_is_attached(self, detector, store, clock):
        store.set("game.tables.42.pot", 1000)
        clock.advance(2)
        store.set("system.load", 0.4)
        clock.advance(2)
        store.set("game.tables.42.phase", "flop")
        clock.advance(1)
        result = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))

        causal = result.issues[0].evidence["causal"]
        assert causal["nearest"]["path"] == "game.tables.42.phase"
        assert causal["nearest"]["relation"] == "entity"
        assert causal["nearest"]["seconds_before"] == 1.0
        assert [c["path"] for c in causal["chain"]] == ["game.tables.42.pot", "game.tables.42.phase"]

    def test_changes_outside_window_are_ignored(self, detector, store, clock):
        store.set("game.tables.42.pot", 1000)
        clock.advance(600)
        result = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert "causal" not in result.issues[0].evidence

    def test_shared_cause_becomes_cascading_change(self, detector, store, clock):
        """
        WHAT: One change that is the nearest cause of three distinct Issues
              produces a cascading_change Issue.
        WHY:  Fixing the change beats chasing each symptom.
        """
        store.set("game.tables.42.pot", 1000)
        clock.advance(1)
        detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        detector.process_event(_event(clock, "seat_lock_error table=42", table_id=42))
        result = detector.process_event(_event(clock, "chip_mismatch table=42", table_id=42))

        cascades = [i for i in result.issues if i.type == "cascading_change"]
        assert len(cascades) == 1
        cascade = cascades[0]
        assert cascade.severity == Severity.CRITICAL
        assert cascade.evidence["path"] == "game.tables.42.pot"
        assert cascade.evidence["explained_count"] == 3

    def test_budget_exceeded_defers_causal_work(self, tmp_path, clock):
        config = make_config(tmp_path, detection={"budget_ms": 0.0})
        s = StateStore(config.state_store, clock=clock)
        d = IssueDetector(s, config, clock=clock)
        s.set("game.tables.42.pot", 1000)
        clock.advance(1)

        result = d.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert result.deferred == 1
        assert len(result.created) == 1
        issue_id = result.issue_ids[0]
        assert "causal" not in d.issues.get(issue_id).evidence
        assert d.deferred_count == 1

        assert d.run_deferred() == 1
        assert d.deferred_count == 0
        assert d.issues.get(issue_id).evidence["causal"]["nearest"]["path"] == "game.tables.42.pot"


# ============================================================================
# SECTION 6: FAILURE ISOLATION
# ============================================================================

class TestFailureIsolation:

    def test_broken_rule_becomes_strategy_failure_issue(self, detector, clock):
        """
        WHAT: A rule whose matcher raises does not crash processing; it is
              recorded as a low-severity Issue against the engine.
        WHY:  The guardian must keep guarding while part of it is broken.
        """
        bad_pattern = MagicMock()
        bad_pattern.search.side_effect = RuntimeError("regex engine exploded")
        detector.register_rule(SignatureRule(
            name="broken", severity=Severity.CRITICAL, pattern=bad_pattern, priority=0,
        ))

        result = detector.process_event(_event(clock, "pot_mismatch table=42", table_id=42))
        assert result.failures == ["pattern"]
        failures = _issues_of_type(detector, "strategy_failure")
        assert len(failures) == 1
        assert failures[0].source == "engine"
        assert failures[0].severity == Severity.LOW
        assert failures[0].evidence["component"] == "pattern"
        assert detector.stats()["strategy_failures"] == 1

    def test_broken_invariant_does_not_block_others(self, detector, store):
        detector.register_invariant(Invariant(
            name="broken",
            issue_type="never",
            severity=Severity.HIGH,
            watch_prefix="game.tables",
            predicate=lambda tables: 1 / 0,
        ))
        store.set("game.tables.17.phase", "dancing")

        result = detector.check_state("game.tables.17.phase")
        assert "state:broken" in result.failures
        assert [i.type for i in result.issues] == ["invalid_game_phase"]
        failures = _issues_of_type(detector, "strategy_failure")
        assert failures[0].evidence["component"] == "state:broken"
        assert failures[0].occurrence_count == 2
