# ============================================================================
# Pitboss -- State Invariants (pitboss/core/invariants.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The "state verification" detection strategy. An Invariant is a
#   predicate over part of the state that must always hold, such as
#   "every chip is on a table or with a player, and the total matches."
#
#   After any state write under an invariant's watched prefix, the
#   predicate runs against the current subtree. A violation is evidence
#   of an Issue on its own, whether or not anything was logged.
#
# PREDICATE CONTRACT:
#   predicate(subtree) returns:
#     None            -> invariant holds
#     dict            -> one violation (the evidence)
#     list of dicts   -> several violations (e.g. one per table)
#   or raises InvariantViolation(evidence=...).
#
#   An evidence dict may carry a "signature" dict (what makes this
#   violation distinct, e.g. {"table_id": "42"}) and a "source".
# ============================================================================

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Callable, Tuple, Union

from .exceptions import InvariantViolation
from .models import Severity, DetectionMethod, IssueCandidate


Evidence = Union[None, Dict[str, Any], List[Dict[str, Any]]]

VALID_PHASES = ("waiting", "preflop", "flop", "turn", "river", "showdown")


@dataclass
class Invariant:
    name: str
    issue_type: str
    severity: Severity
    watch_prefix: str
    predicate: Callable[[Any], Evidence]
    source: str = "game"
    description: str = ""
    # Narrower paths that trigger a check; empty means watch_prefix itself
    triggers: Tuple[str, ...] = ()

    def watches(self, path: str) -> bool:
        # A write to a parent (e.g. the whole "game" dict) also counts
        return any(
            path == prefix
            or path.startswith(prefix + ".")
            or prefix.startswith(path + ".")
            for prefix in (self.triggers or (self.watch_prefix,))
        )

    def evaluate(self, subtree: Any, detected_at: float, path: str) -> List[IssueCandidate]:
        try:
            result = self.predicate(subtree)
        except InvariantViolation as violation:
            result = dict(violation.evidence)
            result.setdefault("message", str(violation))

        if not result:
            return []
        violations = result if isinstance(result, list) else [result]

        candidates = []
        for evidence in violations:
            evidence = dict(evidence)
            signature = dict(evidence.pop("signature", {}) or {})
            signature.setdefault("invariant", self.name)
            source = evidence.pop("source", self.source)
            evidence.update({
                "invariant": self.name,
                "description": self.description,
                "path": path,
            })
            candidates.append(IssueCandidate(
                type=self.issue_type,
                severity=self.severity,
                source=source,
                method=DetectionMethod.STATE,
                evidence=evidence,
                signature=signature,
                detected_at=detected_at,
            ))
        return candidates


class InvariantRegistry:
    """Ordered set of invariants, keyed by name."""

    def __init__(self):
        self._invariants: "OrderedDict[str, Invariant]" = OrderedDict()

    def register(self, invariant: Invariant) -> None:
        self._invariants[invariant.name] = invariant

    def unregister(self, name: str) -> None:
        self._invariants.pop(name, None)

    def watching(self, path: str) -> List[Invariant]:
        return [inv for inv in self._invariants.values() if inv.watches(path)]

    def __iter__(self):
        return iter(list(self._invariants.values()))

    def __len__(self) -> int:
        return len(self._invariants)


# ============================================================================
# DEFAULT INVARIANTS FOR THE POKER SERVICE
# ============================================================================

def _numeric_sum(mapping: Any) -> float:
    if not isinstance(mapping, dict):
        return 0
    total = 0
    for value in mapping.values():
        if isinstance(value, dict):
            value = value.get("chips", 0)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total += value
    return total


def chip_conservation(chips: Any) -> Evidence:
    """Chips on tables plus chips held by players must equal the total."""
    if not isinstance(chips, dict) or "total" not in chips:
        return None
    total = chips["total"]
    on_tables = _numeric_sum(chips.get("by_table"))
    with_players = _numeric_sum(chips.get("by_player"))
    if on_tables + with_players == total:
        return None
    return {
        "expected": total,
        "actual": on_tables + with_players,
        "difference": (on_tables + with_players) - total,
        "by_table_sum": on_tables,
        "by_player_sum": with_players,
    }


def valid_game_phase(tables: Any) -> Evidence:
    if not isinstance(tables, dict):
        return None
    violations = []
    for table_id, table in tables.items():
        if not isinstance(table, dict) or "phase" not in table:
            continue
        if table["phase"] not in VALID_PHASES:
            violations.append({
                "table_id": table_id,
                "phase": table["phase"],
                "allowed": list(VALID_PHASES),
                "signature": {"table_id": str(table_id)},
            })
    return violations


def subsystem_health(system: Any) -> Evidence:
    if not isinstance(system, dict):
        return None
    violations = []
    for name, info in system.items():
        if not isinstance(info, dict):
            continue
        health = info.get("health")
        if not isinstance(health, (int, float)) or isinstance(health, bool):
            continue
        if health < 50:
            violations.append({
                "subsystem": name,
                "health": health,
                "threshold": 50,
                "source": name,
                "signature": {"subsystem": name},
            })
    return violations


def no_orphaned_players(game: Any) -> Evidence:
    if not isinstance(game, dict):
        return None
    players = game.get("players")
    if not isinstance(players, dict):
        return None
    tables = game.get("tables") if isinstance(game.get("tables"), dict) else {}
    violations = []
    for player_id, player in players.items():
        if not isinstance(player, dict):
            continue
        table_id = player.get("table_id")
        if table_id is not None and str(table_id) not in {str(t) for t in tables}:
            violations.append({
                "player_id": player_id,
                "table_id": table_id,
                "signature": {"player_id": str(player_id)},
            })
    return violations


def default_invariants() -> List[Invariant]:
    return [
        Invariant(
            name="chip_conservation",
            issue_type="chip_mismatch",
            severity=Severity.CRITICAL,
            watch_prefix="game.chips",
            predicate=chip_conservation,
            description="Sum of per-table and per-player chips equals the tracked total",
        ),
        Invariant(
            name="valid_game_phase",
            issue_type="invalid_game_phase",
            severity=Severity.HIGH,
            watch_prefix="game.tables",
            predicate=valid_game_phase,
            description="Every table is in a known betting phase",
        ),
        Invariant(
            name="subsystem_health",
            issue_type="health_degraded",
            severity=Severity.HIGH,
            watch_prefix="system",
            predicate=subsystem_health,
            source="system",
            description="Every reported subsystem health score is at least 50",
        ),
        Invariant(
            name="no_orphaned_players",
            issue_type="orphaned_player",
            severity=Severity.MEDIUM,
            watch_prefix="game",
            triggers=("game.players", "game.tables"),
            predicate=no_orphaned_players,
            description="A seated player's table exists",
        ),
    ]
