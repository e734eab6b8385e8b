# ============================================================================
# Pitboss -- Causal Backtracking (pitboss/core/causal.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The "causal" detection strategy. When an Issue is detected, walk
#   backward through the state store's recent ChangeRecords and find the
#   nearest earlier mutation that plausibly explains it:
#
#     relation     score   example for a pot_mismatch at table 42
#     ---------    -----   ----------------------------------------
#     direct         4     the Issue's own path was written
#     entity         3     game.tables.42.pot       (42 is in the evidence)
#     component      2     game.tables.17.phase     (same first two segments)
#     keyword        1     game.pots.side           ("pot" is in the type)
#
#   The nearest related change goes into evidence["causal"]["nearest"];
#   every related change in the window (oldest first) is the chain.
#
# CASCADES:
#   When one mutation turns out to be the nearest cause of several
#   distinct Issues, that mutation is itself a problem. At
#   cascade_threshold distinct Issues the analyzer emits a
#   "cascading_change" candidate.
# ============================================================================

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Optional, Dict, Any, List, Set, Tuple

from .config import CausalConfig
from .models import Severity, DetectionMethod, IssueCandidate, ChangeRecord
from .state_store import StateStore


# Engine bookkeeping is never a cause of a game problem
IGNORED_ROOTS = ("issues", "ingest", "learning", "engine")

# Type words too generic to tie a change to an Issue
GENERIC_WORDS = {
    "error", "errors", "mismatch", "failure", "failed", "anomaly",
    "invalid", "degraded", "issue", "change", "ms", "id",
}

ENTITY_FIELDS = ("table_id", "player_id", "hand_id", "session_id", "game_id", "user_id", "subsystem")

RELATIONS = {4: "direct", 3: "entity", 2: "component", 1: "keyword"}

MAX_TRACKED_CHANGES = 1000


class CausalAnalyzer:
    """
    Finds the change that most plausibly preceded an Issue.

    Usage:
        analyzer = CausalAnalyzer(store, config.causal)
        causal = analyzer.trace(candidate)      # dict or None
        cascade = analyzer.link(issue, causal)  # candidate or None
    """

    def __init__(self, store: StateStore, config: Optional[CausalConfig] = None):
        self.store = store
        self.config = config or CausalConfig()
        self._explained: "OrderedDict[Tuple[str, int], Set[str]]" = OrderedDict()
        self._severities: Dict[Tuple[str, int], Severity] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Relatedness
    # ------------------------------------------------------------------

    @staticmethod
    def _clues(candidate: IssueCandidate) -> Dict[str, Any]:
        evidence = candidate.evidence or {}
        fields = evidence.get("fields") if isinstance(evidence.get("fields"), dict) else {}
        paths = set()
        for key in ("path", "paths"):
            value = evidence.get(key)
            if isinstance(value, str):
                paths.add(value)
            elif isinstance(value, list):
                paths.update(p for p in value if isinstance(p, str))

        entities = set()
        for source in (candidate.signature, evidence, fields):
            for name in ENTITY_FIELDS:
                value = source.get(name) if isinstance(source, dict) else None
                if value is not None and value != "":
                    entities.add(str(value))

        keywords = {
            w for w in candidate.type.lower().split("_")
            if len(w) > 2 and w not in GENERIC_WORDS
        }
        components = {".".join(p.split(".")[:2]) for p in paths}
        return {"paths": paths, "entities": entities, "keywords": keywords, "components": components}

    @staticmethod
    def _score(record: ChangeRecord, clues: Dict[str, Any]) -> int:
        if record.path in clues["paths"]:
            return 4
        segments = record.path.split(".")
        if clues["entities"].intersection(segments):
            return 3
        if ".".join(segments[:2]) in clues["components"]:
            return 2
        if any(k in s for k in clues["keywords"] for s in segments):
            return 1
        return 0

    # ------------------------------------------------------------------
    # Trace
    # ------------------------------------------------------------------

    def trace(self, candidate: IssueCandidate) -> Optional[Dict[str, Any]]:
        """Causal evidence for the candidate, or None if nothing relates."""
        at = candidate.detected_at
        records = self.store.history(since=at - self.config.window_seconds, until=at)
        clues = self._clues(candidate)

        related: List[Tuple[ChangeRecord, int]] = []
        for record in records:
            if record.path.split(".")[0] in IGNORED_ROOTS:
                continue
            score = self._score(record, clues)
            if score:
                related.append((record, score))

        if not related:
            return None

        # History is oldest first, so the last related record is the nearest
        nearest, nearest_score = related[-1]
        chain = related[-self.config.max_chain:]
        return {
            "nearest": self._describe(nearest, nearest_score, at),
            "chain": [self._describe(r, s, at) for r, s in chain],
            "window_seconds": self.config.window_seconds,
        }

    @staticmethod
    def _describe(record: ChangeRecord, score: int, at: float) -> Dict[str, Any]:
        return {
            "path": record.path,
            "version": record.version,
            "timestamp": record.timestamp,
            "seconds_before": round(at - record.timestamp, 3),
            "relation": RELATIONS[score],
            "old_digest": record.old_digest,
            "new_digest": record.new_digest,
            "caused_by_issue_id": record.caused_by_issue_id,
        }

    # ------------------------------------------------------------------
    # Cascades
    # ------------------------------------------------------------------

    def link(self, issue_id: str, severity: Severity, causal: Optional[Dict[str, Any]]) -> Optional[IssueCandidate]:
        """
        Remember that causal["nearest"] explains issue_id. Returns a
        cascading_change candidate once enough distinct Issues share it.
        """
        if not causal or not causal.get("nearest"):
            return None
        nearest = causal["nearest"]
        if nearest.get("relation") == "keyword":
            # Too weak to blame a change for several Issues
            return None
        key = (nearest["path"], nearest["version"])

        with self._lock:
            explained = self._explained.get(key)
            if explained is None:
                explained = set()
                self._explained[key] = explained
                while len(self._explained) > MAX_TRACKED_CHANGES:
                    old_key, _ = self._explained.popitem(last=False)
                    self._severities.pop(old_key, None)
            explained.add(issue_id)
            worst = max(self._severities.get(key, Severity.LOW), Severity(severity))
            self._severities[key] = worst
            if len(explained) < self.config.cascade_threshold:
                return None
            issue_ids = sorted(explained)

        return IssueCandidate(
            type="cascading_change",
            severity=worst,
            source=nearest["path"].split(".")[0],
            method=DetectionMethod.CAUSAL,
            evidence={
                "path": nearest["path"],
                "version": nearest["version"],
                "issue_ids": issue_ids,
                "explained_count": len(issue_ids),
                "change": nearest,
            },
            signature={"path": nearest["path"], "version": nearest["version"]},
            detected_at=nearest["timestamp"] + nearest["seconds_before"],
        )
