# ============================================================================
# Pitboss -- Statistical Anomaly Detection (pitboss/core/anomaly.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The "anomaly" detection strategy. Keeps a rolling window of recent
#   values for every monitored numeric signal (request timings, queue
#   depths, bet rates) and flags a new value whose z-score against that
#   window crosses the threshold.
#
#     z = (value - mean) / stddev
#
#   |z| >= 5 -> critical, >= 4 -> high, >= threshold -> medium
#
# WARM-UP:
#   Until a signal has min_samples values, nothing is flagged; there is
#   no baseline to compare against yet. A window with zero spread gives
#   z = 0 (no anomaly) rather than dividing by zero.
#
# WHERE VALUES COME FROM:
#   - Numeric fields of log events (anomaly.log_fields), as signals named
#     "<subsystem>.<field>", e.g. "server.duration_ms"
#   - State paths listed in anomaly.monitored_paths, sampled by the
#     periodic anomaly task whenever the path's version has moved
#
# DEPENDENCIES:
#   - numpy: window mean / standard deviation
# ============================================================================

from __future__ import annotations

import re
import threading
from collections import deque
from typing import Optional, Dict, Any, List

import numpy as np

from .config import AnomalyConfig
from .models import Severity, DetectionMethod, IssueCandidate


def severity_for_z(z: float, threshold: float) -> Optional[Severity]:
    magnitude = abs(z)
    if magnitude < threshold:
        return None
    if magnitude >= 5:
        return Severity.CRITICAL
    if magnitude >= 4:
        return Severity.HIGH
    return Severity.MEDIUM


def signal_issue_type(signal: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", signal.lower()).strip("_") + "_anomaly"


class AnomalyDetector:
    """
    Rolling z-score detector, one window per signal.

    Usage:
        detector = AnomalyDetector(config.anomaly)
        candidate = detector.observe("server.duration_ms", 950.0, source="server")
        if candidate:
            issue_detector.merge(candidate)
    """

    def __init__(self, config: Optional[AnomalyConfig] = None):
        self.config = config or AnomalyConfig()
        self.threshold = self.config.z_threshold
        self._windows: Dict[str, deque] = {}
        self._sampled_versions: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.anomalies_flagged = 0

    def _window(self, signal: str) -> deque:
        window = self._windows.get(signal)
        if window is None:
            window = deque(maxlen=self.config.window)
            self._windows[signal] = window
        return window

    def observe(
        self,
        signal: str,
        value: float,
        source: str = "system",
        detected_at: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[IssueCandidate]:
        """
        Score value against the signal's current window, then add it.
        Returns a candidate when the value is anomalous.
        """
        value = float(value)
        with self._lock:
            window = self._window(signal)
            samples = len(window)
            if samples >= self.config.min_samples:
                values = np.fromiter(window, dtype=float, count=samples)
                mean = float(values.mean())
                std = float(values.std())
            else:
                mean = std = 0.0
            window.append(value)

        if samples < self.config.min_samples:
            return None

        z = 0.0 if std == 0.0 else (value - mean) / std
        severity = severity_for_z(z, self.threshold)
        if severity is None:
            return None

        self.anomalies_flagged += 1
        evidence = {
            "signal": signal,
            "value": value,
            "mean": round(mean, 6),
            "std": round(std, 6),
            "z_score": round(z, 3),
            "threshold": self.threshold,
            "samples": samples,
        }
        if context:
            evidence.update(context)
        kwargs = {"detected_at": detected_at} if detected_at is not None else {}
        return IssueCandidate(
            type=signal_issue_type(signal),
            severity=severity,
            source=source,
            method=DetectionMethod.ANOMALY,
            evidence=evidence,
            signature={"signal": signal, "direction": "high" if z > 0 else "low"},
            **kwargs,
        )

    def sample_state(self, store, detected_at: Optional[float] = None) -> List[IssueCandidate]:
        """Observe every monitored state path whose version has changed."""
        candidates = []
        for signal, path in self.config.monitored_paths.items():
            entry = store.get_entry(path)
            if entry is None:
                continue
            if self._sampled_versions.get(path) == entry.version:
                continue
            self._sampled_versions[path] = entry.version
            value = entry.value
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            candidate = self.observe(
                signal,
                value,
                source=path.split(".")[1] if path.count(".") >= 1 else "system",
                detected_at=detected_at if detected_at is not None else entry.updated_at,
                context={"path": path},
            )
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def stats(self, signal: str) -> Dict[str, Any]:
        with self._lock:
            window = self._windows.get(signal)
            values = list(window) if window else []
        if not values:
            return {"signal": signal, "samples": 0, "mean": None, "std": None, "warmed_up": False}
        arr = np.asarray(values, dtype=float)
        return {
            "signal": signal,
            "samples": len(values),
            "mean": float(arr.mean()),
            "std": float(arr.std()),
            "warmed_up": len(values) >= self.config.min_samples,
        }

    def recompute(self) -> Dict[str, Dict[str, Any]]:
        """Fresh statistics for every signal (used by stats queries)."""
        with self._lock:
            signals = list(self._windows)
        return {s: self.stats(s) for s in signals}

    def adapt_threshold(self, threshold: float) -> None:
        if threshold <= 0:
            raise ValueError("z threshold must be positive")
        self.threshold = threshold

    def reset_signal(self, signal: str) -> None:
        """Forget a signal's baseline, e.g. after a deliberate capacity change."""
        with self._lock:
            self._windows.pop(signal, None)

    @property
    def signals(self) -> List[str]:
        with self._lock:
            return sorted(self._windows)
