# ============================================================================
# Pitboss -- Configuration (pitboss/core/config.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Every tunable number in the engine lives here: how often state is
#   persisted, which log lines count as noise, the anomaly z-score
#   threshold, how long an attempt may stay in flight, when to escalate.
#
# HOW IT WORKS:
#   1. Python dataclasses define every setting with a default
#   2. config/default_config.yaml can override those defaults
#   3. Environment variables can override YAML (machine-specific values)
#
#   Priority: env vars > YAML file > hardcoded defaults
#
# USAGE:
#   from pitboss.core.config import load_config
#   config = load_config(".")                      # load from project dir
#   config = load_config(".", "staging.yaml")      # load specific file
#   print(config.detection.budget_ms)
# ============================================================================

from __future__ import annotations

import os
import sys
import yaml
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Dict, Any


SEVERITY_NAMES = ("low", "medium", "high", "critical")


def _env_float(name: str, raw: str, default: float) -> float:
    """Parse a numeric env override; a bad value keeps the default with a [WARN]."""
    try:
        return float(raw)
    except ValueError:
        print(
            "  [WARN] config: env var " + name + "='" + raw
            + "' is not a number -- IGNORED (using " + str(default) + ").",
            file=sys.stderr,
        )
        return default


# -------------------------------------------------------------------
# Sub-configs: each one maps to a section in the YAML file
# -------------------------------------------------------------------

@dataclass
class StateStoreConfig:
    """
    Where and how often the state store is persisted.

    PITBOSS_STATE_FILE and PITBOSS_PERSIST_INTERVAL override the YAML so
    that a test box and a production box can share one config file.
    """
    persist_path: str = "logs/pitboss-state.json"
    persist_interval_seconds: float = 5.0
    history_limit: int = 5000
    namespaces: List[str] = field(default_factory=lambda: [
        "game", "system", "issues", "learning", "ingest", "engine",
    ])

    def __post_init__(self) -> None:
        env_path = os.getenv("PITBOSS_STATE_FILE")
        if env_path:
            self.persist_path = env_path
        env_interval = os.getenv("PITBOSS_PERSIST_INTERVAL")
        if env_interval:
            self.persist_interval_seconds = _env_float(
                "PITBOSS_PERSIST_INTERVAL", env_interval, self.persist_interval_seconds,
            )


@dataclass
class SourceConfig:
    """One tailed log file."""
    name: str = "default"
    path: str = ""


@dataclass
class IngestConfig:
    """Log ingestion: noise filter, retries, polling."""
    noise_patterns: List[str] = field(default_factory=lambda: [
        r"\[pitboss\]",
        r'"logger":\s*"pitboss\.',
        r"^\s*(\[[^\]]*\]\s*)*\[?(DEBUG|TRACE)\]?\b",
        r"\bheartbeat\b",
    ])
    max_reparse_attempts: int = 2
    max_line_length: int = 16384
    poll_interval_seconds: float = 1.0
    read_chunk_bytes: int = 1048576
    # With no saved offset, skip whatever is already in the file
    start_at_end: bool = False
    recent_events: int = 2000
    sources: List[SourceConfig] = field(default_factory=list)


@dataclass
class DetectionConfig:
    """Merge/dedup and the per-event time budget."""
    budget_ms: float = 50.0
    lock_stripes: int = 64


@dataclass
class AnomalyConfig:
    """Rolling z-score anomaly detection."""
    z_threshold: float = 3.0
    min_samples: int = 20
    window: int = 1000
    recompute_interval_seconds: float = 10.0
    log_fields: List[str] = field(default_factory=lambda: [
        "duration_ms", "latency_ms", "response_time_ms", "queue_depth",
    ])
    # signal name -> state path whose numeric value is sampled periodically
    monitored_paths: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        env_z = os.getenv("PITBOSS_Z_THRESHOLD")
        if env_z:
            self.z_threshold = _env_float("PITBOSS_Z_THRESHOLD", env_z, self.z_threshold)


@dataclass
class CausalConfig:
    """Backward walk through change history."""
    window_seconds: float = 60.0
    max_chain: int = 10
    cascade_threshold: int = 3


@dataclass
class LearningConfig:
    """Fix knowledge base scoring."""
    wilson_z: float = 1.96
    recency_half_life_hours: float = 72.0
    misdiagnosis_cost_threshold_ms: float = 300000.0
    category_discount: float = 0.5


@dataclass
class DecisionConfig:
    """Issue lifecycle and escalation policy."""
    activation_severity: str = "medium"
    suppress_after: int = 50
    attempt_timeout_seconds: float = 900.0
    max_active: int = 10
    critical_threshold: int = 1
    history_limit: int = 1000


@dataclass
class LoggingConfig:
    """Where the structured logs go."""
    log_dir: str = "logs"

    def __post_init__(self) -> None:
        env_dir = os.getenv("PITBOSS_LOG_DIR")
        if env_dir:
            self.log_dir = env_dir


@dataclass
class APIConfig:
    """HTTP surface bind address."""
    host: str = "127.0.0.1"
    port: int = 8765


# -------------------------------------------------------------------
# Master Config -- the one object that holds everything
# -------------------------------------------------------------------

@dataclass
class Config:
    """
    Master configuration object for Pitboss.

    Example:
        config = load_config(".")
        print(config.state_store.persist_path)    # "logs/pitboss-state.json"
        print(config.anomaly.z_threshold)         # 3.0
    """
    state_store: StateStoreConfig = field(default_factory=StateStoreConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    causal: CausalConfig = field(default_factory=CausalConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: APIConfig = field(default_factory=APIConfig)


# -------------------------------------------------------------------
# Helper: YAML dict -> dataclass (with safety net)
# -------------------------------------------------------------------

def _dict_to_dataclass(cls, data: dict):
    """
    Build a dataclass from a dictionary, ignoring unknown keys.

    Unknown keys print a [WARN] to stderr with the closest field name, so
    a YAML typo like "budget" for "budget_ms" does not silently fall back
    to the default.
    """
    known_fields = {f.name for f in dataclasses.fields(cls)}

    filtered = {}
    for k, v in (data or {}).items():
        if k in known_fields:
            filtered[k] = v
        else:
            suggestion = ""
            for field_name in known_fields:
                if k in field_name or field_name in k:
                    suggestion = " Did you mean '" + field_name + "'?"
                    break
            print(
                "  [WARN] config/" + cls.__name__ + ": YAML key '"
                + k + "' is not a recognized setting"
                + " -- IGNORED (using default)." + suggestion,
                file=sys.stderr,
            )

    return cls(**filtered)


def _build_ingest(data: dict) -> IngestConfig:
    data = dict(data or {})
    raw_sources = data.pop("sources", None) or []
    ingest = _dict_to_dataclass(IngestConfig, data)
    ingest.sources = [_dict_to_dataclass(SourceConfig, s) for s in raw_sources]
    return ingest


# -------------------------------------------------------------------
# Main entry point: load_config()
# -------------------------------------------------------------------

def load_config(
    project_dir: str = ".",
    config_filename: str = "default_config.yaml",
) -> Config:
    """
    Load configuration from YAML file, with defaults and env var overrides.

    Parameters
    ----------
    project_dir : str
        Path to the project root folder.

    config_filename : str
        Name of the YAML config file inside the config/ subfolder.

    Returns
    -------
    Config
        Fully resolved configuration object.
    """
    config_path = Path(project_dir) / "config" / config_filename

    yaml_data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                yaml_data = raw

    return Config(
        state_store=_dict_to_dataclass(StateStoreConfig, yaml_data.get("state_store", {})),
        ingest=_build_ingest(yaml_data.get("ingest", {})),
        detection=_dict_to_dataclass(DetectionConfig, yaml_data.get("detection", {})),
        anomaly=_dict_to_dataclass(AnomalyConfig, yaml_data.get("anomaly", {})),
        causal=_dict_to_dataclass(CausalConfig, yaml_data.get("causal", {})),
        learning=_dict_to_dataclass(LearningConfig, yaml_data.get("learning", {})),
        decision=_dict_to_dataclass(DecisionConfig, yaml_data.get("decision", {})),
        logging=_dict_to_dataclass(LoggingConfig, yaml_data.get("logging", {})),
        api=_dict_to_dataclass(APIConfig, yaml_data.get("api", {})),
    )


def validate_config(config: Config) -> List[str]:
    """
    Check a Config object for problems. Returns a list of error messages.
    Empty list = everything is valid.
    """
    errors: List[str] = []

    if config.state_store.persist_interval_seconds <= 0:
        errors.append(
            "state_store.persist_interval_seconds must be positive, got "
            + str(config.state_store.persist_interval_seconds)
        )

    if not config.state_store.persist_path:
        errors.append(
            "state_store.persist_path is empty. "
            "Set PITBOSS_STATE_FILE env var or configure in YAML."
        )

    if config.state_store.history_limit < 1:
        errors.append("state_store.history_limit must be at least 1")

    if config.ingest.max_reparse_attempts < 0:
        errors.append("ingest.max_reparse_attempts cannot be negative")

    if config.anomaly.z_threshold <= 0:
        errors.append(
            "anomaly.z_threshold must be positive, got "
            + str(config.anomaly.z_threshold)
        )

    if config.anomaly.min_samples < 2:
        errors.append("anomaly.min_samples must be at least 2")

    if config.anomaly.window < config.anomaly.min_samples:
        errors.append("anomaly.window must be >= anomaly.min_samples")

    if config.decision.activation_severity not in SEVERITY_NAMES:
        errors.append(
            "Invalid decision.activation_severity: '"
            + config.decision.activation_severity
            + "'. Must be one of " + ", ".join(SEVERITY_NAMES) + "."
        )

    if config.decision.attempt_timeout_seconds <= 0:
        errors.append("decision.attempt_timeout_seconds must be positive")

    if not 0.0 <= config.learning.category_discount <= 1.0:
        errors.append("learning.category_discount must be between 0 and 1")

    for source in config.ingest.sources:
        if not source.path:
            errors.append("ingest source '" + source.name + "' has no path")

    return errors


def ensure_directories(config: Config) -> None:
    """Create the state file and log directories if they don't exist yet."""
    state_dir = os.path.dirname(config.state_store.persist_path)
    if state_dir:
        os.makedirs(state_dir, exist_ok=True)

    if config.logging.log_dir:
        os.makedirs(config.logging.log_dir, exist_ok=True)
