# ============================================================================
# Pitboss -- Structured Logger (pitboss/monitoring/logger.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Sets up the logging system for the whole engine. Every important event
#   (issue detected, attempt recorded, escalation changed, state file
#   corrupt) is written as one JSON object per line.
#
# LOG FILE TYPES:
#   - app_YYYY-MM-DD.log:   General engine events (ingestion, detection)
#   - error_YYYY-MM-DD.log: Failures inside the engine itself
#   - audit_YYYY-MM-DD.log: Decisions and remediation attempts (who tried
#                           what, when, and how it ended)
#
# LOG DIRECTORY:
#   initialize_logging(log_dir) wins. Otherwise PITBOSS_LOG_DIR, otherwise
#   "logs" in the working directory.
#
# NOTE ON SELF-NOISE:
#   The ingestor's default noise filter drops lines carrying the
#   "[pitboss]" marker, so if these files are ever tailed as a log source
#   the engine will not detect issues in its own output.
#
# HOW TO USE (from other code):
#   from pitboss.monitoring.logger import get_app_logger
#   logger = get_app_logger("issue_detector")
#   logger.info("issue_detected", issue_id="ab12", severity="high")
#
# DEPENDENCIES:
#   - structlog: structured logging library that outputs JSON
#   - Python's built-in logging module (structlog builds on top of it)
# ============================================================================

import os
import sys
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Any, Set, Tuple
import structlog
from datetime import datetime


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================

class LoggerSetup:
    """Initialize and configure structlog for Pitboss"""

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._configured = False
        self._attached: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def setup(self) -> None:
        """Configure structlog with timestamped log files"""
        if self._configured:
            return

        # Standard logging for third-party libraries (uvicorn, fastapi)
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stdout,
            level=logging.WARNING,
        )

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._configured = True

    def get_file_logger(self, name: str, log_type: str = "app") -> structlog.BoundLogger:
        """
        Get a logger that writes to a specific log file.
        log_type: "app", "error", "audit"

        Each (name, log_type) pair gets exactly one file handler, no matter
        how many components ask for the same logger.
        """
        self.setup()
        logger = structlog.get_logger(name)

        key = (name, log_type)
        with self._lock:
            if key not in self._attached:
                log_file = self.log_dir / f"{log_type}_{self._get_date_str()}.log"
                handler = logging.FileHandler(log_file, encoding="utf-8")
                handler.setFormatter(logging.Formatter("%(message)s"))

                py_logger = logging.getLogger(name)
                py_logger.addHandler(handler)
                py_logger.setLevel(logging.DEBUG)
                # Keep engine chatter off the console
                py_logger.propagate = False
                self._attached.add(key)

        return logger

    @staticmethod
    def _get_date_str() -> str:
        """Get current date as YYYY-MM-DD string"""
        return datetime.now().strftime("%Y-%m-%d")


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_logger_setup: Optional[LoggerSetup] = None


def initialize_logging(log_dir: Optional[str] = None) -> LoggerSetup:
    """Initialize logging (call once at startup)"""
    global _logger_setup
    if _logger_setup is None:
        resolved = log_dir or os.getenv("PITBOSS_LOG_DIR") or "logs"
        _logger_setup = LoggerSetup(resolved)
        _logger_setup.setup()
    return _logger_setup


def _file_logger(name: str, log_type: str) -> structlog.BoundLogger:
    # Components may ask for a logger before boot; fall back to the env dir
    return initialize_logging().get_file_logger(name, log_type)


def get_app_logger(name: str = "app") -> structlog.BoundLogger:
    """Engine events: app_YYYY-MM-DD.log"""
    return _file_logger(name, "app")


def get_error_logger(name: str = "error") -> structlog.BoundLogger:
    """Failures inside the engine: error_YYYY-MM-DD.log"""
    return _file_logger(name, "error")


def get_audit_logger(name: str = "audit") -> structlog.BoundLogger:
    """Attempts and decisions: audit_YYYY-MM-DD.log"""
    return _file_logger(name, "audit")


# ============================================================================
# LOG ENTRY BUILDERS (for consistent structured data)
# ============================================================================

class IssueLogEntry:
    """Builder for structured issue log entries"""

    @staticmethod
    def build(
        issue_id: str,
        issue_type: str,
        severity: str,
        source: str,
        method: str,
        occurrence_count: int = 1,
        status: str = "detected",
    ) -> Dict[str, Any]:
        """Build a structured issue log entry"""
        return {
            "issue_id": issue_id,
            "issue_type": issue_type,
            "severity": severity,
            "source": source,
            "method": method,
            "occurrence_count": occurrence_count,
            "status": status,
        }


class AttemptLogEntry:
    """Builder for structured remediation attempt entries"""

    @staticmethod
    def build(
        attempt_id: str,
        issue_id: str,
        method: str,
        result: str,
        duration_ms: float,
        issue_type: str = "",
    ) -> Dict[str, Any]:
        """Build a structured attempt log entry"""
        return {
            "attempt_id": attempt_id,
            "issue_id": issue_id,
            "issue_type": issue_type,
            "method": method,
            "result": result,
            "duration_ms": round(duration_ms, 2),
            "timestamp": datetime.now().isoformat(),
        }


class DecisionLogEntry:
    """Builder for structured decision entries (escalation, transitions)"""

    @staticmethod
    def build(
        action: str,
        reason: str,
        issue_ids: Optional[list] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Build a structured decision log entry"""
        return {
            "action": action,
            "reason": reason,
            "issue_ids": list(issue_ids or []),
            "details": details or {},
            "timestamp": datetime.now().isoformat(),
        }
