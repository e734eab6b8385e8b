# ============================================================================
# conftest.py -- Shared Test Fixtures for the Pitboss Test Suite
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Pytest automatically loads this file before any test runs.
#   It provides:
#     1. sys.path setup so "from pitboss.core.X import Y" works from any test
#     2. A throwaway log directory, set BEFORE any pitboss import, so test
#        runs never write into the real logs/ folder
#     3. FakeClock, a controllable time source every component accepts
#     4. make_config(), a real Config pointed at tmp_path
#     5. Fixtures for a store, a full engine, and sample log lines
#
# INTERNET ACCESS: NONE
# ============================================================================

import os
import sys
import tempfile
from pathlib import Path

import pytest

# -- sys.path setup --
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# -- Logs go to a temp folder for the whole session --
os.environ.setdefault("PITBOSS_LOG_DIR", tempfile.mkdtemp(prefix="pitboss-test-logs-"))
for _var in ("PITBOSS_STATE_FILE", "PITBOSS_PERSIST_INTERVAL", "PITBOSS_Z_THRESHOLD"):
    os.environ.pop(_var, None)

from pitboss.core.config import Config  # noqa: E402


# ============================================================================
# SECTION 0: FAKE CLOCK AND CONFIG HELPERS
# ============================================================================
#
# WHY A FAKE CLOCK:
#   Causal windows, attempt timeouts and recency decay all depend on time.
#   Sleeping in tests is slow and flaky; a clock we can advance by hand
#   makes every time-dependent rule deterministic.
# ============================================================================

class FakeClock:
    """Callable time source. clock() returns now; advance() moves it."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_config(tmp_path, **sections) -> Config:
    """
    A real Config with the state file inside tmp_path.

    Keyword arguments override individual settings per section:
        make_config(tmp_path, anomaly={"min_samples": 5})
    """
    config = Config()
    config.state_store.persist_path = str(Path(tmp_path) / "state" / "pitboss-state.json")
    config.logging.log_dir = os.environ["PITBOSS_LOG_DIR"]
    # Generous budget: causal analysis always runs inline unless a test
    # asks for deferral explicitly
    config.detection.budget_ms = 10_000.0
    for section, values in sections.items():
        target = getattr(config, section)
        for key, value in values.items():
            setattr(target, key, value)
    return config


# ============================================================================
# SECTION 1: FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def store(config, clock):
    from pitboss.core.state_store import StateStore
    return StateStore(config.state_store, clock=clock)


@pytest.fixture
def engine(config, clock):
    """A fully wired engine (workers NOT started)."""
    from pitboss.core.boot import boot_pitboss
    return boot_pitboss(config=config, clock=clock)


SAMPLE_LINES = [
    "[2024-03-01 12:00:00] [server] [INFO] Player joined table=42 player=7",
    "[2024-03-01 12:00:01] [game] [ERROR] pot_mismatch table=42 expected=1000 actual=950",
    "[2024-03-01 12:00:02] [database] [ERROR] mysql query failed: deadlock detected",
    "DEBUG dealing cards table=42",
    "[pitboss] detector heartbeat",
    "",
]
