# ============================================================================
# Pitboss -- FastAPI Server (pitboss/api/server.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Creates and configures the FastAPI application. The lifespan boots
#   the engine (pitboss/core/boot.py), starts its worker threads, and
#   stops them again (with a final state write) on shutdown.
#
# USAGE:
#   python -m pitboss.api.server                    # Start on port 8765
#   python -m pitboss.api.server --port 9000        # Custom port
#   python -m pitboss.api.server --project-dir /srv/pitboss
#
# INTERNET ACCESS: NONE (binds to localhost by default)
# ============================================================================

from __future__ import annotations

import os
import argparse
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ..core.boot import boot_pitboss, PitbossEngine
from ..monitoring.logger import get_app_logger


# -------------------------------------------------------------------
# Application version
# -------------------------------------------------------------------
APP_VERSION = "1.0.0"


# -------------------------------------------------------------------
# Shared state (populated during lifespan)
# -------------------------------------------------------------------
class AppState:
    """Mutable container for the running engine."""
    engine: Optional[PitbossEngine] = None
    project_dir: str = os.getenv("PITBOSS_PROJECT_DIR", ".")
    start_workers: bool = True


state = AppState()


# -------------------------------------------------------------------
# Lifespan: startup and shutdown
# -------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Boot the engine on startup, stop it on shutdown."""
    # -- Startup --
    owns_engine = state.engine is None
    if owns_engine:
        state.engine = boot_pitboss(state.project_dir)
    logger = get_app_logger("pitboss.api")
    logger.info("api_boot", summary=state.engine.boot_result.summary())
    if state.start_workers:
        state.engine.start()
    logger.info("api_ready", version=APP_VERSION)
    yield

    # -- Shutdown --
    logger.info("api_shutdown")
    if state.engine is not None:
        state.engine.stop()
    if owns_engine:
        state.engine = None


# -------------------------------------------------------------------
# Create the FastAPI app
# -------------------------------------------------------------------
app = FastAPI(
    title="Pitboss API",
    description=(
        "Operational guardian for a live game service: detected issues, "
        "fix suggestions learned from past attempts, and state queries."
    ),
    version=APP_VERSION,
    lifespan=lifespan,
)


# -------------------------------------------------------------------
# Register routes
# -------------------------------------------------------------------
from .routes import router  # noqa: E402

app.include_router(router)


# -------------------------------------------------------------------
# Main entry point
# -------------------------------------------------------------------
def main():
    """Run the server with uvicorn."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Pitboss API Server")
    parser.add_argument("--host", default=None, help="Bind address (default from config)")
    parser.add_argument("--port", type=int, default=None, help="Port number (default from config)")
    parser.add_argument("--project-dir", default=state.project_dir, help="Folder holding config/")
    args = parser.parse_args()

    state.project_dir = args.project_dir
    state.engine = boot_pitboss(args.project_dir)
    host = args.host or state.engine.config.api.host
    port = args.port or state.engine.config.api.port

    logger = get_app_logger("pitboss.api")
    logger.info("api_starting", url=f"http://{host}:{port}", docs=f"http://{host}:{port}/docs")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
