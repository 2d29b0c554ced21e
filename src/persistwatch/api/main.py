# Control API - FastAPI Backend
#
# Local REST API for the persistence monitor and the containment engine.
# Binds to localhost only; state-changing routes require the control
# token from /api/control-token.
#
# Startup: restore network rules that survived a restart, reload active
# containments, and schedule the monitor if auto-start is enabled.

import logging

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..containment.containment_service import get_containment_service
from ..core import EventSeverity, EventType, log_security_event
from .containment_routes import router as containment_router
from .monitor_routes import get_monitor
from .monitor_routes import router as monitor_router
from .security import TOKEN_HEADER, current_control_token, issue_control_token, revoke_control_token

logger = logging.getLogger(__name__)

app = FastAPI(
    title="PersistWatch API",
    description="Persistence monitoring and safe containment",
    version=__version__,
)

_allowed_origins = [
    "http://localhost:3000", "http://127.0.0.1:3000",
    "http://localhost:8000", "http://127.0.0.1:8000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(monitor_router)
app.include_router(containment_router)


@app.on_event("startup")
async def startup_event():
    issue_control_token()
    log_security_event(
        EventType.SYSTEM_START,
        EventSeverity.INFO,
        "PersistWatch API server starting",
        details={"version": __version__},
    )

    try:
        restored = get_containment_service().restore()
        logger.info("Containment restore: %s", restored)
    except Exception:
        logger.exception("Containment restore failed")

    try:
        get_monitor().initialize_if_auto_start()
    except Exception:
        logger.exception("Monitor auto-start failed")


@app.on_event("shutdown")
async def shutdown_event():
    log_security_event(
        EventType.SYSTEM_STOP,
        EventSeverity.INFO,
        "PersistWatch API server shutting down",
    )
    revoke_control_token()
    get_monitor().shutdown()
    get_containment_service().shutdown()


@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "version": __version__,
        "monitor": get_monitor().state.value,
    }


@app.get("/api/control-token")
async def control_token():
    """Token for mutating routes. Open, since the server only binds to localhost."""
    try:
        return {"header": TOKEN_HEADER, "token": current_control_token()}
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


def start_api_server(host: str = "127.0.0.1", port: int = 8000, log_level: str = "info"):
    """
    Start FastAPI server.

    Args:
        host: Host to bind to (default: localhost only)
        port: Port to listen on
    """
    uvicorn.run(app, host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    start_api_server()
