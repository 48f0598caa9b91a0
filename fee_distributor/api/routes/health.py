"""Probes — liveness, and readiness of the database plus the pass driver.

Invariants:
    - GET /health/ is 200 whenever the process can answer
    - GET /health/ready is 503 until the database answers and a driver is wired
"""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from fee_distributor.infrastructure import database

router = APIRouter(prefix="/api/v1/health", tags=["health"])

SERVICE_NAME = "fee-distributor"


@router.get("/", status_code=status.HTTP_200_OK)
async def liveness():
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness(request: Request):
    manager = database.db_manager
    driver = getattr(request.app.state, "driver", None)
    trigger = getattr(request.app.state, "trigger", None)

    checks = {
        "database": "healthy" if manager and await manager.health_check() else "unavailable",
        "driver": driver.state.value if driver else "unavailable",
        "scheduler": "running" if trigger and trigger.running else "stopped",
    }
    ready = checks["database"] == "healthy" and driver is not None
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
