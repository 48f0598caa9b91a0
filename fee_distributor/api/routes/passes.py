"""Pass Routes — operational status and manual trigger for reconciliation passes.

Invariants:
    - GET /passes/status never starts a pass; counts come from PassStats and
      the database as they are at request time
    - POST /passes/trigger goes through ReconciliationDriver.run_pass(), so the
      single-flight rules apply exactly as for the periodic trigger
    - 503 when the driver is not wired (startup failed or still starting)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fee_distributor.infrastructure.database import get_db
from fee_distributor.models.batch_marker import BatchMarker
from fee_distributor.models.carried_balance import CarriedBalance
from fee_distributor.models.cursor import Cursor
from fee_distributor.schemas.passes import PassReportResponse, PassStatusResponse
from fee_distributor.services.batch_outbox import UNRESOLVED_STATUSES
from fee_distributor.services.reconciliation_driver import ReconciliationDriver

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/passes", tags=["passes"])


def get_driver(request: Request) -> ReconciliationDriver:
    driver = getattr(request.app.state, "driver", None)
    if driver is None:
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": {
                "code": "DRIVER_UNAVAILABLE",
                "message": "Reconciliation driver is not running",
            }},
        )
    return driver


@router.get("/status", response_model=PassStatusResponse)
async def pass_status(
    driver: ReconciliationDriver = Depends(get_driver),
    db: AsyncSession = Depends(get_db),
):
    latest = await db.scalar(
        select(Cursor.value)
        .order_by(Cursor.recorded_at.desc(), Cursor.seq.desc())
        .limit(1),
    )
    unresolved = await db.scalar(
        select(func.count())
        .select_from(BatchMarker)
        .where(BatchMarker.status.in_(UNRESOLVED_STATUSES)),
    )
    carried = await db.scalar(select(func.count()).select_from(CarriedBalance))
    return {
        "state": driver.state.value,
        "running": driver.is_running,
        "latest_cursor": latest,
        "unresolved_batches": unresolved or 0,
        "carried_recipients": carried or 0,
        "stats": driver.stats.to_dict(),
    }


@router.post("/trigger", response_model=PassReportResponse)
async def trigger_pass(driver: ReconciliationDriver = Depends(get_driver)):
    """Run one pass now and return its report (SKIPPED if one is running)."""
    report = await driver.run_pass()
    logger.info(
        "Manual pass trigger",
        extra={"pass_id": report.pass_id, "outcome": report.outcome.value},
    )
    return report.to_dict()
