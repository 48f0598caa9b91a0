"""Fee Distributor — FastAPI application entry point.

Invariants:
    - Settings and the signing credential are validated before the first pass;
      either failing aborts startup with ConfigurationError
    - Routes registered explicitly (no auto-discovery)
    - Global error handlers map DistributorError → structured JSON responses
    - Shutdown stops the trigger (waiting for an in-flight pass) before the
      network client and the database pool are closed

Design Decisions:
    - Lifespan over @app.on_event: one place for startup and ordered cleanup
    - The periodic trigger runs inside the API process; SCHEDULER_ENABLED=false
      leaves only the HTTP surface (manual trigger, status) running
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from fee_distributor.api.error_handlers import register_error_handlers
from fee_distributor.api.routes import health, passes
from fee_distributor.config import get_settings
from fee_distributor.infrastructure.database import init_db
from fee_distributor.infrastructure.observability import setup_logging
from fee_distributor.infrastructure.signing import SigningCredential
from fee_distributor.infrastructure.transfer_network import HttpTransferNetwork
from fee_distributor.services.reconciliation_driver import build_driver
from fee_distributor.services.scheduler import PeriodicTrigger

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    credential = SigningCredential.from_encoded(settings.signing_credential)

    db = init_db(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    network = HttpTransferNetwork(
        settings.network_endpoint,
        timeout_seconds=settings.network_timeout_seconds,
    )
    driver = build_driver(settings, db, network, credential)
    trigger = PeriodicTrigger(driver, settings.pass_period_seconds)
    app.state.driver = driver
    app.state.trigger = trigger

    if settings.scheduler_enabled:
        trigger.start()
    logger.info(
        f"Fee distributor started (worker {settings.worker_id}, "
        f"account {credential.account_id})",
        extra={"holder_id": settings.worker_id},
    )
    yield
    logger.info("Fee distributor shutting down")
    await trigger.stop()
    await network.aclose()
    await db.dispose()


app = FastAPI(
    title="Fee Distributor", version="1.0.0", lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(passes.router)

register_error_handlers(app)


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run("fee_distributor.main:app", host="0.0.0.0", port=8000)  # nosec B104
