# relay/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI
from relay.admission import __version__
from relay.admission.sweeper import ChargeSweeper
from relay.core.config import settings
from relay.api.endpoints import events, payments
from relay.dependencies import get_ledger
import logging

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = None
    if settings.TICKET_PRICE_SATS > 0 and settings.CHARGE_TTL_SECONDS > 0:
        sweeper = ChargeSweeper(
            ledger=get_ledger(),
            ttl_seconds=settings.CHARGE_TTL_SECONDS,
            interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        )
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description=settings.RELAY_DESCRIPTION,
    version=__version__,
    openapi_url=f"{settings.API_V1_STR}/openapi.json", # Standard location for OpenAPI spec
    lifespan=lifespan
)

app.include_router(events.router, prefix=f"{settings.API_V1_STR}/events", tags=["events"])
# Payment routes keep the relay's historical paths (no API prefix)
app.include_router(payments.router, tags=["payments"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint with relay information. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "name": settings.PROJECT_NAME,
        "description": settings.RELAY_DESCRIPTION,
        "payment_required": settings.TICKET_PRICE_SATS > 0,
        "price_sats": settings.TICKET_PRICE_SATS,
        "version": __version__,
    }
