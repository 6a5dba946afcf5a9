import asyncio
import contextlib
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.v1.router import api_router
from app.core.config import settings
from app.services.audit_service import AuditLogger
from app.services.gateways import GatewayRegistry
from app.services.notification_service import Notifier
from app.services.sweeper import run_sweeper_forever
from app.utils.background import drain
from contextlib import asynccontextmanager

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    sweeper_task = None
    if settings.SWEEPER_ENABLED:
        sweeper_task = asyncio.create_task(run_sweeper_forever())
    yield
    if sweeper_task:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    await drain()
    await app.state.gateways.aclose()


app = FastAPI(
    title="Clinic Booking API",
    description="Slot booking and payment holds for multi-clinic appointment scheduling",
    version="0.1.0",
    lifespan=lifespan,
)

# Collaborators are built once per process and shared by every request
app.state.gateways = GatewayRegistry()
app.state.notifier = Notifier()
app.state.auditor = AuditLogger()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "clinic-booking-api", "version": "0.1.0"}
