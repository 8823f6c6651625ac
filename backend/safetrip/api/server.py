import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from safetrip.api import monitoring, sos, trips
from safetrip.config import get_settings
from safetrip.services.engine import get_engine

# Configure logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - start and stop the monitoring scheduler."""
    engine = get_engine()
    if settings.MONITORING_ENABLED:
        log.info("Starting monitoring scheduler...")
        engine.scheduler.start()
    yield
    log.info("Stopping monitoring scheduler...")
    await engine.scheduler.stop()


description = """
SafeTrip monitors scheduled trips and automatic SOS users, and alerts emergency
contacts by SMS, push and email when someone is overdue, goes silent, or strays
from where they should be.
"""

tags_metadata = [
    {"name": "trips", "description": "Create and manage monitored trips"},
    {"name": "sos", "description": "Manual SOS, alerts and automatic SOS settings"},
    {"name": "monitoring", "description": "Monitoring scheduler control and trip views"},
]

app = FastAPI(
    title="SafeTrip API",
    description=description,
    version="1.0.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Configure CORS for mobile and web
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
    "capacitor://localhost",
    "ionic://localhost",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(trips.router)
app.include_router(sos.router)
app.include_router(monitoring.router)


@app.get("/")
def root():
    return {"message": "SafeTrip API is running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"ok": get_engine().scheduler.healthy()}
