"""FastAPI server for the dental voice booking orchestrator.

Run with:
    uvicorn booking_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from booking_agent import config
from booking_agent.api.routes import router
from booking_agent.dispatcher import ToolCallDispatcher
from booking_agent.practices import PracticeDirectory
from booking_agent.services.classifier import AppointmentTypeClassifier
from booking_agent.services.metrics import MetricsClient
from booking_agent.services.nexhealth_client import NexHealthClient
from booking_agent.state.store import InMemoryStateStore, SqlStateStore, StateStore
from booking_agent.tools.base import WorkflowSettings

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_store() -> StateStore:
    if config.STATE_BACKEND == "memory":
        logger.warning("Using in-memory conversation state; it is lost on restart")
        return InMemoryStateStore(strict_sequencing=config.STRICT_STATE_SEQUENCING)
    return SqlStateStore(config.DATABASE_URL, strict_sequencing=config.STRICT_STATE_SEQUENCING)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build every collaborator once and hand them to the dispatcher."""
    metrics = MetricsClient()
    store = build_store()
    scheduler = NexHealthClient(metrics=metrics)
    classifier = AppointmentTypeClassifier(
        model=config.CLASSIFIER_MODEL_NAME,
        api_key=config.ANTHROPIC_API_KEY,
        metrics=metrics,
    )
    practices = PracticeDirectory.from_file(config.PRACTICES_FILE)

    application.state.store = store
    application.state.dispatcher = ToolCallDispatcher(
        store=store,
        practices=practices,
        scheduler=scheduler,
        classifier=classifier,
        settings=WorkflowSettings.from_config(),
        metrics=metrics,
    )
    logger.info("Dispatcher ready (%d practice(s), state backend %s).", len(practices), config.STATE_BACKEND)
    yield
    scheduler.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Dental Voice Booking",
    description="Tool-call webhook that books dental appointments for a voice assistant.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Tag every request with an ``X-Request-ID`` for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": "Dental Voice Booking",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting booking API server on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    uvicorn.run(
        "booking_agent.server:app",
        host=config.SERVER_HOST,
        port=config.SERVER_PORT,
        reload=True,
    )
