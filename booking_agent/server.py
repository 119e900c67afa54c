"""FastAPI server for the appointment booking agent.

Run with:
    uvicorn booking_agent.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from booking_agent.agent import BookingOrchestrator, create_booking_agent
from booking_agent.api.routes import router
from booking_agent.config import (
    CORS_ORIGINS,
    SERVER_HOST,
    SERVER_PORT,
    SESSION_SWEEP_INTERVAL_SECONDS,
)
from booking_agent.services.booking_client import get_booking_client

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def sweep_idle_sessions(orchestrator: BookingOrchestrator, interval: float) -> None:
    """Evict idle sessions every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        evicted = orchestrator.evict_idle_sessions()
        if evicted:
            logger.info("Idle sweep evicted %d sessions", len(evicted))


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator once, run the idle sweep, close the client."""
    logger.info("Compiling booking graph…")
    orchestrator = create_booking_agent()
    application.state.orchestrator = orchestrator
    sweeper = asyncio.create_task(
        sweep_idle_sessions(orchestrator, SESSION_SWEEP_INTERVAL_SECONDS),
    )
    logger.info("Agent ready.")
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await get_booking_client().aclose()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Booking Agent",
    description="Conversational appointment booking for a dental practice.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) for log correlation."""
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
        "service": "booking-agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting booking agent API on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("booking_agent.server:app", host=SERVER_HOST, port=SERVER_PORT, reload=True)
