"""FastAPI route definitions for the booking agent API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from booking_agent.api.schemas import ChatRequest, ChatResponse, HealthResponse
from booking_agent.services.booking_client import BookingAPIError
from booking_agent.state.store import SessionNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request):
    """Retrieve the orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return orchestrator


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Run one patient turn and return the agent's reply.

    Messages for the same ``session_id`` are processed one at a time in
    arrival order; different sessions run concurrently.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await orchestrator.handle_message(
            request.session_id, request.message, request.channel,
        )
    except BookingAPIError as e:
        logger.exception("[%s] Booking backend failure", request_id)
        raise HTTPException(
            status_code=502,
            detail="The booking system is unavailable. Please try again shortly.",
        ) from e
    except Exception as e:
        # Full traceback stays server-side
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    if result.iteration_limit_reached:
        logger.warning("[%s] Session %s hit the iteration ceiling", request_id, request.session_id)

    return ChatResponse(
        reply=result.reply,
        session_id=result.session_id,
        stage=result.stage,
        intent=result.intent,
        missing_required=result.missing_required,
        iteration_limit_reached=result.iteration_limit_reached,
    )


@router.get("/sessions/{session_id}")
async def export_session(session_id: str, http_request: Request):
    """Flat export of one session (for analytics and support)."""
    orchestrator = _get_orchestrator(http_request)
    try:
        return orchestrator.store.export(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Unknown session.") from None
