"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from booking_agent.models import Channel, Intent, Stage


class ChatRequest(BaseModel):
    """Incoming patient message from a channel adapter."""

    message: str = Field(..., min_length=1, max_length=2000, description="The patient's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Session identifier; its prefix selects the channel when none is given",
    )
    channel: Channel | None = Field(default=None, description="Explicit channel override")


class ChatResponse(BaseModel):
    """Reply for one turn plus the session's progress."""

    reply: str = Field(..., description="The agent's response message")
    session_id: str
    stage: Stage
    intent: Intent
    missing_required: list[str] = Field(default_factory=list)
    iteration_limit_reached: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "booking-agent"
