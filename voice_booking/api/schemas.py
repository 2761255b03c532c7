"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ToolCallRequest(BaseModel):
    """One tool call from the voice front end."""

    call_id: str = Field(..., min_length=1, max_length=100, description="Identifier of the phone call")
    practice_id: str = Field(..., min_length=1, max_length=100)
    tool_name: str = Field(..., min_length=1, max_length=100)
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolError(BaseModel):
    code: str
    category: str


class ToolCallResponse(BaseModel):
    """What the front end should say, plus where the call now stands."""

    call_id: str
    tool_name: str
    success: bool
    message: str = Field(..., description="Text for the voice agent to speak")
    stage: str
    error: ToolError | None = None


class CallStateResponse(BaseModel):
    call_id: str
    practice_id: str
    stage: str
    state: dict[str, Any]
    ended: bool = False


class ToolDefinition(BaseModel):
    name: str
    description: str
    stages: list[str]
    parameters: dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "voice-booking-agent"
