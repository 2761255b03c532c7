"""FastAPI route definitions for the tool-call API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from voice_booking.api.schemas import (
    CallStateResponse,
    HealthResponse,
    ToolCallRequest,
    ToolCallResponse,
    ToolDefinition,
    ToolError,
)
from voice_booking.orchestrator import ToolCallDispatcher
from voice_booking.state import ConversationState

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_dispatcher(request: Request) -> ToolCallDispatcher:
    """Retrieve the dispatcher built during the FastAPI lifespan."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return dispatcher


def _state_response(state: ConversationState, *, ended: bool) -> CallStateResponse:
    return CallStateResponse(
        call_id=state.call_id,
        practice_id=state.practice_id,
        stage=state.current_stage.value,
        state=state.model_dump(mode="json"),
        ended=ended,
    )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/tools", response_model=list[ToolDefinition])
async def list_tools():
    """Tools the voice front end may call, with their argument schemas."""
    return [ToolDefinition(**d) for d in ToolCallDispatcher.tool_definitions()]


@router.post("/tool-calls", response_model=ToolCallResponse)
async def tool_call(request: ToolCallRequest, http_request: Request):
    """Run one tool call against the call's conversation state.

    Handler failures are part of a normal conversation and come back as
    ``200`` with ``success: false`` and an ``error`` block.  Dispatch
    talks to the scheduling system and the text matcher synchronously,
    so it runs in a worker thread via ``asyncio.to_thread``.
    """
    dispatcher = _get_dispatcher(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        outcome = await asyncio.to_thread(
            dispatcher.dispatch,
            request.call_id,
            request.practice_id,
            request.tool_name,
            request.arguments,
        )
    except Exception as e:
        logger.exception("[%s] Error processing tool call %s", request_id, request.tool_name)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    error = None
    if outcome.get("error_code"):
        error = ToolError(code=outcome["error_code"], category=outcome["error_category"] or "")
    return ToolCallResponse(
        call_id=request.call_id,
        tool_name=request.tool_name,
        success=outcome["success"],
        message=outcome["message"],
        stage=outcome["stage"],
        error=error,
    )


@router.get("/calls/{call_id}", response_model=CallStateResponse)
async def get_call(call_id: str, http_request: Request):
    """Current state of a call (live or ended)."""
    dispatcher = _get_dispatcher(http_request)
    state = await asyncio.to_thread(dispatcher.get_state, call_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Call not found.")
    ended = dispatcher.store.archived(call_id) is not None
    return _state_response(state, ended=ended)


@router.post("/calls/{call_id}/end", response_model=CallStateResponse)
async def end_call(call_id: str, http_request: Request):
    """Archive a finished call and release its live state."""
    dispatcher = _get_dispatcher(http_request)
    state = await asyncio.to_thread(dispatcher.end_call, call_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Call not found.")
    ended = dispatcher.store.archived(call_id) is not None
    return _state_response(state, ended=ended)
