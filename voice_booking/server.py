"""HTTP entry point for the voice booking agent.

The voice platform posts one request per tool call; everything else
(call inspection, ending a call, the tool list) is for operators and
the front end's setup.

Run with:
    uvicorn voice_booking.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from voice_booking.api.routes import router
from voice_booking.config import CORS_ORIGINS, PRACTICES_FILE, SERVER_HOST, SERVER_PORT
from voice_booking.orchestrator import build_dispatcher
from voice_booking.services.metrics import metrics

SERVICE_NAME = "Voice Booking Agent"
VERSION = "1.0.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Load practices and compile the booking graph once per process.

    A broken practices file fails start-up instead of failing every call.
    """
    dispatcher = build_dispatcher()
    application.state.dispatcher = dispatcher
    logger.info(
        "Dispatcher ready with %d practice(s) from %s",
        len(dispatcher.services.directory), PRACTICES_FILE,
    )
    try:
        yield
    finally:
        sent = metrics.flush()
        logger.info("Shutting down (flushed %d metric data points)", sent)


app = FastAPI(
    title=SERVICE_NAME,
    description=(
        "Tool-call backend for a dental voice receptionist: matches the "
        "visit type, offers open times and books the appointment."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next) -> Response:
    """Tag each request with an ``X-Request-ID`` and log its duration.

    Voice platforms usually send their own ID; it is kept and echoed back
    so both sides can find the same turn in their logs.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "[%s] %s %s -> %d (%.0fms)",
        request_id, request.method, request.url.path, response.status_code, elapsed_ms,
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "docs": "/docs",
        "health": "/api/health",
        "tools": "/api/tools",
    }


if __name__ == "__main__":
    logger.info("Starting %s on %s:%d", SERVICE_NAME, SERVER_HOST, SERVER_PORT)
    uvicorn.run("voice_booking.server:app", host=SERVER_HOST, port=SERVER_PORT)
