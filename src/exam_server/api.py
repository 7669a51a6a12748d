"""
exam_server/api.py

FastAPI HTTP interface for the exam orchestrator.

Endpoints:
  GET  /health      liveness probe
  POST /api/exam    answer one question; always 200, errors live in ``answer``
  GET  /mock/api/*  partner API stand-in (when ``enable_mock_partner``)

Every request is tagged with a log id, taken from an inbound ``logId`` header
or generated, and echoed back in the ``logId`` response header.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from functools import lru_cache

import uvicorn
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .log_context import configure_logging, log_id_var, new_log_id
from .mock_partner import router as mock_partner_router
from .models import Answer, Question
from .orchestrator import ExamOrchestrator, build_orchestrator
from .settings import get_settings

logger = logging.getLogger("exam-server.api")

LOG_ID_HEADER = "logId"

# ---------------------------------------------------------------------------
# Thread pool for running the synchronous orchestrator
# ---------------------------------------------------------------------------
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="exam")

# ---------------------------------------------------------------------------
# Orchestrator lifecycle
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_orchestrator() -> ExamOrchestrator:
    """Build the process-wide orchestrator on first use."""
    return build_orchestrator(get_settings())


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    if get_orchestrator.cache_info().currsize:
        get_orchestrator().close()
        get_orchestrator.cache_clear()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Exam Server",
    version="0.1.0",
    description=(
        "Answers competition questions through knowledge lookup, partner "
        "tool calls or dual-path data queries."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

if get_settings().enable_mock_partner:
    app.include_router(mock_partner_router)


@app.middleware("http")
async def bind_log_id(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    log_id = request.headers.get(LOG_ID_HEADER) or new_log_id()
    token = log_id_var.set(log_id)
    try:
        response = await call_next(request)
    finally:
        log_id_var.reset(token)
    response.headers[LOG_ID_HEADER] = log_id
    return response


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "server": "exam-server"}


@app.post("/api/exam", response_model=Answer, tags=["exam"])
async def exam(
    question: Question,
    orchestrator: ExamOrchestrator = Depends(get_orchestrator),
) -> Answer:
    """Answer one exam question.

    The orchestrator is synchronous (blocking HTTP and database calls) so it
    runs on a worker thread with the request's context copied in.

    Args:
        question: Parsed request body.

    Returns:
        The answer, carrying the question's segment, paper and id.
    """
    logger.info("[api] received question %s/%s/%s", question.segment, question.paper, question.id)
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    return await loop.run_in_executor(_executor, context.run, orchestrator.answer, question)


# ---------------------------------------------------------------------------
# Entry point (``exam-server`` script)
# ---------------------------------------------------------------------------


def run_api() -> None:
    """Start the FastAPI server via uvicorn."""
    from dotenv import load_dotenv

    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("Starting exam-server API on %s:%d", settings.api_host, settings.api_port)
    uvicorn.run(
        "exam_server.api:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
