"""FastAPI application – Context Gateway.

Sits between chat clients and the LLM provider:
- POST /chat/stream: rate limit -> budgeted context assembly -> SSE deltas
- Truncated answers can be continued explicitly (POST /chat/{id}/continue)
- Every call is metered; GET /usage/* returns authoritative totals
- GET /metrics exposes Prometheus counters
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from context_gateway import __version__
from context_gateway.chat.router import router as chat_router
from context_gateway.config import settings
from context_gateway.logging_utils import HealthCheckAccessFilter, configure_logging
from context_gateway.state import GatewayState

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Context gateway starting on port %d", settings.port)
    logging.getLogger("uvicorn.access").addFilter(HealthCheckAccessFilter())
    # Tests may install their own state before startup
    state = getattr(app.state, "gateway", None)
    if state is None:
        state = GatewayState(settings)
        app.state.gateway = state
    await state.init()
    yield
    await state.close()
    logger.info("Context gateway stopped")


app = FastAPI(
    title="Context Gateway",
    description="LLM gateway: context budgeting, rate limiting, usage accounting, streaming",
    version=__version__,
    lifespan=lifespan,
)
app.include_router(chat_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "context-gateway",
        "version": __version__,
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Entry point ---

def run() -> None:
    import uvicorn

    uvicorn.run(
        "context_gateway.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
