"""Chat API endpoints — FastAPI router.

Endpoints:
- POST /chat/stream                → SSE stream of one generation call
- POST /chat/{thread_id}/continue  → SSE continuation of a truncated response
- POST /chat/{thread_id}/cancel    → stop the thread's active stream
- GET  /chat/{thread_id}/state     → stream state + pending continuation
- POST /chat/compress              → compress text, with stats
- POST /chat/estimate-tokens       → token estimate (+ input cost for a model)
- GET  /usage/summary              → authoritative usage totals
- GET  /usage/timeseries           → usage grouped per hour/day
- GET  /usage/events               → persisted usage events
- GET  /cache/stats                → response cache size and hit rate

SSE events: delta {type, text} ... then exactly one of
done {type, state, usage, totals, ...} or error {type, message, ...}.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from context_gateway.chat.coordinator import ChatStream
from context_gateway.chat.models import (
    ChatRequest,
    CompressRequest,
    ContinueRequest,
    EstimateRequest,
)
from context_gateway.compression import (
    compress,
    compression_stats,
    estimate_tokens,
    optimize_for_context,
)
from context_gateway.errors import ChatValidationError, RateLimitExceeded, UnknownThreadError
from context_gateway.models import StreamState
from context_gateway.state import GatewayState, get_state

logger = logging.getLogger(__name__)

router = APIRouter()


def resolve_client_key(http_request: Request, explicit: str | None = None) -> str:
    """Body client_key, then X-Client-Key header, then the client host."""
    if explicit:
        return explicit
    header = http_request.headers.get("x-client-key")
    if header:
        return header
    if http_request.client and http_request.client.host:
        return http_request.client.host
    return "unknown"


def _rate_limited(e: RateLimitExceeded) -> HTTPException:
    return HTTPException(
        status_code=429,
        detail=str(e),
        headers={"Retry-After": str(int(e.retry_after) + 1)},
    )


def _sse(chat: ChatStream) -> EventSourceResponse:
    async def event_generator():
        try:
            async for event in chat.events():
                yield {
                    "event": event.type,
                    "data": json.dumps(event.payload()),
                }
        finally:
            await chat.aclose()

    # The body generator may never start when the client leaves early
    return EventSourceResponse(event_generator(), background=BackgroundTask(chat.aclose))


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    state: GatewayState = Depends(get_state),
):
    """Start a generation call and stream it back as SSE.

    Rate limiting happens before the stream opens, so a rejected request
    gets a plain 429 and never reaches the provider.
    """
    client_key = resolve_client_key(http_request, request.client_key)
    try:
        chat = await state.coordinator.start(request, client_key)
    except RateLimitExceeded as e:
        raise _rate_limited(e)
    except ChatValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _sse(chat)


@router.post("/chat/{thread_id}/continue")
async def chat_continue(
    thread_id: str,
    http_request: Request,
    body: ContinueRequest | None = None,
    state: GatewayState = Depends(get_state),
):
    """Continue a truncated response. The caller decides; never automatic."""
    body = body or ContinueRequest()
    client_key = resolve_client_key(http_request, body.client_key)
    try:
        chat = await state.coordinator.start_continuation(
            thread_id, client_key, max_output_tokens=body.max_output_tokens,
        )
    except UnknownThreadError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RateLimitExceeded as e:
        raise _rate_limited(e)
    except ChatValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _sse(chat)


@router.post("/chat/{thread_id}/cancel")
async def chat_cancel(thread_id: str, state: GatewayState = Depends(get_state)):
    """Stop the active stream of a thread (Stop button)."""
    if not state.coordinator.cancel(thread_id):
        raise HTTPException(status_code=404, detail=f"No active stream for {thread_id}")
    return {"status": "cancelling", "thread_id": thread_id}


@router.get("/chat/{thread_id}/state")
async def chat_state(thread_id: str, state: GatewayState = Depends(get_state)):
    stream_state = state.coordinator.state(thread_id)
    if stream_state is StreamState.IDLE and thread_id not in state.chunk_stores:
        raise HTTPException(status_code=404, detail=f"Unknown thread {thread_id}")

    continuation = state.continuations.get(thread_id)
    return {
        "thread_id": thread_id,
        "state": stream_state.value,
        "active": state.coordinator.is_active(thread_id),
        "continuation": None if continuation is None else {
            "continuation_count": continuation.continuation_count,
            "max_continuations": continuation.max_continuations,
            "cumulative_cost": round(continuation.cumulative_cost, 6),
            "last_stop_reason": continuation.last_stop_reason,
        },
        "totals": state.usage_tracker.totals(thread_id=thread_id).to_dict(),
    }


# ---------------------------------------------------------------------------
# Text utilities
# ---------------------------------------------------------------------------

@router.post("/chat/compress")
async def chat_compress(request: CompressRequest):
    if request.optimize:
        compressed = optimize_for_context(request.text)
    else:
        compressed = compress(request.text, request.reduction)
    return {
        "compressed": compressed,
        "stats": compression_stats(request.text, compressed),
    }


@router.post("/chat/estimate-tokens")
async def chat_estimate_tokens(
    request: EstimateRequest,
    state: GatewayState = Depends(get_state),
):
    tokens = estimate_tokens(request.text)
    result = {
        "characters": len(request.text),
        "estimated_tokens": tokens,
        "model": request.model,
    }
    if request.model:
        cost, fallback = state.pricing.cost(request.model, tokens, 0)
        result["estimated_input_cost"] = round(cost, 6)
        result["pricing_fallback"] = fallback
    return result


# ---------------------------------------------------------------------------
# Usage analytics
# ---------------------------------------------------------------------------

@router.get("/usage/summary")
async def usage_summary(
    model: str | None = None,
    thread_id: str | None = None,
    client_key: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    state: GatewayState = Depends(get_state),
):
    """Server-side totals; the only source clients should display."""
    filters = {
        "model": model,
        "thread_id": thread_id,
        "client_key": client_key,
        "since": since,
        "until": until,
    }
    records = state.usage_tracker.query(**filters)
    by_model: dict[str, dict] = {}
    for name in sorted({r.model for r in records}):
        by_model[name] = state.usage_tracker.totals(**{**filters, "model": name}).to_dict()
    return {
        "totals": state.usage_tracker.totals(**filters).to_dict(),
        "by_model": by_model,
    }


@router.get("/usage/timeseries")
async def usage_timeseries(
    interval: str = "day",
    model: str | None = None,
    thread_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    state: GatewayState = Depends(get_state),
):
    try:
        points = state.usage_tracker.timeseries(
            interval, model=model, thread_id=thread_id, since=since, until=until,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"interval": interval, "points": points}


@router.get("/usage/events")
async def usage_events(
    model: str | None = None,
    thread_id: str | None = None,
    client_key: str | None = None,
    status: str | None = None,
    limit: int = 100,
    state: GatewayState = Depends(get_state),
):
    """Raw usage events from the persistence store (MongoDB when configured)."""
    try:
        events = await state.persistence.query_usage({
            "model": model,
            "thread_id": thread_id,
            "client_key": client_key,
            "status": status,
            "limit": limit,
        })
    except Exception as e:
        logger.exception("Failed to query usage events")
        raise HTTPException(status_code=500, detail=str(e))
    return {"events": events[:limit]}


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------

@router.get("/cache/stats")
async def cache_stats(state: GatewayState = Depends(get_state)):
    if state.response_cache is None:
        return {"enabled": False}
    return {"enabled": True, **state.response_cache.stats()}
