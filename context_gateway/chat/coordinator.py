"""StreamCoordinator — one generation call from request to terminal state.

Flow per call:
1. Rate limit (before anything else is touched)
2. Store new documents + earlier history turns, assemble the context window
3. Stream provider deltas, honoring the cancel event between chunks
4. Terminal state: COMPLETED | TRUNCATED | FAILED | CANCELLED
5. Exactly one usage record, authoritative totals in the `done` event
6. Append user turn + assistant text to the thread's ChunkStore

A truncated call leaves a ContinuationState behind. The caller decides
whether to continue; continuation reuses the same thread and context.

Cancellation (Stop button, client disconnect) sets the call's cancel event.
No delta is forwarded after that and the terminal state is reached without
waiting for the provider to finish.

Common questions answered before with the same model and context are served
from the ResponseCache: same events, zero provider tokens.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
import weakref
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from pydantic import ValidationError

from context_gateway.cache import CachedResponse, ResponseCache
from context_gateway.chat.continuation import ContinuationRegistry, build_continuation_prompt
from context_gateway.chat.models import ChatRequest, StreamEvent
from context_gateway.chat.task_class import (
    CONTINUATION_LIMITS,
    MAX_OUTPUT_TOKENS,
    resolve_task_class,
    select_model,
)
from context_gateway.config import settings as default_settings
from context_gateway.context import ChunkStoreRegistry, ContextAssembler
from context_gateway.errors import (
    ChatValidationError,
    ProviderError,
    RateLimitExceeded,
    UnknownThreadError,
)
from context_gateway.limits import RateLimiter
from context_gateway.llm.provider import Provider, ProviderChunk, ProviderUsage
from context_gateway.models import ContextWindow, StopKind, StreamState, classify_stop_reason
from context_gateway.monitoring import metrics
from context_gateway.persistence import PersistenceStore
from context_gateway.usage import UsageTracker

logger = logging.getLogger(__name__)

_USAGE_STATUS = {
    StreamState.COMPLETED: "ok",
    StreamState.TRUNCATED: "ok",
    StreamState.FAILED: "error",
    StreamState.CANCELLED: "cancelled",
}

# Sentinels returned by _next_or_cancel
_END = object()
_CANCELLED = object()


def build_system_prompt(base: str, window: ContextWindow) -> str:
    if window.is_empty:
        return base
    return f"{base}\n\nContext:\n{window.text}"


@dataclass
class _CallPlan:
    thread_id: str
    client_key: str
    model: str
    system_prompt: str
    messages: list[dict]
    max_output_tokens: int
    continuation_limit: int
    window: ContextWindow
    cancel_event: asyncio.Event
    is_continuation: bool = False
    # Current user turn, stored together with the answer at the terminal state
    user_turn: str | None = None
    task_class: str | None = None
    cached: CachedResponse | None = None
    started: float = field(default=0.0)
    running: bool = False
    # Thread state before admission, restored when the call never runs
    previous_state: StreamState | None = None
    owner: weakref.ref | None = None


class ChatStream:
    """One admitted generation call. Iterate events() once.

    The thread's active slot is held from admission until the terminal
    state. A stream that is never iterated gives the slot back on aclose(),
    or when it is garbage-collected.
    """

    def __init__(self, coordinator: "StreamCoordinator", plan: _CallPlan):
        self._coordinator = coordinator
        self._plan = plan

    @property
    def thread_id(self) -> str:
        return self._plan.thread_id

    @property
    def window(self) -> ContextWindow:
        return self._plan.window

    @property
    def cached(self) -> bool:
        return self._plan.cached is not None

    def cancel(self) -> None:
        self._plan.cancel_event.set()

    def events(self) -> AsyncIterator[StreamEvent]:
        return self._coordinator._run(self)

    async def aclose(self) -> None:
        """Release the thread if events() never started. No-op afterwards."""
        self._coordinator._release(self._plan)


class StreamCoordinator:
    """Drives generation calls through the stream state machine.

    All collaborators are injected; GatewayState wires the production set.
    """

    def __init__(
        self,
        provider: Provider,
        usage_tracker: UsageTracker,
        rate_limiter: RateLimiter,
        assembler: ContextAssembler,
        chunk_stores: ChunkStoreRegistry,
        continuations: ContinuationRegistry,
        persistence: PersistenceStore | None = None,
        settings=default_settings,
        clock: Callable[[], float] = time.monotonic,
        response_cache: ResponseCache | None = None,
    ):
        self.provider = provider
        self.usage_tracker = usage_tracker
        self.rate_limiter = rate_limiter
        self.assembler = assembler
        self.chunk_stores = chunk_stores
        self.continuations = continuations
        self.persistence = persistence
        self.settings = settings
        self.response_cache = response_cache
        self._clock = clock
        self._states: dict[str, StreamState] = {}
        self._active: dict[str, _CallPlan] = {}
        # Terminal bookkeeping scheduled after a consumer disconnect
        self._finalizers: set[asyncio.Task] = set()

    # --- Public API ---

    def state(self, thread_id: str) -> StreamState:
        return self._states.get(thread_id, StreamState.IDLE)

    def is_active(self, thread_id: str) -> bool:
        return self._busy(thread_id)

    def cancel(self, thread_id: str) -> bool:
        """Request cancellation of the thread's active stream. False if none."""
        if not self._busy(thread_id):
            return False
        logger.info("STREAM_CANCEL_REQUESTED | thread=%s", thread_id)
        self._active[thread_id].cancel_event.set()
        return True

    def reset(self) -> None:
        for plan in self._active.values():
            plan.cancel_event.set()
        for task in list(self._finalizers):
            task.cancel()
        self._states.clear()
        self._active.clear()
        self.continuations.clear()
        if self.response_cache is not None:
            self.response_cache.clear()

    async def drain(self) -> None:
        """Wait for terminal bookkeeping of disconnected streams."""
        if self._finalizers:
            await asyncio.gather(*self._finalizers, return_exceptions=True)

    async def start(
        self,
        request: ChatRequest | dict,
        client_key: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatStream:
        """Admit a new generation call.

        Raises ChatValidationError or RateLimitExceeded before any provider
        call or store mutation.
        """
        if not isinstance(request, ChatRequest):
            try:
                request = ChatRequest.model_validate(request)
            except ValidationError as e:
                raise ChatValidationError(str(e)) from e

        client_key = request.client_key or client_key or "unknown"
        thread_id = request.thread_id or f"thread-{uuid.uuid4().hex[:12]}"
        if self._busy(thread_id):
            raise ChatValidationError(f"Thread {thread_id} already has an active stream")

        await self._admit(client_key)

        current = request.messages[-1].content
        task_class = resolve_task_class(request.task_class, current)
        model = request.model
        if model is None and request.task_class == "auto" and task_class is not None:
            model = select_model(
                task_class, len(current), self.settings.default_model, self.settings.large_model,
            )
        model = model or self.settings.default_model
        max_output_tokens = (
            request.max_output_tokens
            or (MAX_OUTPUT_TOKENS[task_class] if task_class else None)
            or self.settings.default_max_output_tokens
        )
        continuation_limit = (
            CONTINUATION_LIMITS[task_class] if task_class else self.settings.max_continuations
        )
        budget = request.context_budget or self.settings.context_budget

        store = self.chunk_stores.get(thread_id)
        async with store.lock:
            if request.documents:
                store.add_document_chunks(request.documents)
            history = request.messages[:-1]
            for message in history[store.turn_count:]:
                store.add_conversation_chunk(message.content, message.role)
            window = self.assembler.get_optimized_context(store, budget)

        self._observe_window(window)
        metrics.chat_requests_total.labels(kind="initial").inc()

        plan = _CallPlan(
            thread_id=thread_id,
            client_key=client_key,
            model=model,
            system_prompt=build_system_prompt(self.settings.system_prompt, window),
            messages=[{"role": "user", "content": current}],
            max_output_tokens=max_output_tokens,
            continuation_limit=continuation_limit,
            window=window,
            cancel_event=cancel_event or asyncio.Event(),
            user_turn=current,
            task_class=task_class.value if task_class else None,
        )
        if self.response_cache is not None:
            plan.cached = self.response_cache.get(plan.model, plan.system_prompt, plan.messages)
            if plan.cached is not None:
                metrics.response_cache_hits_total.inc()
        chat = self._register(plan)
        logger.info(
            "CHAT_START | thread=%s | client=%s | model=%s | task=%s | max_out=%d | context_tokens=%d | cached=%s",
            thread_id, client_key, plan.model, plan.task_class, max_output_tokens,
            window.estimated_tokens, plan.cached is not None,
        )
        return chat

    async def start_continuation(
        self,
        thread_id: str,
        client_key: str | None = None,
        max_output_tokens: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatStream:
        """Admit the next chained call for a truncated thread."""
        if thread_id not in self.chunk_stores and thread_id not in self.continuations:
            raise UnknownThreadError(f"Unknown thread {thread_id}")
        continuation = self.continuations.get(thread_id)
        state = self.state(thread_id)
        if continuation is None or state not in (StreamState.TRUNCATED, StreamState.FAILED):
            raise ChatValidationError(
                f"Thread {thread_id} has no truncated response to continue (state={state.value})"
            )
        if self._busy(thread_id):
            raise ChatValidationError(f"Thread {thread_id} already has an active stream")

        client_key = client_key or "unknown"
        await self._admit(client_key)

        store = self.chunk_stores.get(thread_id)
        async with store.lock:
            window = self.assembler.get_optimized_context(store, self.settings.context_budget)
        self._observe_window(window)
        metrics.chat_requests_total.labels(kind="continuation").inc()

        prompt = build_continuation_prompt(
            continuation.accumulated_text, continuation.continuation_count - 1,
        )
        plan = _CallPlan(
            thread_id=thread_id,
            client_key=client_key,
            model=continuation.model or self.settings.default_model,
            system_prompt=build_system_prompt(self.settings.system_prompt, window),
            messages=[{"role": "user", "content": prompt}],
            max_output_tokens=(
                max_output_tokens
                or continuation.max_output_tokens
                or self.settings.default_max_output_tokens
            ),
            continuation_limit=continuation.max_continuations,
            window=window,
            cancel_event=cancel_event or asyncio.Event(),
            is_continuation=True,
        )
        chat = self._register(plan)
        logger.info(
            "CONTINUATION_START | thread=%s | client=%s | continuation=%d/%d",
            thread_id, client_key, continuation.continuation_count,
            continuation.max_continuations,
        )
        return chat

    async def stream(
        self,
        request: ChatRequest | dict,
        client_key: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """start() + events(), with admission failures reported as events."""
        try:
            chat = await self.start(request, client_key, cancel_event)
        except RateLimitExceeded as e:
            yield StreamEvent(
                type="rate_limited", message=str(e),
                metadata={"retry_after": round(e.retry_after, 1)},
            )
            return
        except ChatValidationError as e:
            yield StreamEvent(type="error", message=str(e), metadata={"state": "rejected"})
            return
        async for event in chat.events():
            yield event

    async def continue_stream(
        self,
        thread_id: str,
        client_key: str | None = None,
        max_output_tokens: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        try:
            chat = await self.start_continuation(
                thread_id, client_key, max_output_tokens, cancel_event,
            )
        except RateLimitExceeded as e:
            yield StreamEvent(
                type="rate_limited", message=str(e),
                metadata={"retry_after": round(e.retry_after, 1)},
            )
            return
        except (ChatValidationError, UnknownThreadError) as e:
            yield StreamEvent(type="error", message=str(e), metadata={"state": "rejected"})
            return
        async for event in chat.events():
            yield event

    # --- Internals ---

    async def _admit(self, client_key: str) -> None:
        try:
            await self.rate_limiter.enforce(client_key)
        except RateLimitExceeded:
            metrics.rate_limited_total.inc()
            raise

    def _register(self, plan: _CallPlan) -> ChatStream:
        chat = ChatStream(self, plan)
        plan.owner = weakref.ref(chat)
        plan.previous_state = self._states.get(plan.thread_id)
        self._active[plan.thread_id] = plan
        self._states[plan.thread_id] = StreamState.IDLE
        return chat

    def _busy(self, thread_id: str) -> bool:
        plan = self._active.get(thread_id)
        if plan is None:
            return False
        if not plan.running and (plan.owner is None or plan.owner() is None):
            logger.info("STREAM_ABANDONED | thread=%s | admitted but never started", thread_id)
            self._release(plan)
            return False
        return True

    def _release(self, plan: _CallPlan) -> None:
        """Give back the slot of a call whose events() never ran."""
        if plan.running or self._active.get(plan.thread_id) is not plan:
            return
        del self._active[plan.thread_id]
        if plan.previous_state is None:
            self._states.pop(plan.thread_id, None)
        else:
            self._states[plan.thread_id] = plan.previous_state
        logger.info("STREAM_RELEASED | thread=%s", plan.thread_id)

    def _schedule_finish(self, *args) -> None:
        task = asyncio.get_running_loop().create_task(self._finish(*args))
        self._finalizers.add(task)
        task.add_done_callback(self._finalizer_done)

    def _finalizer_done(self, task: asyncio.Task) -> None:
        self._finalizers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream finalization failed: %s", exc, exc_info=exc)

    def _observe_window(self, window: ContextWindow) -> None:
        metrics.context_tokens.observe(window.estimated_tokens)
        if window.compressed_chunk_ids:
            metrics.context_chunks_compressed_total.inc(len(window.compressed_chunk_ids))
        if window.excluded_chunk_ids:
            metrics.context_chunks_excluded_total.inc(len(window.excluded_chunk_ids))

    async def _run(self, chat: ChatStream) -> AsyncIterator[StreamEvent]:
        plan = chat._plan
        if plan.running:
            raise RuntimeError(f"events() already consumed for thread {plan.thread_id}")
        if self._active.get(plan.thread_id) is not plan:
            raise ChatValidationError(f"Stream for thread {plan.thread_id} was released")
        plan.running = True
        self._states[plan.thread_id] = StreamState.STREAMING
        plan.started = self._clock()

        # A new user turn ends any pending chained generation on this thread
        if not plan.is_continuation and self.continuations.discard(plan.thread_id) is not None:
            logger.info("CONTINUATION_ABANDONED | thread=%s | new user message", plan.thread_id)

        parts: list[str] = []
        stop_reason: str | None = None
        usage: ProviderUsage | None = None
        outcome = StreamState.STREAMING
        error: str | None = None
        finalized = False

        if plan.cached is not None:
            agen = _replay(plan.cached)
        else:
            agen = self.provider.generate(
                plan.model, plan.system_prompt, plan.messages, plan.max_output_tokens,
            )
        try:
            try:
                while True:
                    chunk = await _next_or_cancel(agen, plan.cancel_event)
                    if chunk is _CANCELLED:
                        outcome = StreamState.CANCELLED
                        break
                    if chunk is _END:
                        break
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.stop_reason is not None:
                        stop_reason = chunk.stop_reason
                    if chunk.text:
                        parts.append(chunk.text)
                        yield StreamEvent(type="delta", text=chunk.text)
            except ProviderError as e:
                logger.warning("PROVIDER_FAILED | thread=%s | %s", plan.thread_id, e)
                outcome, error = StreamState.FAILED, str(e)

            if outcome is StreamState.STREAMING:
                if classify_stop_reason(stop_reason) is StopKind.MAX_OUTPUT:
                    outcome = StreamState.TRUNCATED
                else:
                    outcome = StreamState.COMPLETED

            metadata = await self._finish(plan, outcome, "".join(parts), stop_reason, usage)
            finalized = True
            if outcome is StreamState.FAILED:
                yield StreamEvent(type="error", message=error or "Provider failed", metadata=metadata)
            else:
                yield StreamEvent(type="done", metadata=metadata)
        except (GeneratorExit, asyncio.CancelledError):
            # Consumer went away mid-stream
            if not finalized:
                plan.cancel_event.set()
                self._schedule_finish(
                    plan, StreamState.CANCELLED, "".join(parts), stop_reason, usage,
                )
            raise
        finally:
            aclose = getattr(agen, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except ProviderError as e:
                    logger.debug("Provider stream close failed: %s", e)

    async def _finish(
        self,
        plan: _CallPlan,
        outcome: StreamState,
        text: str,
        stop_reason: str | None,
        usage: ProviderUsage | None,
    ) -> dict:
        """Terminal bookkeeping. Returns the metadata of the final event."""
        thread_id = plan.thread_id
        elapsed = max(0.0, self._clock() - plan.started)

        record = None
        # Failed calls are charged only for what the provider reported
        if usage is not None or outcome is not StreamState.FAILED:
            record = await self.usage_tracker.record_usage(
                plan.model,
                usage.input_tokens if usage else 0,
                usage.output_tokens if usage else 0,
                thread_id=thread_id,
                client_key=plan.client_key,
                stop_reason=stop_reason,
                status=_USAGE_STATUS[outcome],
                latency_ms=int(elapsed * 1000),
            )
            metrics.tokens_total.labels(model=plan.model, direction="input").inc(record.input_tokens)
            metrics.tokens_total.labels(model=plan.model, direction="output").inc(record.output_tokens)
            metrics.cost_usd_total.labels(model=plan.model).inc(record.cost)
        call_cost = record.cost if record else 0.0

        final_state = outcome
        limit_reached = False
        continuation_eligible = False
        continuation_count = 0
        cumulative_cost = call_cost

        if outcome is StreamState.TRUNCATED:
            continuation = self.continuations.record_truncation(
                thread_id, call_cost, stop_reason, text,
                max_continuations=plan.continuation_limit,
            )
            continuation.model = plan.model
            continuation.max_output_tokens = plan.max_output_tokens
            continuation_count = continuation.continuation_count
            cumulative_cost = continuation.cumulative_cost
            if continuation.limit_reached:
                limit_reached = True
                final_state = StreamState.COMPLETED
                self.continuations.discard(thread_id)
                metrics.continuation_limit_total.inc()
                logger.info(
                    "CONTINUATION_LIMIT | thread=%s | count=%d/%d",
                    thread_id, continuation_count, continuation.max_continuations,
                )
            else:
                continuation_eligible = True
        elif outcome is StreamState.FAILED:
            continuation = self.continuations.get(thread_id)
            if continuation is not None:
                continuation_count = continuation.continuation_count
                cumulative_cost = continuation.cumulative_cost + call_cost
        else:
            continuation = self.continuations.discard(thread_id)
            if continuation is not None:
                continuation_count = continuation.continuation_count
                cumulative_cost = continuation.cumulative_cost + call_cost

        self._states[thread_id] = final_state
        if self._active.get(thread_id) is plan:
            del self._active[thread_id]

        if outcome is not StreamState.FAILED:
            await self._append_exchange(plan, text, outcome)

        if (
            self.response_cache is not None
            and final_state is StreamState.COMPLETED
            and outcome is StreamState.COMPLETED
            and plan.cached is None
            and not plan.is_continuation
        ):
            self.response_cache.put(
                plan.model, plan.system_prompt, plan.messages, text, stop_reason,
            )

        metrics.stream_outcomes_total.labels(state=outcome.value).inc()
        metrics.stream_duration.labels(state=outcome.value).observe(elapsed)
        logger.info(
            "STREAM_END | thread=%s | state=%s | stop_reason=%s | chars=%d | cost=$%.6f | %.2fs",
            thread_id, final_state.value, stop_reason, len(text), call_cost, elapsed,
        )

        metadata = {
            "thread_id": thread_id,
            "model": plan.model,
            "state": final_state.value,
            "stop_reason": stop_reason,
            "continuation_eligible": continuation_eligible,
            "continuation_count": continuation_count,
            "cumulative_cost": round(cumulative_cost, 6),
            "limit_reached": limit_reached,
            "cached": plan.cached is not None,
            "usage": record.to_dict() if record else None,
            "totals": self.usage_tracker.totals(thread_id=thread_id).to_dict(),
            "context": {
                "estimated_tokens": plan.window.estimated_tokens,
                "budget_tokens": plan.window.budget_tokens,
                "included_chunks": len(plan.window.included_chunk_ids),
                "compressed_chunks": len(plan.window.compressed_chunk_ids),
            },
        }
        if outcome is StreamState.CANCELLED:
            metadata["interrupted"] = True
        return metadata

    async def _append_exchange(self, plan: _CallPlan, text: str, outcome: StreamState) -> None:
        store = self.chunk_stores.get(plan.thread_id)
        messages: list[dict] = []
        async with store.lock:
            if plan.user_turn:
                store.add_conversation_chunk(plan.user_turn, "user")
                messages.append({"role": "user", "content": plan.user_turn})
            if text.strip():
                meta = {"state": outcome.value, "continuation": plan.is_continuation}
                store.add_conversation_chunk(text, "assistant", metadata=meta)
                messages.append({"role": "assistant", "content": text, "metadata": meta})

        if self.persistence is not None and messages:
            try:
                await self.persistence.append_messages(plan.thread_id, messages)
            except Exception as e:
                logger.warning("Failed to persist messages for thread %s: %s", plan.thread_id, e)


async def _next_or_cancel(agen, cancel_event: asyncio.Event):
    """Next provider chunk, _END when exhausted, _CANCELLED when cancel wins."""
    if cancel_event.is_set():
        return _CANCELLED
    next_task = asyncio.ensure_future(agen.__anext__())
    cancel_task = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await _drain(next_task)
        cancel_task.cancel()
        raise

    if cancel_event.is_set():
        await _drain(next_task)
        return _CANCELLED
    cancel_task.cancel()
    try:
        return next_task.result()
    except StopAsyncIteration:
        return _END


async def _drain(task: asyncio.Future) -> None:
    """Cancel a pending provider read and wait for it to unwind."""
    if not task.done():
        task.cancel()
    try:
        await task
    except (asyncio.CancelledError, StopAsyncIteration, ProviderError):
        pass


async def _replay(cached: CachedResponse):
    """Serve a cached answer through the same path as a provider stream."""
    yield ProviderChunk(text=cached.text)
    yield ProviderChunk(stop_reason=cached.stop_reason or "end_turn")
