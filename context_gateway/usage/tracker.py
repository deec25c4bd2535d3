"""Token and cost accounting.

Every generation call produces exactly one append-only UsageRecord. Totals
handed to callers are always computed here from the records (the
authoritative cumulative view), never re-derived from client-observed
deltas, so reconnects and reloads can't double-count.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Protocol

from context_gateway.models import UsageRecord, UsageTotals
from context_gateway.usage.pricing import PricingTable

logger = logging.getLogger(__name__)


class UsageSink(Protocol):
    async def record_usage(self, record: UsageRecord) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _sum(records) -> UsageTotals:
    input_tokens = output_tokens = count = 0
    cost = 0.0
    for r in records:
        input_tokens += r.input_tokens
        output_tokens += r.output_tokens
        cost += r.cost
        count += 1
    return UsageTotals(input_tokens, output_tokens, cost, count)


class UsageTracker:
    """In-process usage ledger with an optional persistence sink.

    Usage:
        tracker = UsageTracker(PricingTable())
        record = await tracker.record_usage("claude-3-5-haiku", 1200, 300)
        tracker.totals(thread_id="t-1")
    """

    def __init__(
        self,
        pricing: PricingTable | None = None,
        sink: UsageSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.pricing = pricing or PricingTable()
        self.sink = sink
        self._clock = clock
        self._records: list[UsageRecord] = []
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        await self.reset()

    async def reset(self) -> None:
        async with self._lock:
            self._records = []

    async def record_usage(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        *,
        thread_id: str | None = None,
        client_key: str | None = None,
        stop_reason: str | None = None,
        status: str = "ok",
        latency_ms: int | None = None,
    ) -> UsageRecord:
        input_tokens = max(0, int(input_tokens or 0))
        output_tokens = max(0, int(output_tokens or 0))
        cost, fallback = self.pricing.cost(model, input_tokens, output_tokens)

        record = UsageRecord(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            timestamp=self._clock(),
            thread_id=thread_id,
            client_key=client_key,
            stop_reason=stop_reason,
            status=status,
            latency_ms=latency_ms,
            pricing_fallback=fallback,
        )
        async with self._lock:
            self._records.append(record)

        logger.info(
            "USAGE | model=%s | in=%d | out=%d | cost=$%.6f | thread=%s | status=%s",
            model, input_tokens, output_tokens, cost, thread_id, status,
        )

        if self.sink is not None:
            try:
                await self.sink.record_usage(record)
            except Exception as e:
                logger.warning("Usage sink failed for thread %s: %s", thread_id, e)

        return record

    def records(self) -> tuple[UsageRecord, ...]:
        return tuple(self._records)

    def query(
        self,
        model: str | None = None,
        thread_id: str | None = None,
        client_key: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        status: str | None = None,
    ) -> list[UsageRecord]:
        since, until = _aware(since), _aware(until)
        result = []
        for r in self._records:
            if model and r.model != model:
                continue
            if thread_id and r.thread_id != thread_id:
                continue
            if client_key and r.client_key != client_key:
                continue
            if since and r.timestamp < since:
                continue
            if until and r.timestamp > until:
                continue
            if status and r.status != status:
                continue
            result.append(r)
        return result

    def totals(self, **filters) -> UsageTotals:
        return _sum(self.query(**filters))

    def timeseries(self, interval: str = "day", **filters) -> list[dict]:
        """Totals grouped per hour or per day, oldest first."""
        if interval not in ("hour", "day"):
            raise ValueError(f"Unsupported interval: {interval}")

        grouped: OrderedDict[str, list[UsageRecord]] = OrderedDict()
        for r in sorted(self.query(**filters), key=lambda rec: rec.timestamp):
            if interval == "hour":
                key = r.timestamp.replace(minute=0, second=0, microsecond=0).isoformat()
            else:
                key = r.timestamp.date().isoformat()
            grouped.setdefault(key, []).append(r)

        points = []
        for key, recs in grouped.items():
            t = _sum(recs)
            points.append({
                "t": key,
                "input": t.input_tokens,
                "output": t.output_tokens,
                "cost": round(t.cost, 6),
                "requests": t.request_count,
            })
        return points
