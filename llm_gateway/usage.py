"""Token pricing, usage persistence and cached usage aggregates."""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Optional

from llm_gateway.cache import TTLCache, usage_stats_key
from llm_gateway.models import UsageRecord, UsageSummary
from llm_gateway.store import TABLE_USAGE, DuplicateRecordError, Store

logger = logging.getLogger(__name__)

MILLION = Decimal(1_000_000)
DEFAULT_MODEL = "claude-3-haiku-20240307"

_DATE_SUFFIX = re.compile(r"-\d{8}$")


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal


PRICING_TABLE: Dict[str, ModelPricing] = {
    "claude-sonnet-4-20250514": ModelPricing(Decimal("3"), Decimal("15")),
    "claude-opus-4-20250514": ModelPricing(Decimal("15"), Decimal("75")),
    "claude-3-7-sonnet-20250219": ModelPricing(Decimal("3"), Decimal("15")),
    "claude-3-5-sonnet-20241022": ModelPricing(Decimal("3"), Decimal("15")),
    "claude-3-5-haiku-20241022": ModelPricing(Decimal("0.8"), Decimal("4")),
    "claude-3-opus-20240229": ModelPricing(Decimal("15"), Decimal("75")),
    "claude-3-sonnet-20240229": ModelPricing(Decimal("3"), Decimal("15")),
    "claude-3-haiku-20240307": ModelPricing(Decimal("0.25"), Decimal("1.25")),
}

# Undated family names, longest first so "claude-3-5-sonnet" wins over shorter stems.
_FAMILY_PRICING = sorted(
    ((_DATE_SUFFIX.sub("", name), pricing) for name, pricing in PRICING_TABLE.items()),
    key=lambda item: len(item[0]),
    reverse=True,
)


def get_pricing(model: Optional[str]) -> ModelPricing:
    if model:
        pricing = PRICING_TABLE.get(model)
        if pricing is not None:
            return pricing
        for family, family_pricing in _FAMILY_PRICING:
            if model.startswith(family):
                return family_pricing
    return PRICING_TABLE[DEFAULT_MODEL]


def calculate_cost(model: Optional[str], input_tokens: int, output_tokens: int) -> Decimal:
    pricing = get_pricing(model)
    return (
        Decimal(max(input_tokens, 0)) * pricing.input_per_million
        + Decimal(max(output_tokens, 0)) * pricing.output_per_million
    ) / MILLION


def token_count(value: object) -> int:
    """Non-negative integer count, or 0 for anything that is not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(int(value), 0)


@dataclass
class TokenUsage:
    """Token counts reported by the upstream for one response."""

    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @classmethod
    def from_response(cls, payload: Dict[str, object]) -> "TokenUsage":
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        model = payload.get("model")
        return cls(
            model=model if isinstance(model, str) else None,
            input_tokens=token_count(usage.get("input_tokens")),
            output_tokens=token_count(usage.get("output_tokens")),
            cache_creation_tokens=token_count(usage.get("cache_creation_input_tokens")),
            cache_read_tokens=token_count(usage.get("cache_read_input_tokens")),
        )


def build_usage_record(
    request_id: str,
    api_key_id: int,
    owner_id: str,
    status_code: int,
    response_time_ms: int,
    model: Optional[str] = None,
    usage: Optional[TokenUsage] = None,
    upstream_account_id: Optional[int] = None,
    error_message: Optional[str] = None,
    endpoint: str = "/v1/messages",
    user_agent: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> UsageRecord:
    tokens = usage or TokenUsage()
    model_name = tokens.model or model
    return UsageRecord(
        request_id=request_id,
        api_key_id=api_key_id,
        owner_id=owner_id,
        upstream_account_id=upstream_account_id,
        model=model_name,
        status_code=status_code,
        response_time_ms=response_time_ms,
        input_tokens=tokens.input_tokens,
        output_tokens=tokens.output_tokens,
        cache_creation_tokens=tokens.cache_creation_tokens,
        cache_read_tokens=tokens.cache_read_tokens,
        cost_usd=float(
            calculate_cost(model_name, tokens.input_tokens, tokens.output_tokens)
        ),
        error_message=error_message,
        endpoint=endpoint,
        user_agent=user_agent,
        client_ip=client_ip,
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UsageMeter:
    """Persists usage records and answers aggregate queries."""

    def __init__(self, store: Store, stats_cache: TTLCache, batch_size: int = 100):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.stats_cache = stats_cache
        self.batch_size = batch_size

    async def record(self, record: UsageRecord) -> bool:
        """Insert one record. A repeated ``request_id`` is skipped and returns False."""
        try:
            await self.store.create(TABLE_USAGE, record.to_row())
        except DuplicateRecordError:
            logger.debug("Usage for request %s already recorded", record.request_id)
            return False
        return True

    async def record_batch(self, records: Iterable[UsageRecord]) -> int:
        pending = list(records)
        seen = set()
        inserted = 0
        for start in range(0, len(pending), self.batch_size):
            chunk = pending[start : start + self.batch_size]
            for record in chunk:
                if record.request_id in seen:
                    continue
                seen.add(record.request_id)
                if await self.record(record):
                    inserted += 1
            logger.debug(
                "Usage batch %d stored (%d records, %d inserted so far)",
                start // self.batch_size + 1,
                len(chunk),
                inserted,
            )
        return inserted

    async def aggregate(
        self, owner_id: str, start: datetime, end: datetime
    ) -> UsageSummary:
        start = _as_utc(start)
        end = _as_utc(end)
        key = usage_stats_key(owner_id, start.date().isoformat(), end.date().isoformat())
        cached = self.stats_cache.get(key)
        if cached is not None:
            return cached

        summary = await self.store.aggregate_usage(owner_id, start, end)
        self.stats_cache.set(key, summary)
        return summary


class UsageWriteQueue:
    """Bounded background writer so the request path never awaits storage.

    ``submit`` drops (and counts) records when the queue is full. ``close``
    writes everything already queued before returning.
    """

    def __init__(self, meter: UsageMeter, queue_size: int = 1000):
        self.meter = meter
        self._queue: "asyncio.Queue[Optional[UsageRecord]]" = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._worker_task: Optional[asyncio.Task] = None
        self._dropped = 0
        self._written = 0
        self._failed = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def written(self) -> int:
        return self._written

    @property
    def failed(self) -> int:
        return self._failed

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._worker_task is not None:
            return
        self._worker_task = asyncio.create_task(self._run(), name="usage-writer")

    async def close(self) -> None:
        if self._worker_task is None:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            await self._queue.put(None)
        await self._worker_task
        self._worker_task = None

    def submit(self, record: UsageRecord) -> bool:
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Usage queue full, dropped record for request %s (dropped=%d)",
                record.request_id,
                self._dropped,
            )
            return False
        return True

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                break
            try:
                if await self.meter.record(record):
                    self._written += 1
            except Exception:
                self._failed += 1
                logger.exception(
                    "Failed to persist usage for request %s", record.request_id
                )
            finally:
                self._queue.task_done()

    def stats(self) -> Dict[str, int]:
        return {
            "depth": self.depth,
            "capacity": self._queue.maxsize,
            "written": self._written,
            "dropped": self._dropped,
            "failed": self._failed,
        }

