import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from llm_gateway.cache import TTLCache
from llm_gateway.models import UsageRecord
from llm_gateway.store import TABLE_USAGE, MemoryStore
from llm_gateway.usage import (
    DEFAULT_MODEL,
    PRICING_TABLE,
    TokenUsage,
    UsageMeter,
    UsageWriteQueue,
    build_usage_record,
    calculate_cost,
    get_pricing,
    token_count,
)

BASE_TIME = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_record(request_id: str, **overrides) -> UsageRecord:
    values = {
        "request_id": request_id,
        "api_key_id": 1,
        "owner_id": "u1",
        "model": "claude-3-haiku-20240307",
        "status_code": 200,
        "response_time_ms": 50,
        "input_tokens": 100,
        "output_tokens": 10,
        "created_at": BASE_TIME,
    }
    values.update(overrides)
    return UsageRecord(**values)


def make_meter(batch_size: int = 100):
    store = MemoryStore()
    return UsageMeter(store, TTLCache("usage", 300, 1000), batch_size=batch_size), store


def test_calculate_cost_per_million():
    cost = calculate_cost("claude-sonnet-4-20250514", 1_000_000, 1_000_000)
    assert cost == Decimal("18")

    cost = calculate_cost("claude-3-5-haiku-20241022", 50, 20)
    assert cost == (Decimal(50) * Decimal("0.8") + Decimal(20) * Decimal("4")) / Decimal(
        1_000_000
    )


def test_unknown_model_falls_back_to_default():
    assert get_pricing("gpt-4o") == PRICING_TABLE[DEFAULT_MODEL]
    assert get_pricing(None) == PRICING_TABLE[DEFAULT_MODEL]
    assert calculate_cost("mystery", 1000, 1000) == calculate_cost(
        DEFAULT_MODEL, 1000, 1000
    )


def test_alias_matches_model_family():
    assert get_pricing("claude-3-5-sonnet-latest") == PRICING_TABLE[
        "claude-3-5-sonnet-20241022"
    ]
    assert get_pricing("claude-opus-4-0") == PRICING_TABLE["claude-opus-4-20250514"]
    assert get_pricing("claude-3-5-haiku-latest") == PRICING_TABLE[
        "claude-3-5-haiku-20241022"
    ]


def test_cost_monotone_in_tokens():
    for model in PRICING_TABLE:
        previous = Decimal(0)
        for tokens in (0, 1, 10, 1000, 10**6):
            cost = calculate_cost(model, tokens, tokens)
            assert cost >= previous
            previous = cost
        assert calculate_cost(model, 10, 5) <= calculate_cost(model, 11, 5)
        assert calculate_cost(model, 10, 5) <= calculate_cost(model, 10, 6)


def test_build_usage_record_prefers_reported_model():
    record = build_usage_record(
        request_id="r1",
        api_key_id=3,
        owner_id="u1",
        status_code=200,
        response_time_ms=10,
        model="claude-3-haiku-20240307",
        usage=TokenUsage(model="claude-opus-4-20250514", input_tokens=50, output_tokens=20),
        upstream_account_id=7,
    )

    assert record.model == "claude-opus-4-20250514"
    assert record.cost_usd == pytest.approx((50 * 15 + 20 * 75) / 1_000_000)
    assert record.upstream_account_id == 7


def test_token_usage_from_response_payload():
    usage = TokenUsage.from_response(
        {
            "model": "claude-3-haiku-20240307",
            "usage": {
                "input_tokens": 12,
                "output_tokens": 34,
                "cache_creation_input_tokens": 5,
                "cache_read_input_tokens": 6,
            },
        }
    )

    assert usage.input_tokens == 12
    assert usage.output_tokens == 34
    assert usage.cache_creation_tokens == 5
    assert usage.cache_read_tokens == 6
    assert TokenUsage.from_response({}).input_tokens == 0


@pytest.mark.parametrize(
    "value, expected",
    [
        (12, 12),
        (7.9, 7),
        (-3, 0),
        (None, 0),
        ("n/a", 0),
        ("15", 0),
        (True, 0),
        (float("inf"), 0),
        (float("nan"), 0),
    ],
)
def test_token_count_coerces_untrusted_values(value, expected):
    assert token_count(value) == expected


def test_token_usage_from_response_tolerates_bad_fields():
    usage = TokenUsage.from_response(
        {
            "model": 42,
            "usage": {
                "input_tokens": "n/a",
                "output_tokens": float("inf"),
                "cache_read_input_tokens": [1],
            },
        }
    )

    assert usage == TokenUsage()


@pytest.mark.asyncio
async def test_record_skips_duplicate_request_id():
    meter, store = make_meter()

    assert await meter.record(make_record("r1")) is True
    assert await meter.record(make_record("r1", output_tokens=999)) is False
    assert await store.count(TABLE_USAGE) == 1


@pytest.mark.asyncio
async def test_record_batch_chunks_and_skips_duplicates():
    meter, store = make_meter(batch_size=2)
    await meter.record(make_record("existing"))

    records = [make_record(f"r{i}") for i in range(5)]
    records.append(make_record("r1"))
    records.append(make_record("existing"))

    inserted = await meter.record_batch(records)

    assert inserted == 5
    assert await store.count(TABLE_USAGE) == 6


@pytest.mark.asyncio
async def test_aggregate_is_cached_per_owner_and_dates():
    meter, store = make_meter()
    await meter.record(make_record("r1"))

    start = BASE_TIME - timedelta(days=1)
    end = BASE_TIME + timedelta(days=1)
    first = await meter.aggregate("u1", start, end)
    await meter.record(make_record("r2"))
    second = await meter.aggregate("u1", start, end)

    assert first.total_requests == 1
    assert second is first
    assert meter.stats_cache.stats()["hits"] == 1


@pytest.mark.asyncio
async def test_aggregate_accepts_naive_datetimes():
    meter, _ = make_meter()
    await meter.record(make_record("r1"))

    summary = await meter.aggregate(
        "u1", datetime(2025, 5, 31), datetime(2025, 6, 2)
    )
    assert summary.total_requests == 1


@pytest.mark.asyncio
async def test_write_queue_drains_on_close():
    meter, store = make_meter()
    queue = UsageWriteQueue(meter, queue_size=10)
    queue.start()

    for i in range(5):
        assert queue.submit(make_record(f"r{i}")) is True
    await queue.close()

    assert await store.count(TABLE_USAGE) == 5
    assert queue.written == 5
    assert queue.depth == 0


@pytest.mark.asyncio
async def test_write_queue_drops_when_full():
    meter, store = make_meter()
    queue = UsageWriteQueue(meter, queue_size=2)

    assert queue.submit(make_record("r1")) is True
    assert queue.submit(make_record("r2")) is True
    assert queue.submit(make_record("r3")) is False
    assert queue.dropped == 1

    queue.start()
    await queue.close()
    assert await store.count(TABLE_USAGE) == 2


@pytest.mark.asyncio
async def test_write_queue_survives_store_failures():
    meter, store = make_meter()

    class BrokenMeter:
        def __init__(self):
            self.calls = 0

        async def record(self, record):
            self.calls += 1
            if record.request_id == "bad":
                raise RuntimeError("disk full")
            return await meter.record(record)

    broken = BrokenMeter()
    queue = UsageWriteQueue(broken, queue_size=10)
    queue.start()
    queue.submit(make_record("bad"))
    queue.submit(make_record("good"))
    await queue.close()

    assert broken.calls == 2
    assert queue.failed == 1
    assert queue.written == 1
    assert await store.count(TABLE_USAGE) == 1


@pytest.mark.asyncio
async def test_write_queue_submit_never_blocks_the_caller():
    meter, _ = make_meter()
    queue = UsageWriteQueue(meter, queue_size=1)

    results = [queue.submit(make_record(f"r{i}")) for i in range(3)]
    await asyncio.sleep(0)

    assert results == [True, False, False]
    assert queue.stats()["dropped"] == 2
