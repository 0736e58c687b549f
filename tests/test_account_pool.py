import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from llm_gateway.account_pool import CredentialPool
from llm_gateway.cache import TTLCache, account_key, user_accounts_key
from llm_gateway.models import (
    AUTH_OAUTH,
    HEALTH_UNHEALTHY,
    HEALTH_UNKNOWN,
    MESSAGES_CAPABILITY,
    ApiKeyCredential,
    CapabilityFilter,
    OAuthCredential,
    UpstreamAccount,
    now_ms,
)
from llm_gateway.store import TABLE_ACCOUNTS, MemoryStore


def make_account(
    account_id: int,
    owner_id: str = "u1",
    oauth_expires_in_ms: Optional[int] = None,
    **fields,
) -> UpstreamAccount:
    if oauth_expires_in_ms is None:
        credential = ApiKeyCredential(api_key=f"sk-ant-key-{account_id:04d}-secret")
    else:
        credential = OAuthCredential(
            access_token=f"at-{account_id}",
            refresh_token=f"rt-{account_id}",
            expires_at_ms=now_ms() + oauth_expires_in_ms,
        )
    return UpstreamAccount(
        id=account_id, owner_id=owner_id, credential=credential, **fields
    )


async def make_pool(*accounts: UpstreamAccount) -> CredentialPool:
    store = MemoryStore()
    for account in accounts:
        await store.create(TABLE_ACCOUNTS, account.to_row())
    return CredentialPool(store, TTLCache("account", 180, 500))


@pytest.mark.asyncio
async def test_select_prefers_higher_success_count():
    pool = await make_pool(
        make_account(1, request_count=10, success_count=2),
        make_account(2, request_count=10, success_count=10),
    )

    selected = await pool.select_account("u1", MESSAGES_CAPABILITY)
    assert selected is not None
    assert selected.id == 2


@pytest.mark.asyncio
async def test_select_breaks_ties_on_fewer_requests():
    pool = await make_pool(
        make_account(1, request_count=8, success_count=5),
        make_account(2, request_count=5, success_count=5),
    )

    selected = await pool.select_account("u1", MESSAGES_CAPABILITY)
    assert selected.id == 2


@pytest.mark.asyncio
async def test_select_breaks_ties_on_recent_use_then_priority():
    recent = datetime.now(timezone.utc)
    pool = await make_pool(
        make_account(1, last_used_at=recent - timedelta(hours=1)),
        make_account(2, last_used_at=recent),
        make_account(3, priority=9),
    )

    selected = await pool.select_account("u1", MESSAGES_CAPABILITY)
    assert selected.id == 2

    pool = await make_pool(make_account(1, priority=1), make_account(2, priority=5))
    selected = await pool.select_account("u1", MESSAGES_CAPABILITY)
    assert selected.id == 2


@pytest.mark.asyncio
async def test_select_skips_inactive_unhealthy_and_expired_oauth():
    pool = await make_pool(
        make_account(1, is_active=False, success_count=100),
        make_account(2, health_status=HEALTH_UNHEALTHY, success_count=90),
        make_account(3, oauth_expires_in_ms=-1_000, success_count=80),
        make_account(4, oauth_expires_in_ms=3_600_000, success_count=1),
    )

    selected = await pool.select_account("u1", MESSAGES_CAPABILITY)
    assert selected is not None
    assert selected.id == 4


@pytest.mark.asyncio
async def test_select_scoped_to_owner_and_returns_none_when_empty():
    pool = await make_pool(make_account(1, owner_id="other"))

    assert await pool.select_account("u1", MESSAGES_CAPABILITY) is None


@pytest.mark.asyncio
async def test_select_honours_capability_and_exclusions():
    pool = await make_pool(
        make_account(1, success_count=10),
        make_account(2, oauth_expires_in_ms=3_600_000),
        make_account(3, oauth_expires_in_ms=3_600_000),
    )

    oauth_only = CapabilityFilter(auth_kind=AUTH_OAUTH)
    selected = await pool.select_account("u1", oauth_only, exclude=[2])
    assert selected.id == 3


@pytest.mark.asyncio
async def test_mark_failed_marks_unhealthy_and_returns_other_account():
    pool = await make_pool(
        make_account(1, success_count=10), make_account(2, success_count=1)
    )

    alternative = await pool.mark_failed_and_select_alternative(
        1, "u1", MESSAGES_CAPABILITY
    )

    assert alternative is not None
    assert alternative.id == 2
    failed = await pool.get_account(1)
    assert failed.health_status == HEALTH_UNHEALTHY
    assert failed.error_count == 1


@pytest.mark.asyncio
async def test_mark_failed_returns_none_without_alternative():
    pool = await make_pool(make_account(1))

    assert (
        await pool.mark_failed_and_select_alternative(1, "u1", MESSAGES_CAPABILITY)
        is None
    )


@pytest.mark.asyncio
async def test_mark_failed_respects_visited_accounts():
    pool = await make_pool(make_account(1), make_account(2), make_account(3))

    alternative = await pool.mark_failed_and_select_alternative(
        1, "u1", MESSAGES_CAPABILITY, exclude={2}
    )
    assert alternative.id == 3


@pytest.mark.asyncio
async def test_record_outcome_updates_counters():
    pool = await make_pool(make_account(1))

    await pool.record_outcome(1, True, 120)
    await pool.record_outcome(1, False, 80)

    account = await pool.get_account(1)
    assert account.request_count == 2
    assert account.success_count == 1
    assert account.last_used_at is not None


@pytest.mark.asyncio
async def test_concurrent_outcomes_do_not_lose_increments():
    pool = await make_pool(make_account(1))

    await asyncio.gather(*(pool.record_outcome(1, True, 10) for _ in range(25)))

    account = await pool.get_account(1)
    assert account.request_count == 25
    assert account.success_count == 25


@pytest.mark.asyncio
async def test_get_account_reads_through_cache_and_outcome_invalidates():
    pool = await make_pool(make_account(1))

    first = await pool.get_account(1)
    assert pool.cache.has(account_key(1))
    assert first.request_count == 0

    await pool.record_outcome(1, True, 5)
    assert not pool.cache.has(account_key(1))
    assert (await pool.get_account(1)).request_count == 1


@pytest.mark.asyncio
async def test_get_account_missing():
    pool = await make_pool()
    assert await pool.get_account(42) is None


@pytest.mark.asyncio
async def test_reset_health_restores_unhealthy_accounts():
    pool = await make_pool(
        make_account(1, health_status=HEALTH_UNHEALTHY),
        make_account(2, health_status=HEALTH_UNHEALTHY),
        make_account(3),
    )

    assert await pool.reset_health(1) == 1
    assert (await pool.get_account(1)).health_status == HEALTH_UNKNOWN
    assert (await pool.get_account(2)).health_status == HEALTH_UNHEALTHY

    assert await pool.reset_health() == 1
    assert (await pool.get_account(2)).health_status == HEALTH_UNKNOWN


@pytest.mark.asyncio
async def test_update_credential_keeps_counters():
    pool = await make_pool(make_account(1, oauth_expires_in_ms=1_000, request_count=4))
    fresh = OAuthCredential(
        access_token="new", refresh_token="rt", expires_at_ms=now_ms() + 10_000
    )

    await pool.update_credential(1, fresh)

    account = await pool.get_account(1)
    assert account.credential == fresh
    assert account.request_count == 4


@pytest.mark.asyncio
async def test_get_status_masks_credentials():
    pool = await make_pool(
        make_account(1),
        make_account(2, health_status=HEALTH_UNHEALTHY),
        make_account(3, owner_id="u2"),
    )

    status = await pool.get_status("u1")

    assert status["total_accounts"] == 2
    assert status["available_accounts"] == 1
    assert status["unhealthy_accounts"] == 1
    for entry in status["accounts"]:
        assert "secret" not in entry["credential_prefix"]
        assert "credential" not in entry

    everything = await pool.get_status()
    assert everything["total_accounts"] == 3


@pytest.mark.asyncio
async def test_select_serves_owner_accounts_from_cache_until_outcome():
    pool = await make_pool(make_account(1, success_count=5), make_account(2))
    capability = MESSAGES_CAPABILITY

    assert (await pool.select_account("u1", capability)).id == 1
    assert pool.cache.has(user_accounts_key("u1"))

    # Changed behind the pool's back: the cached list still wins.
    await pool.store.update(TABLE_ACCOUNTS, 2, {"success_count": 99})
    assert (await pool.select_account("u1", capability)).id == 1
    assert pool.cache.stats()["hits"] >= 1

    await pool.record_outcome(1, False, 5)
    assert not pool.cache.has(user_accounts_key("u1"))
    assert (await pool.select_account("u1", capability)).id == 2


@pytest.mark.asyncio
async def test_health_changes_invalidate_owner_accounts():
    pool = await make_pool(make_account(1, success_count=5), make_account(2))
    capability = MESSAGES_CAPABILITY
    await pool.select_account("u1", capability)

    await pool.set_health(1, HEALTH_UNHEALTHY)
    assert not pool.cache.has(user_accounts_key("u1"))
    assert (await pool.select_account("u1", capability)).id == 2

    await pool.reset_health(1)
    assert (await pool.select_account("u1", capability)).id == 1
