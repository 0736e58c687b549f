"""Upstream account pool: selection, failover and outcome counters."""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from llm_gateway.cache import TTLCache, account_key, user_accounts_key
from llm_gateway.models import (
    HEALTH_UNHEALTHY,
    HEALTH_UNKNOWN,
    CapabilityFilter,
    Credential,
    UpstreamAccount,
    credential_to_dict,
    now_ms,
    utcnow,
)
from llm_gateway.store import TABLE_ACCOUNTS, Store

logger = logging.getLogger(__name__)


def _selection_order(account: UpstreamAccount) -> Tuple[int, int, Tuple[int, float], int]:
    if account.last_used_at is not None:
        recency = (0, -account.last_used_at.timestamp())
    else:
        recency = (1, 0.0)
    return (-account.success_count, account.request_count, recency, -account.priority)


def is_selectable(
    account: UpstreamAccount, capability: CapabilityFilter, at_ms: Optional[int] = None
) -> bool:
    if not account.is_active or account.health_status == HEALTH_UNHEALTHY:
        return False
    if not capability.matches(account):
        return False
    return not account.is_oauth_expired(at_ms)


class CredentialPool:
    """Manages the owner-scoped pool of upstream accounts."""

    def __init__(self, store: Store, cache: TTLCache):
        self.store = store
        self.cache = cache
        self._lock: asyncio.Lock = asyncio.Lock()

    async def _load_accounts(self, owner_id: Optional[str] = None) -> List[UpstreamAccount]:
        if owner_id is None:
            rows = await self.store.find_many(TABLE_ACCOUNTS)
        else:
            rows = await self.store.find_many(TABLE_ACCOUNTS, owner_id=owner_id)
        return [UpstreamAccount.from_row(row) for row in rows]

    async def get_account(self, account_id: int) -> Optional[UpstreamAccount]:
        cached = self.cache.get(account_key(account_id))
        if cached is not None:
            return cached

        row = await self.store.find_one(TABLE_ACCOUNTS, id=account_id)
        if row is None:
            return None
        account = UpstreamAccount.from_row(row)
        self.cache.set(account_key(account_id), account)
        return account

    async def _owner_accounts(self, owner_id: str) -> List[UpstreamAccount]:
        key = user_accounts_key(owner_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        accounts = await self._load_accounts(owner_id)
        self.cache.set(key, accounts)
        return accounts

    def invalidate(self, account_id: int, owner_id: Optional[str] = None) -> None:
        self.cache.delete(account_key(account_id))
        if owner_id is not None:
            self.cache.delete(user_accounts_key(owner_id))

    async def select_account(
        self,
        owner_id: str,
        capability: CapabilityFilter,
        exclude: Iterable[int] = (),
    ) -> Optional[UpstreamAccount]:
        excluded = set(exclude)
        current = now_ms()
        candidates = [
            account
            for account in await self._owner_accounts(owner_id)
            if account.id not in excluded and is_selectable(account, capability, current)
        ]
        if not candidates:
            return None

        candidates.sort(key=_selection_order)
        return candidates[0]

    async def mark_failed_and_select_alternative(
        self,
        bad_id: int,
        owner_id: str,
        capability: CapabilityFilter,
        exclude: Iterable[int] = (),
    ) -> Optional[UpstreamAccount]:
        async with self._lock:
            row = await self.store.find_one(TABLE_ACCOUNTS, id=bad_id)
            if row is not None:
                await self.store.update(
                    TABLE_ACCOUNTS,
                    bad_id,
                    {
                        "error_count": int(row.get("error_count", 0)) + 1,
                        "health_status": HEALTH_UNHEALTHY,
                    },
                )
            self.invalidate(bad_id, row.get("owner_id") if row is not None else owner_id)

        logger.warning("Marked upstream account %s unhealthy, selecting alternative", bad_id)
        excluded = set(exclude)
        excluded.add(bad_id)
        return await self.select_account(owner_id, capability, exclude=excluded)

    async def record_outcome(
        self, account_id: int, success: bool, response_time_ms: int
    ) -> None:
        async with self._lock:
            row = await self.store.find_one(TABLE_ACCOUNTS, id=account_id)
            if row is None:
                return

            changes: Dict[str, object] = {
                "request_count": int(row.get("request_count", 0)) + 1,
                "last_used_at": utcnow().isoformat(),
            }
            if success:
                changes["success_count"] = int(row.get("success_count", 0)) + 1
            await self.store.update(TABLE_ACCOUNTS, account_id, changes)
            self.invalidate(account_id, row.get("owner_id"))

        logger.debug(
            "Recorded outcome for account %s (success=%s, %d ms)",
            account_id,
            success,
            response_time_ms,
        )

    async def update_credential(self, account_id: int, credential: Credential) -> None:
        """Persist a replaced credential without touching the counters."""
        async with self._lock:
            row = await self.store.update(
                TABLE_ACCOUNTS,
                account_id,
                {"credential": credential_to_dict(credential)},
            )
            self.invalidate(account_id, row.get("owner_id") if row else None)

    async def set_health(self, account_id: int, health_status: str) -> None:
        async with self._lock:
            row = await self.store.update(
                TABLE_ACCOUNTS,
                account_id,
                {"health_status": health_status, "last_health_check": utcnow().isoformat()},
            )
            self.invalidate(account_id, row.get("owner_id") if row else None)

    async def reset_health(self, account_id: Optional[int] = None) -> int:
        async with self._lock:
            if account_id is None:
                rows = await self.store.find_many(
                    TABLE_ACCOUNTS, health_status=HEALTH_UNHEALTHY
                )
            else:
                row = await self.store.find_one(TABLE_ACCOUNTS, id=account_id)
                rows = [row] if row is not None else []

            for row in rows:
                await self.store.update(
                    TABLE_ACCOUNTS, row["id"], {"health_status": HEALTH_UNKNOWN}
                )
                self.invalidate(row["id"], row.get("owner_id"))
        return len(rows)

    async def list_active(self) -> List[UpstreamAccount]:
        return [account for account in await self._load_accounts() if account.is_active]

    async def get_status(self, owner_id: Optional[str] = None) -> Dict[str, object]:
        accounts = await self._load_accounts(owner_id)
        current = now_ms()
        available = 0
        unhealthy = 0
        for account in accounts:
            if account.health_status == HEALTH_UNHEALTHY:
                unhealthy += 1
            if account.is_active and account.health_status != HEALTH_UNHEALTHY:
                if not account.is_oauth_expired(current):
                    available += 1

        return {
            "total_accounts": len(accounts),
            "available_accounts": available,
            "unhealthy_accounts": unhealthy,
            "accounts": [self._format_account_status(a) for a in accounts],
        }

    async def get_account_status(self, account_id: int) -> Optional[Dict[str, object]]:
        row = await self.store.find_one(TABLE_ACCOUNTS, id=account_id)
        if row is None:
            return None
        return self._format_account_status(UpstreamAccount.from_row(row))

    def _format_account_status(self, account: UpstreamAccount) -> Dict[str, object]:
        return {
            "id": account.id,
            "owner_id": account.owner_id,
            "name": account.name,
            "provider": account.provider,
            "auth_kind": account.auth_kind,
            "credential_prefix": account.credential_prefix(),
            "is_active": account.is_active,
            "priority": account.priority,
            "health_status": account.health_status,
            "request_count": account.request_count,
            "success_count": account.success_count,
            "error_count": account.error_count,
            "last_used_at": account.last_used_at,
            "last_health_check": account.last_health_check,
            "oauth_expires_at": account.oauth_expires_at,
        }
