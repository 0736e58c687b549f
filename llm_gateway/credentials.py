"""OAuth token lifecycle and live health checks for upstream accounts."""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx

from llm_gateway.account_pool import CredentialPool
from llm_gateway.models import (
    HEALTH_HEALTHY,
    HEALTH_UNHEALTHY,
    ApiKeyCredential,
    Credential,
    OAuthCredential,
    UpstreamAccount,
    mask_secret,
    now_ms,
)
from llm_gateway.upstream import OAUTH_USER_AGENT, build_auth_headers

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
DEFAULT_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
OAUTH_HELLO_URL = "https://console.anthropic.com/v1/oauth/hello"
HEALTH_PROBE_MODEL = "claude-3-haiku-20240307"


@dataclass
class TokenResult:
    success: bool
    refreshed: bool = False
    credential: Optional[Credential] = None
    status_code: Optional[int] = None
    body: str = ""
    error: Optional[str] = None


@dataclass
class HealthResult:
    healthy: bool
    reason: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "healthy": self.healthy,
            "reason": self.reason,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
        }


@dataclass
class RefreshReport:
    account_id: int
    success: bool
    refreshed: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "account_id": self.account_id,
            "success": self.success,
            "refreshed": self.refreshed,
            "error": self.error,
        }


class CredentialLifecycleManager:
    """Keeps OAuth credentials fresh and probes accounts for health.

    Refreshes for one account are serialized; a caller that waited on a
    refresh another caller just completed gets the new credential without
    a second round trip to the token endpoint.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        pool: CredentialPool,
        token_url: str = DEFAULT_TOKEN_URL,
        client_id: str = DEFAULT_CLIENT_ID,
        refresh_margin_seconds: int = 3600,
        refresh_interval_seconds: int = 1800,
        clock: Callable[[], int] = now_ms,
    ):
        self.http_client = http_client
        self.pool = pool
        self.token_url = token_url
        self.client_id = client_id
        self.refresh_margin_seconds = refresh_margin_seconds
        self.refresh_interval_seconds = refresh_interval_seconds
        self._clock = clock
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._refresh_all_guard = asyncio.Lock()
        self._auto_refresh_task: Optional[asyncio.Task] = None

    def is_expiring_soon(
        self, credential: OAuthCredential, at_ms: Optional[int] = None
    ) -> bool:
        current = self._clock() if at_ms is None else at_ms
        return current + self.refresh_margin_seconds * 1000 >= credential.expires_at_ms

    def is_expired(self, credential: OAuthCredential, at_ms: Optional[int] = None) -> bool:
        current = self._clock() if at_ms is None else at_ms
        return current >= credential.expires_at_ms

    def needs_refresh(self, credential: OAuthCredential) -> bool:
        return self.is_expired(credential) or self.is_expiring_soon(credential)

    async def ensure_valid_token(
        self, account: UpstreamAccount, force_refresh: bool = False
    ) -> TokenResult:
        credential = account.credential
        if isinstance(credential, ApiKeyCredential):
            return TokenResult(success=True, credential=credential)
        if not isinstance(credential, OAuthCredential):
            raise TypeError(f"Unsupported credential type: {type(credential).__name__}")

        if not force_refresh and not self.needs_refresh(credential):
            return TokenResult(success=True, credential=credential)
        return await self.refresh(account)

    async def refresh(self, account: UpstreamAccount) -> TokenResult:
        if not isinstance(account.credential, OAuthCredential):
            raise TypeError(f"Account {account.id} does not use OAuth")

        async with self._locks[account.id]:
            latest = await self.pool.get_account(account.id) or account
            if (
                isinstance(latest.credential, OAuthCredential)
                and latest.credential != account.credential
                and not self.needs_refresh(latest.credential)
            ):
                return TokenResult(success=True, credential=latest.credential)
            return await self._refresh_locked(latest)

    async def _refresh_locked(self, account: UpstreamAccount) -> TokenResult:
        credential = account.credential
        if not isinstance(credential, OAuthCredential):
            raise TypeError(f"Account {account.id} does not use OAuth")

        logger.info(
            "Refreshing OAuth token for account %s (token=%s)",
            account.id,
            mask_secret(credential.access_token),
        )
        try:
            response = await self.http_client.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": self.client_id,
                },
                headers={"accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("OAuth refresh request failed for account %s: %s", account.id, exc)
            return TokenResult(success=False, error=f"Refresh request failed: {exc}")

        if response.status_code < 200 or response.status_code >= 300:
            logger.warning(
                "OAuth refresh rejected for account %s (status=%s)",
                account.id,
                response.status_code,
            )
            return TokenResult(
                success=False,
                status_code=response.status_code,
                body=response.text,
                error=f"HTTP {response.status_code}",
            )

        try:
            payload = response.json()
            access_token = str(payload["access_token"])
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            return TokenResult(
                success=False,
                status_code=response.status_code,
                body=response.text,
                error=f"Malformed token response: {exc}",
            )

        # Expiry must move forward even if the provider answers with a stale lifetime.
        expires_at_ms = max(
            self._clock() + expires_in * 1000, credential.expires_at_ms + 1
        )
        scope = payload.get("scope")
        refreshed = OAuthCredential(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or credential.refresh_token),
            expires_at_ms=expires_at_ms,
            scopes=frozenset(scope.split()) if isinstance(scope, str) else credential.scopes,
        )
        await self.pool.update_credential(account.id, refreshed)
        logger.info(
            "Refreshed OAuth token for account %s (expires_at=%s)",
            account.id,
            expires_at_ms,
        )
        return TokenResult(
            success=True,
            refreshed=True,
            credential=refreshed,
            status_code=response.status_code,
        )

    async def health_check(self, account: UpstreamAccount) -> HealthResult:
        started = time.monotonic()
        result = await self._probe(account)
        result.response_time_ms = int((time.monotonic() - started) * 1000)

        await self.pool.set_health(
            account.id, HEALTH_HEALTHY if result.healthy else HEALTH_UNHEALTHY
        )
        if not result.healthy:
            logger.warning(
                "Health check failed for account %s: %s", account.id, result.reason
            )
        return result

    async def _probe(self, account: UpstreamAccount) -> HealthResult:
        credential = account.credential
        try:
            if isinstance(credential, OAuthCredential):
                token = await self.ensure_valid_token(account)
                if not token.success or not isinstance(token.credential, OAuthCredential):
                    return HealthResult(
                        healthy=False,
                        reason=f"Token refresh failed: {token.error}",
                        status_code=token.status_code,
                    )
                response = await self.http_client.get(
                    OAUTH_HELLO_URL,
                    headers={
                        "authorization": f"Bearer {token.credential.access_token}",
                        "accept": "application/json, text/plain, */*",
                        "user-agent": OAUTH_USER_AGENT,
                    },
                )
            elif isinstance(credential, ApiKeyCredential):
                response = await self.http_client.post(
                    f"{credential.base_url}/v1/messages",
                    headers=build_auth_headers(credential, stream=False),
                    json={
                        "model": HEALTH_PROBE_MODEL,
                        "max_tokens": 5,
                        "messages": [{"role": "user", "content": "ping"}],
                    },
                )
            else:
                raise TypeError(
                    f"Unsupported credential type: {type(credential).__name__}"
                )
        except httpx.HTTPError as exc:
            return HealthResult(healthy=False, reason=f"Network error: {exc}")

        if 200 <= response.status_code < 300:
            return HealthResult(healthy=True, status_code=response.status_code)
        if response.status_code == 401:
            reason = "Credential rejected"
        elif response.status_code == 403:
            reason = "Credential lacks permission"
        else:
            reason = f"HTTP {response.status_code}"
        return HealthResult(healthy=False, reason=reason, status_code=response.status_code)

    async def health_check_all(self) -> Dict[int, HealthResult]:
        accounts = await self.pool.list_active()
        results = await asyncio.gather(
            *(self.health_check(account) for account in accounts)
        )
        return {account.id: result for account, result in zip(accounts, results)}

    async def refresh_all(self) -> List[RefreshReport]:
        if self._refresh_all_guard.locked():
            logger.info("OAuth refresh already running, skipping")
            return []

        async with self._refresh_all_guard:
            reports = []
            for account in await self.pool.list_active():
                if not isinstance(account.credential, OAuthCredential):
                    continue
                result = await self.ensure_valid_token(account)
                if not result.success:
                    await self.pool.set_health(account.id, HEALTH_UNHEALTHY)
                reports.append(
                    RefreshReport(
                        account_id=account.id,
                        success=result.success,
                        refreshed=result.refreshed,
                        error=result.error,
                    )
                )

        refreshed = sum(1 for report in reports if report.refreshed)
        failed = sum(1 for report in reports if not report.success)
        if reports:
            logger.info(
                "OAuth refresh pass: %d checked, %d refreshed, %d failed",
                len(reports),
                refreshed,
                failed,
            )
        return reports

    async def _auto_refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_seconds)
            try:
                await self.refresh_all()
            except Exception:
                logger.exception("Scheduled OAuth refresh pass failed")

    def start_auto_refresh(self) -> None:
        if self._auto_refresh_task is not None:
            return
        self._auto_refresh_task = asyncio.create_task(
            self._auto_refresh_loop(), name="oauth-auto-refresh"
        )
        logger.info(
            "OAuth auto refresh started (interval=%ss)", self.refresh_interval_seconds
        )

    async def stop_auto_refresh(self) -> None:
        task = self._auto_refresh_task
        if task is None:
            return
        self._auto_refresh_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
