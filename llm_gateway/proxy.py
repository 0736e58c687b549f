"""Forwarding of /v1/messages to an upstream account, with one-shot failover."""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Protocol, Set, Tuple

import httpx
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse

from llm_gateway.credentials import TokenResult
from llm_gateway.errors import (
    CredentialExpired,
    NoAccountAvailable,
    PermissionDeniedError,
    UpstreamError,
    ValidationError,
)
from llm_gateway.models import (
    DEFAULT_ANTHROPIC_BASE_URL,
    MESSAGES_CAPABILITY,
    PERMISSION_MESSAGES,
    ApiKeyPrincipal,
    CapabilityFilter,
    UpstreamAccount,
    UsageRecord,
)
from llm_gateway.streaming import QueueChannel, StreamUsageTracker, relay_stream
from llm_gateway.upstream import build_upstream_request
from llm_gateway.usage import TokenUsage, build_usage_record

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

HOP_BY_HOP_HEADERS = frozenset(
    {
        "host",
        "connection",
        "keep-alive",
        "transfer-encoding",
        "te",
        "trailer",
        "upgrade",
        "proxy-authorization",
        "proxy-authenticate",
        "content-encoding",
        "content-length",
        "set-cookie",
    }
)


class AccountPool(Protocol):
    async def select_account(
        self, owner_id: str, capability: CapabilityFilter, exclude: Iterable[int] = ()
    ) -> Optional[UpstreamAccount]: ...

    async def mark_failed_and_select_alternative(
        self,
        bad_id: int,
        owner_id: str,
        capability: CapabilityFilter,
        exclude: Iterable[int] = (),
    ) -> Optional[UpstreamAccount]: ...

    async def record_outcome(
        self, account_id: int, success: bool, response_time_ms: int
    ) -> None: ...


class TokenManager(Protocol):
    async def ensure_valid_token(
        self, account: UpstreamAccount, force_refresh: bool = False
    ) -> TokenResult: ...


class UsageSink(Protocol):
    def submit(self, record: UsageRecord) -> bool: ...


@dataclass
class RequestContext:
    """Per-request facts carried into usage records."""

    request_id: str
    principal: ApiKeyPrincipal
    model: Optional[str] = None
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    endpoint: str = "/v1/messages"
    started: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _response_headers(response: httpx.Response, request_id: str) -> Dict[str, str]:
    headers = {
        k: v for k, v in response.headers.items() if k.lower() not in HOP_BY_HOP_HEADERS
    }
    headers["x-request-id"] = request_id
    return headers


async def _read_error_body(response: httpx.Response) -> str:
    try:
        await response.aread()
        return response.text
    finally:
        await response.aclose()


class StreamProxy:
    """Sends a Messages request upstream and relays the answer to the caller."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        pool: AccountPool,
        tokens: TokenManager,
        usage: UsageSink,
        oauth_base_url: str = DEFAULT_ANTHROPIC_BASE_URL,
        capability: CapabilityFilter = MESSAGES_CAPABILITY,
    ):
        self.http_client = http_client
        self.pool = pool
        self.tokens = tokens
        self.usage = usage
        self.oauth_base_url = oauth_base_url
        self.capability = capability

    def submit_usage(
        self,
        ctx: RequestContext,
        status_code: int,
        usage: Optional[TokenUsage] = None,
        account_id: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        record = build_usage_record(
            request_id=ctx.request_id,
            api_key_id=ctx.principal.id,
            owner_id=ctx.principal.owner_id,
            status_code=status_code,
            response_time_ms=ctx.elapsed_ms(),
            model=ctx.model,
            usage=usage,
            upstream_account_id=account_id,
            error_message=error_message,
            endpoint=ctx.endpoint,
            user_agent=ctx.user_agent,
            client_ip=ctx.client_ip,
        )
        self.usage.submit(record)

    async def _send_once(
        self, account: UpstreamAccount, body: Dict[str, Any], stream: bool
    ) -> httpx.Response:
        token = await self.tokens.ensure_valid_token(account)
        if not token.success or token.credential is None:
            raise CredentialExpired(account.id, token.error or "refresh failed")

        request = build_upstream_request(
            self.http_client,
            account.with_credential(token.credential),
            body,
            stream,
            self.oauth_base_url,
        )
        return await self.http_client.send(request, stream=stream)

    async def send_with_failover(
        self, ctx: RequestContext, body: Dict[str, Any], stream: bool
    ) -> Tuple[UpstreamAccount, httpx.Response]:
        """Return the serving account and its 2xx response.

        A 401 (or an OAuth credential that cannot be refreshed) on the first
        attempt marks the account unhealthy and retries once on another one.
        """
        owner_id = ctx.principal.owner_id
        visited: Set[int] = set()
        account = await self.pool.select_account(owner_id, self.capability)

        for attempt in range(1, MAX_ATTEMPTS + 1):
            if account is None:
                raise NoAccountAvailable()
            visited.add(account.id)

            try:
                response = await self._send_once(account, body, stream)
            except CredentialExpired as exc:
                reason = f"credential expired: {exc.reason}"
                if attempt == MAX_ATTEMPTS:
                    raise NoAccountAvailable(
                        "No upstream account with a valid credential"
                    ) from exc
            except httpx.HTTPError as exc:
                logger.error(
                    "Request error to upstream (account=%s, key=%s): %s",
                    account.id,
                    account.credential_prefix(),
                    exc,
                )
                await self.pool.record_outcome(account.id, False, ctx.elapsed_ms())
                raise UpstreamError(None, str(exc), account.id) from exc
            else:
                if response.is_success:
                    return account, response

                error_body = await _read_error_body(response)
                if response.status_code != 401 or attempt == MAX_ATTEMPTS:
                    logger.warning(
                        "Upstream returned %s (account=%s, key=%s, attempt=%s)",
                        response.status_code,
                        account.id,
                        account.credential_prefix(),
                        attempt,
                    )
                    await self.pool.record_outcome(account.id, False, ctx.elapsed_ms())
                    raise UpstreamError(response.status_code, error_body, account.id)
                reason = "HTTP 401"

            logger.warning(
                "Upstream account %s rejected (%s, key=%s), failing over",
                account.id,
                reason,
                account.credential_prefix(),
            )
            account = await self.pool.mark_failed_and_select_alternative(
                account.id, owner_id, self.capability, exclude=visited
            )

        raise NoAccountAvailable()

    async def forward(self, ctx: RequestContext, body: Dict[str, Any]) -> Response:
        account, response = await self.send_with_failover(ctx, body, stream=False)

        try:
            payload = response.json()
        except ValueError:
            payload = None
        usage = TokenUsage.from_response(payload) if isinstance(payload, dict) else None

        self.submit_usage(ctx, response.status_code, usage=usage, account_id=account.id)
        await self.pool.record_outcome(account.id, True, ctx.elapsed_ms())

        return Response(
            content=response.content,
            status_code=response.status_code,
            headers=_response_headers(response, ctx.request_id),
            media_type=response.headers.get("content-type", "application/json"),
        )

    async def forward_stream(
        self, ctx: RequestContext, body: Dict[str, Any]
    ) -> StreamingResponse:
        account, response = await self.send_with_failover(ctx, body, stream=True)
        status_code = response.status_code
        headers = _response_headers(response, ctx.request_id)
        headers.pop("content-type", None)
        headers["cache-control"] = "no-cache"
        headers["x-accel-buffering"] = "no"

        channel = QueueChannel()
        tracker = StreamUsageTracker(
            lambda usage: self.submit_usage(
                ctx, status_code, usage=usage, account_id=account.id
            )
        )

        async def produce() -> None:
            success = True
            try:
                stats = await relay_stream(response, channel, tracker)
                logger.debug(
                    "Stream %s relayed %d lines (%d bytes)",
                    ctx.request_id,
                    stats.lines,
                    stats.bytes_sent,
                )
            except httpx.HTTPError as exc:
                success = False
                logger.warning("Upstream stream %s broke: %s", ctx.request_id, exc)
            except Exception:
                success = False
                logger.exception("Relaying stream %s failed", ctx.request_id)
            finally:
                await channel.finish()
                if not tracker.reported:
                    self.submit_usage(
                        ctx,
                        status_code,
                        usage=tracker.usage,
                        account_id=account.id,
                        error_message="stream ended before usage was reported",
                    )
                await self.pool.record_outcome(account.id, success, ctx.elapsed_ms())

        producer = asyncio.create_task(produce(), name=f"relay-{ctx.request_id}")

        async def body_iterator():
            try:
                async for chunk in channel.iter_chunks():
                    yield chunk
            finally:
                channel.close()
                if not producer.done():
                    producer.cancel()

        return StreamingResponse(
            body_iterator(),
            status_code=status_code,
            headers=headers,
            media_type="text/event-stream",
        )

    async def handle(self, ctx: RequestContext, body: Dict[str, Any]) -> Response:
        stream = body.get("stream") is True
        try:
            if stream:
                return await self.forward_stream(ctx, body)
            return await self.forward(ctx, body)
        except (NoAccountAvailable, UpstreamError) as exc:
            self.submit_usage(
                ctx,
                exc.status_code,
                account_id=getattr(exc, "account_id", None),
                error_message=exc.message,
            )
            raise


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_messages_body(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    model = body.get("model")
    if not isinstance(model, str) or not model.strip():
        raise ValidationError("model is required")

    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("messages must be a non-empty array")
    for index, message in enumerate(messages):
        if not isinstance(message, dict) or message.get("role") not in (
            "user",
            "assistant",
        ):
            raise ValidationError(f"messages[{index}] must have role user or assistant")
        if "content" not in message:
            raise ValidationError(f"messages[{index}].content is required")

    max_tokens = body.get("max_tokens")
    if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens <= 0:
        raise ValidationError("max_tokens must be a positive integer")

    stream = body.get("stream")
    if stream is not None and not isinstance(stream, bool):
        raise ValidationError("stream must be a boolean")

    for name in ("temperature", "top_p"):
        value = body.get(name)
        if value is not None and (not _is_number(value) or not 0 <= value <= 1):
            raise ValidationError(f"{name} must be a number between 0 and 1")

    top_k = body.get("top_k")
    if top_k is not None and (
        not isinstance(top_k, int) or isinstance(top_k, bool) or top_k <= 0
    ):
        raise ValidationError("top_k must be a positive integer")

    stop_sequences = body.get("stop_sequences")
    if stop_sequences is not None and (
        not isinstance(stop_sequences, list)
        or not all(isinstance(item, str) for item in stop_sequences)
    ):
        raise ValidationError("stop_sequences must be an array of strings")

    return body


def client_ip_of(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def handle_messages(
    request: Request, principal: ApiKeyPrincipal, proxy: StreamProxy
) -> Response:
    """Validate an inbound Messages call and hand it to the proxy.

    Permission and body checks run before any upstream call or usage write.
    """
    if not principal.has_permission(PERMISSION_MESSAGES):
        raise PermissionDeniedError("API key lacks the anthropic.messages permission")

    raw = await request.body()
    try:
        body = json.loads(raw) if raw else None
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc
    body = validate_messages_body(body)

    request_id = getattr(request.state, "request_id", None) or uuid.uuid4().hex
    ctx = RequestContext(
        request_id=request_id,
        principal=principal,
        model=body["model"],
        user_agent=request.headers.get("user-agent"),
        client_ip=client_ip_of(request),
        endpoint=request.url.path,
    )
    return await proxy.handle(ctx, body)
