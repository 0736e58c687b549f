"""Data models for upstream accounts, gateway API keys and usage records."""

import hashlib
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Union

PROVIDER_ANTHROPIC = "anthropic"

AUTH_API_KEY = "api_key"
AUTH_OAUTH = "oauth"

HEALTH_HEALTHY = "healthy"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_UNKNOWN = "unknown"

PERMISSION_MESSAGES = "anthropic.messages"

DEFAULT_ANTHROPIC_BASE_URL = "https://api.anthropic.com"


def now_ms() -> int:
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_secret(value: str) -> str:
    if len(value) <= 11:
        return value[:3] + "..." if value else ""
    return f"{value[:8]}...{value[-3:]}"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ApiKeyCredential:
    """Static provider API key, sent as ``x-api-key``."""

    api_key: str
    base_url: str = DEFAULT_ANTHROPIC_BASE_URL


@dataclass(frozen=True)
class OAuthCredential:
    """OAuth token set, sent as a bearer token and refreshed before expiry."""

    access_token: str
    refresh_token: str
    expires_at_ms: int
    scopes: FrozenSet[str] = frozenset()


Credential = Union[ApiKeyCredential, OAuthCredential]


def auth_kind_of(credential: Credential) -> str:
    if isinstance(credential, ApiKeyCredential):
        return AUTH_API_KEY
    if isinstance(credential, OAuthCredential):
        return AUTH_OAUTH
    raise TypeError(f"Unsupported credential type: {type(credential).__name__}")


def credential_to_dict(credential: Credential) -> Dict[str, Any]:
    if isinstance(credential, ApiKeyCredential):
        return {
            "type": AUTH_API_KEY,
            "api_key": credential.api_key,
            "base_url": credential.base_url,
        }
    if isinstance(credential, OAuthCredential):
        return {
            "type": AUTH_OAUTH,
            "access_token": credential.access_token,
            "refresh_token": credential.refresh_token,
            "expires_at_ms": credential.expires_at_ms,
            "scopes": sorted(credential.scopes),
        }
    raise TypeError(f"Unsupported credential type: {type(credential).__name__}")


def credential_from_dict(data: Dict[str, Any]) -> Credential:
    kind = data.get("type")
    if kind == AUTH_API_KEY:
        return ApiKeyCredential(
            api_key=str(data["api_key"]),
            base_url=str(data.get("base_url") or DEFAULT_ANTHROPIC_BASE_URL).rstrip(
                "/"
            ),
        )
    if kind == AUTH_OAUTH:
        return OAuthCredential(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
            expires_at_ms=int(data["expires_at_ms"]),
            scopes=frozenset(data.get("scopes") or ()),
        )
    raise ValueError(f"Unknown credential type: {kind!r}")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class UpstreamAccount:
    """A stored upstream credential set and its selection counters."""

    id: int
    owner_id: str
    credential: Credential
    name: str = ""
    provider: str = PROVIDER_ANTHROPIC
    is_active: bool = True
    priority: int = 1
    weight: int = 100
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    last_used_at: Optional[datetime] = None
    health_status: str = HEALTH_UNKNOWN
    last_health_check: Optional[datetime] = None

    @property
    def auth_kind(self) -> str:
        return auth_kind_of(self.credential)

    @property
    def oauth_expires_at(self) -> Optional[int]:
        if isinstance(self.credential, OAuthCredential):
            return self.credential.expires_at_ms
        return None

    def is_oauth_expired(self, at_ms: Optional[int] = None) -> bool:
        expires_at = self.oauth_expires_at
        if expires_at is None:
            return False
        current = at_ms if at_ms is not None else now_ms()
        return current >= expires_at

    def credential_prefix(self) -> str:
        if isinstance(self.credential, ApiKeyCredential):
            return mask_secret(self.credential.api_key)
        return mask_secret(self.credential.access_token)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "provider": self.provider,
            "credential": credential_to_dict(self.credential),
            "is_active": self.is_active,
            "priority": self.priority,
            "weight": self.weight,
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "last_used_at": _format_datetime(self.last_used_at),
            "health_status": self.health_status,
            "last_health_check": _format_datetime(self.last_health_check),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UpstreamAccount":
        return cls(
            id=int(row["id"]),
            owner_id=str(row["owner_id"]),
            name=str(row.get("name") or ""),
            provider=str(row.get("provider") or PROVIDER_ANTHROPIC),
            credential=credential_from_dict(row["credential"]),
            is_active=bool(row.get("is_active", True)),
            priority=int(row.get("priority", 1)),
            weight=int(row.get("weight", 100)),
            request_count=int(row.get("request_count", 0)),
            success_count=int(row.get("success_count", 0)),
            error_count=int(row.get("error_count", 0)),
            last_used_at=_parse_datetime(row.get("last_used_at")),
            health_status=str(row.get("health_status") or HEALTH_UNKNOWN),
            last_health_check=_parse_datetime(row.get("last_health_check")),
        )

    def with_credential(self, credential: Credential) -> "UpstreamAccount":
        return replace(self, credential=credential)


@dataclass
class ApiKeyPrincipal:
    """A gateway API key and the owner it acts for."""

    id: int
    owner_id: str
    key_hash: str
    name: str = ""
    permissions: FrozenSet[str] = frozenset({PERMISSION_MESSAGES})
    is_active: bool = True
    expires_at: Optional[datetime] = None
    rate_limits: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        current = at or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return current > expires_at

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "key_hash": self.key_hash,
            "name": self.name,
            "permissions": sorted(self.permissions),
            "is_active": self.is_active,
            "expires_at": _format_datetime(self.expires_at),
            "rate_limits": dict(self.rate_limits),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ApiKeyPrincipal":
        return cls(
            id=int(row["id"]),
            owner_id=str(row["owner_id"]),
            key_hash=str(row["key_hash"]),
            name=str(row.get("name") or ""),
            permissions=frozenset(row.get("permissions") or ()),
            is_active=bool(row.get("is_active", True)),
            expires_at=_parse_datetime(row.get("expires_at")),
            rate_limits=dict(row.get("rate_limits") or {}),
        )


@dataclass(frozen=True)
class UsageRecord:
    """Append-only accounting entry for one completed or failed request."""

    request_id: str
    api_key_id: int
    owner_id: str
    model: Optional[str]
    status_code: int
    response_time_ms: int
    upstream_account_id: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    error_message: Optional[str] = None
    endpoint: str = "/v1/messages"
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "api_key_id": self.api_key_id,
            "owner_id": self.owner_id,
            "upstream_account_id": self.upstream_account_id,
            "model": self.model,
            "status_code": self.status_code,
            "response_time_ms": self.response_time_ms,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cost_usd": self.cost_usd,
            "error_message": self.error_message,
            "endpoint": self.endpoint,
            "user_agent": self.user_agent,
            "client_ip": self.client_ip,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageRecord":
        return cls(
            request_id=str(row["request_id"]),
            api_key_id=int(row["api_key_id"]),
            owner_id=str(row["owner_id"]),
            upstream_account_id=(
                int(row["upstream_account_id"])
                if row.get("upstream_account_id") is not None
                else None
            ),
            model=row.get("model"),
            status_code=int(row["status_code"]),
            response_time_ms=int(row.get("response_time_ms", 0)),
            input_tokens=int(row.get("input_tokens", 0)),
            output_tokens=int(row.get("output_tokens", 0)),
            cache_creation_tokens=int(row.get("cache_creation_tokens", 0)),
            cache_read_tokens=int(row.get("cache_read_tokens", 0)),
            cost_usd=float(row.get("cost_usd", 0.0)),
            error_message=row.get("error_message"),
            endpoint=str(row.get("endpoint") or "/v1/messages"),
            user_agent=row.get("user_agent"),
            client_ip=row.get("client_ip"),
            created_at=_parse_datetime(row["created_at"]) or utcnow(),
        )


@dataclass
class UsageSummary:
    """Aggregated usage for one owner over a time window."""

    total_requests: int = 0
    success_count: int = 0
    error_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost_usd: float = 0.0
    average_response_time_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_requests": self.total_requests,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "average_response_time_ms": self.average_response_time_ms,
        }


@dataclass(frozen=True)
class CapabilityFilter:
    """Which accounts may serve a request."""

    provider: str = PROVIDER_ANTHROPIC
    auth_kind: Optional[str] = None

    def matches(self, account: UpstreamAccount) -> bool:
        if account.provider != self.provider:
            return False
        return self.auth_kind is None or account.auth_kind == self.auth_kind


MESSAGES_CAPABILITY = CapabilityFilter()


def summarize_records(records: List[UsageRecord]) -> UsageSummary:
    summary = UsageSummary()
    total_latency = 0
    for record in records:
        summary.total_requests += 1
        if record.status_code < 400:
            summary.success_count += 1
        else:
            summary.error_count += 1
        summary.input_tokens += record.input_tokens
        summary.output_tokens += record.output_tokens
        summary.cache_creation_tokens += record.cache_creation_tokens
        summary.cache_read_tokens += record.cache_read_tokens
        summary.total_cost_usd += record.cost_usd
        total_latency += record.response_time_ms
    if summary.total_requests:
        summary.average_response_time_ms = total_latency / summary.total_requests
    return summary
