"""Configuration management for the LLM gateway."""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from dotenv import load_dotenv

from llm_gateway.models import (
    DEFAULT_ANTHROPIC_BASE_URL,
    PERMISSION_MESSAGES,
    ApiKeyPrincipal,
    UpstreamAccount,
    hash_api_key,
)
from llm_gateway.store import TABLE_ACCOUNTS, TABLE_API_KEYS, DuplicateRecordError, Store

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    port: int = 8000
    host: str = "0.0.0.0"
    log_level: str = "INFO"
    anthropic_base_url: str = DEFAULT_ANTHROPIC_BASE_URL
    oauth_token_url: str = "https://console.anthropic.com/v1/oauth/token"
    oauth_client_id: str = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
    oauth_refresh_margin_seconds: int = 3600
    oauth_refresh_interval_seconds: int = 1800
    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 300.0
    database_path: str = ""
    seed_file: str = ""
    usage_queue_size: int = 1000
    usage_batch_size: int = 100
    cache_sweep_interval_seconds: float = 300.0
    stats_cache_ttl_seconds: float = 300.0
    admin_token: str = ""
    auto_refresh_enabled: bool = True

    def __post_init__(self):
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        if not 0 < self.port < 65536:
            raise ValueError("PORT must be between 1 and 65535")
        if self.oauth_refresh_margin_seconds < 0:
            raise ValueError("OAUTH_REFRESH_MARGIN_SECONDS must not be negative")
        for name in (
            "oauth_refresh_interval_seconds",
            "upstream_connect_timeout",
            "upstream_read_timeout",
            "usage_queue_size",
            "usage_batch_size",
            "cache_sweep_interval_seconds",
            "stats_cache_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive")
        self.anthropic_base_url = self.anthropic_base_url.rstrip("/")


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If environment variables are missing or invalid
    """
    if use_dotenv:
        load_dotenv()

    return Config(
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        anthropic_base_url=os.getenv("ANTHROPIC_BASE_URL", DEFAULT_ANTHROPIC_BASE_URL),
        oauth_token_url=os.getenv(
            "OAUTH_TOKEN_URL", "https://console.anthropic.com/v1/oauth/token"
        ),
        oauth_client_id=os.getenv(
            "OAUTH_CLIENT_ID", "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
        ),
        oauth_refresh_margin_seconds=int(
            os.getenv("OAUTH_REFRESH_MARGIN_SECONDS", "3600")
        ),
        oauth_refresh_interval_seconds=int(
            os.getenv("OAUTH_REFRESH_INTERVAL_SECONDS", "1800")
        ),
        upstream_connect_timeout=float(os.getenv("UPSTREAM_CONNECT_TIMEOUT", "10")),
        upstream_read_timeout=float(os.getenv("UPSTREAM_READ_TIMEOUT", "300")),
        database_path=os.getenv("DATABASE_PATH", ""),
        seed_file=os.getenv("SEED_FILE", ""),
        usage_queue_size=int(os.getenv("USAGE_QUEUE_SIZE", "1000")),
        usage_batch_size=int(os.getenv("USAGE_BATCH_SIZE", "100")),
        cache_sweep_interval_seconds=float(
            os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", "300")
        ),
        stats_cache_ttl_seconds=float(os.getenv("STATS_CACHE_TTL_SECONDS", "300")),
        admin_token=os.getenv("ADMIN_TOKEN", ""),
        auto_refresh_enabled=_env_bool("AUTO_REFRESH_ENABLED", True),
    )


@dataclass
class Seed:
    """Accounts and gateway keys to load into an empty store at startup."""

    accounts: List[UpstreamAccount] = field(default_factory=list)
    api_keys: List[ApiKeyPrincipal] = field(default_factory=list)


def _parse_api_key(index: int, data: Dict[str, Any]) -> ApiKeyPrincipal:
    row = dict(data)
    row.setdefault("id", index)
    plaintext = row.pop("key", None)
    if plaintext:
        row["key_hash"] = hash_api_key(str(plaintext))
    if not row.get("key_hash"):
        raise ValueError(f"api_keys[{index - 1}] needs either key or key_hash")
    row.setdefault("permissions", [PERMISSION_MESSAGES])
    return ApiKeyPrincipal.from_row(row)


def load_seed(path: str) -> Seed:
    """Read ``{"accounts": [...], "api_keys": [...]}``.

    API keys may be given as plaintext ``key`` (hashed here) or ``key_hash``.
    Rows without an ``id`` are numbered by position.
    """
    with open(path, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError("Seed file must contain a JSON object")

    accounts = []
    for index, item in enumerate(data.get("accounts") or [], start=1):
        row = dict(item)
        row.setdefault("id", index)
        try:
            accounts.append(UpstreamAccount.from_row(row))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"accounts[{index - 1}] is invalid: {exc}") from exc

    api_keys = [
        _parse_api_key(index, item)
        for index, item in enumerate(data.get("api_keys") or [], start=1)
    ]
    return Seed(accounts=accounts, api_keys=api_keys)


async def apply_seed(store: Store, seed: Seed) -> int:
    """Insert seed rows, skipping any that already exist. Returns rows inserted."""
    inserted = 0
    for account in seed.accounts:
        if await store.exists(TABLE_ACCOUNTS, id=account.id):
            continue
        await store.create(TABLE_ACCOUNTS, account.to_row())
        inserted += 1
    for principal in seed.api_keys:
        try:
            await store.create(TABLE_API_KEYS, principal.to_row())
        except DuplicateRecordError:
            continue
        inserted += 1
    logger.info(
        "Seeded %d rows (%d accounts, %d api keys in seed)",
        inserted,
        len(seed.accounts),
        len(seed.api_keys),
    )
    return inserted
