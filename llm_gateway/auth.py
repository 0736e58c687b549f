"""Resolution of inbound gateway API keys to principals."""

import logging
from typing import Optional

from starlette.requests import Request

from llm_gateway.cache import TTLCache, api_key_key
from llm_gateway.errors import AuthenticationError
from llm_gateway.models import ApiKeyPrincipal, hash_api_key, mask_secret
from llm_gateway.store import TABLE_API_KEYS, Store

logger = logging.getLogger(__name__)


def extract_api_key(request: Request) -> Optional[str]:
    """Return the caller's key from ``Authorization: Bearer`` or ``x-api-key``."""
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    api_key = request.headers.get("x-api-key", "").strip()
    return api_key or None


class ApiKeyAuthenticator:
    def __init__(self, store: Store, cache: TTLCache):
        self.store = store
        self.cache = cache

    async def lookup(self, key_hash: str) -> Optional[ApiKeyPrincipal]:
        cached = self.cache.get(api_key_key(key_hash))
        if cached is not None:
            return cached

        row = await self.store.find_one(TABLE_API_KEYS, key_hash=key_hash)
        if row is None:
            return None
        principal = ApiKeyPrincipal.from_row(row)
        self.cache.set(api_key_key(key_hash), principal)
        return principal

    def invalidate(self, key_hash: str) -> None:
        self.cache.delete(api_key_key(key_hash))

    async def authenticate(self, raw_key: Optional[str]) -> ApiKeyPrincipal:
        if not raw_key:
            raise AuthenticationError("Missing API key")

        principal = await self.lookup(hash_api_key(raw_key))
        if principal is None:
            logger.info("Rejected unknown API key %s", mask_secret(raw_key))
            raise AuthenticationError("Invalid API key")
        if not principal.is_active:
            raise AuthenticationError("API key is disabled")
        if principal.is_expired():
            raise AuthenticationError("API key has expired")
        return principal

    async def authenticate_request(self, request: Request) -> ApiKeyPrincipal:
        return await self.authenticate(extract_api_key(request))
