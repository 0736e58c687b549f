"""FastAPI application for the LLM upstream gateway."""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from starlette.responses import JSONResponse, Response

from llm_gateway.account_pool import CredentialPool
from llm_gateway.admin import admin_router
from llm_gateway.auth import ApiKeyAuthenticator
from llm_gateway.cache import CacheSet
from llm_gateway.config import Config, apply_seed, load_config, load_seed
from llm_gateway.credentials import CredentialLifecycleManager
from llm_gateway.errors import GatewayError, InternalError
from llm_gateway.log import configure_logging
from llm_gateway.models import ApiKeyPrincipal
from llm_gateway.proxy import StreamProxy, handle_messages
from llm_gateway.sqlite_store import SqliteStore
from llm_gateway.store import MemoryStore, Store
from llm_gateway.usage import UsageMeter, UsageWriteQueue

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything one gateway instance owns, built and torn down by the lifespan."""

    config: Config
    http_client: httpx.AsyncClient
    store: Store
    caches: CacheSet
    pool: CredentialPool
    lifecycle: CredentialLifecycleManager
    meter: UsageMeter
    usage_queue: UsageWriteQueue
    proxy: StreamProxy
    authenticator: ApiKeyAuthenticator

    async def start(self) -> None:
        self.caches.start()
        self.usage_queue.start()
        if self.config.auto_refresh_enabled:
            self.lifecycle.start_auto_refresh()

    async def stop(self) -> None:
        await self.lifecycle.stop_auto_refresh()
        await self.usage_queue.close()
        await self.caches.stop()
        await self.store.close()
        await self.http_client.aclose()


def build_services(
    config: Config,
    http_client: Optional[httpx.AsyncClient] = None,
    store: Optional[Store] = None,
) -> Services:
    if http_client is None:
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                config.upstream_connect_timeout,
                read=config.upstream_read_timeout,
                write=30.0,
            ),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
    if store is None:
        store = SqliteStore(config.database_path) if config.database_path else MemoryStore()

    caches = CacheSet.create(
        sweep_interval_seconds=config.cache_sweep_interval_seconds,
        stats_ttl_seconds=config.stats_cache_ttl_seconds,
    )
    pool = CredentialPool(store, caches.accounts)
    lifecycle = CredentialLifecycleManager(
        http_client,
        pool,
        token_url=config.oauth_token_url,
        client_id=config.oauth_client_id,
        refresh_margin_seconds=config.oauth_refresh_margin_seconds,
        refresh_interval_seconds=config.oauth_refresh_interval_seconds,
    )
    meter = UsageMeter(store, caches.usage_stats, batch_size=config.usage_batch_size)
    usage_queue = UsageWriteQueue(meter, queue_size=config.usage_queue_size)
    proxy = StreamProxy(
        http_client,
        pool,
        lifecycle,
        usage_queue,
        oauth_base_url=config.anthropic_base_url,
    )
    return Services(
        config=config,
        http_client=http_client,
        store=store,
        caches=caches,
        pool=pool,
        lifecycle=lifecycle,
        meter=meter,
        usage_queue=usage_queue,
        proxy=proxy,
        authenticator=ApiKeyAuthenticator(store, caches.api_keys),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    configure_logging(config.log_level)

    services = build_services(config)
    if config.seed_file:
        await apply_seed(services.store, load_seed(config.seed_file))
    await services.start()
    app.state.services = services

    status = await services.pool.get_status()
    logger.info(
        "LLM gateway started with %d upstream accounts (store=%s)",
        status["total_accounts"],
        type(services.store).__name__,
    )

    yield

    await services.stop()
    logger.info("LLM gateway stopped")


app = FastAPI(title="LLM Upstream Gateway", lifespan=lifespan)

app.include_router(admin_router)


@app.middleware("http")
async def assign_request_id(request: Request, call_next) -> Response:
    request.state.request_id = uuid.uuid4().hex
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.request_id
    return response


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("Request failed with %s: %s", exc.error_type, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    error = InternalError("Internal server error")
    response = JSONResponse(status_code=error.status_code, content=error.to_dict())
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        response.headers["x-request-id"] = request_id
    return response


async def require_principal(request: Request) -> ApiKeyPrincipal:
    return await request.app.state.services.authenticator.authenticate_request(request)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    status = await request.app.state.services.pool.get_status()
    return {
        "service": "LLM Upstream Gateway",
        "status": "running",
        "accounts_available": status["available_accounts"],
        "total_accounts": status["total_accounts"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with upstream pool summary."""
    services = request.app.state.services
    status = await services.pool.get_status()
    return {
        "status": "healthy",
        "accounts_available": status["available_accounts"],
        "total_accounts": status["total_accounts"],
        "unhealthy_accounts": status["unhealthy_accounts"],
        "usage_queue_depth": services.usage_queue.depth,
    }


@app.post("/v1/messages")
async def messages(
    request: Request, principal: ApiKeyPrincipal = Depends(require_principal)
) -> Response:
    """Anthropic Messages endpoint served from the upstream account pool."""
    return await handle_messages(request, principal, request.app.state.services.proxy)


def run() -> None:
    import uvicorn

    config = load_config()
    uvicorn.run(
        "llm_gateway.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    run()
