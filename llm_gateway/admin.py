"""Admin endpoints for pool status, health and usage statistics."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from llm_gateway.models import OAuthCredential, utcnow


def require_admin(request: Request) -> None:
    """Bearer ``ADMIN_TOKEN`` guard. The admin surface is hidden when no token is set."""
    token = request.app.state.services.config.admin_token
    if not token:
        raise HTTPException(status_code=404, detail="Not Found")

    authorization = request.headers.get("authorization", "")
    scheme, _, provided = authorization.partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(
        provided.strip(), token
    ):
        raise HTTPException(status_code=401, detail="Invalid admin token")


admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)]
)


async def _optional_json(request: Request) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


def _optional_account_id(body: Dict[str, Any]) -> Optional[int]:
    account_id = body.get("account_id")
    if account_id is None:
        return None
    if not isinstance(account_id, int) or isinstance(account_id, bool):
        raise HTTPException(status_code=400, detail="account_id must be an integer")
    return account_id


def _parse_time(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be an ISO 8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@admin_router.get("/status")
async def get_all_status(
    request: Request, owner_id: Optional[str] = None
) -> Dict[str, object]:
    """Get status of every upstream account, optionally for one owner."""
    pool = request.app.state.services.pool
    return await pool.get_status(owner_id)


@admin_router.get("/status/{account_id}")
async def get_account_status(request: Request, account_id: int) -> Dict[str, object]:
    pool = request.app.state.services.pool
    status = await pool.get_account_status(account_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return status


@admin_router.post("/accounts/{account_id}/health-check")
async def check_account(request: Request, account_id: int) -> Dict[str, object]:
    services = request.app.state.services
    account = await services.pool.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    result = await services.lifecycle.health_check(account)
    return {"account_id": account_id, **result.to_dict()}


@admin_router.post("/health-check")
async def check_all_accounts(request: Request) -> Dict[str, object]:
    """Probe every active account concurrently."""
    results = await request.app.state.services.lifecycle.health_check_all()
    healthy = sum(1 for result in results.values() if result.healthy)
    return {
        "checked": len(results),
        "healthy": healthy,
        "unhealthy": len(results) - healthy,
        "results": {str(k): v.to_dict() for k, v in results.items()},
    }


@admin_router.post("/oauth/refresh")
async def refresh_tokens(request: Request) -> Dict[str, object]:
    """Force-refresh one OAuth account, or run the refresh pass over all of them."""
    services = request.app.state.services
    account_id = _optional_account_id(await _optional_json(request))

    if account_id is None:
        reports = await services.lifecycle.refresh_all()
        return {"reports": [report.to_dict() for report in reports]}

    account = await services.pool.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    if not isinstance(account.credential, OAuthCredential):
        raise HTTPException(
            status_code=400, detail=f"Account {account_id} does not use OAuth"
        )

    result = await services.lifecycle.ensure_valid_token(account, force_refresh=True)
    return {
        "account_id": account_id,
        "success": result.success,
        "refreshed": result.refreshed,
        "status_code": result.status_code,
        "error": result.error,
    }


@admin_router.post("/reset")
async def reset_health(request: Request) -> Dict[str, object]:
    """Clear the unhealthy mark on one account or on all of them."""
    pool = request.app.state.services.pool
    account_id = _optional_account_id(await _optional_json(request))
    reset = await pool.reset_health(account_id)
    return {"message": "Health status reset", "reset": reset}


@admin_router.get("/stats")
async def usage_stats(
    request: Request,
    owner_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> Dict[str, object]:
    """Usage summary for an owner; defaults to the last 30 days."""
    end_at = _parse_time(end, "end") or utcnow()
    start_at = _parse_time(start, "start") or end_at - timedelta(days=30)
    if start_at >= end_at:
        raise HTTPException(status_code=400, detail="start must be before end")

    summary = await request.app.state.services.meter.aggregate(
        owner_id, start_at, end_at
    )
    return {
        "owner_id": owner_id,
        "start": start_at.isoformat(),
        "end": end_at.isoformat(),
        **summary.to_dict(),
    }


@admin_router.get("/cache")
async def cache_stats(request: Request) -> Dict[str, object]:
    services = request.app.state.services
    return {
        "caches": services.caches.stats(),
        "usage_queue": services.usage_queue.stats(),
    }
