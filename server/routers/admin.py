"""Administrative routes: cache maintenance and account suspension."""

from typing import List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from core.cache import CacheService
from core.container import container
from core.logging import get_logger
from middleware.auth import require_role
from middleware.cache import invalidate_after
from services.user_auth import UserAuthService

logger = get_logger(__name__)
router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_role("admin"))],
)


class InvalidateRequest(BaseModel):
    prefixes: List[str] = Field(min_length=1)


def get_cache() -> CacheService:
    return container.cache()


def get_user_auth_service() -> UserAuthService:
    return container.user_auth_service()


@router.get("/cache/stats")
async def cache_stats(cache: CacheService = Depends(get_cache)):
    return {"success": True, "data": cache.get_stats()}


@router.post("/cache/cleanup")
async def cache_cleanup(cache: CacheService = Depends(get_cache)):
    removed = cache.cleanup()
    return {"success": True, "data": {"removed": removed}}


@router.post("/cache/invalidate")
async def cache_invalidate(
    body: InvalidateRequest,
    request: Request,
    cache: CacheService = Depends(get_cache)
):
    removed = invalidate_after(cache, request, body.prefixes)
    return {"success": True, "data": {"removed": removed}}


@router.delete("/cache")
async def cache_clear(cache: CacheService = Depends(get_cache)):
    cache.clear()
    return {"success": True}


@router.post("/users/{user_id}/suspend")
async def suspend_user(
    user_id: str,
    user_auth: UserAuthService = Depends(get_user_auth_service)
):
    """Suspend an account; its refresh tokens stop working immediately."""
    revoked = await user_auth.suspend_user(user_id)
    logger.info("User suspended", user_id=user_id, revoked_sessions=revoked)
    return {"success": True, "data": {"revoked": revoked}}
