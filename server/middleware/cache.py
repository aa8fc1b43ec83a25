"""Read-through response caching for GET routes."""

import json
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Union

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from core.cache import CacheService
from core.cache_keys import request_key
from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)

KeyPattern = Union[str, Callable[[Request], str]]


def query_filters(request: Request) -> Dict[str, Any]:
    """Query params with repeated names kept as lists, in request order."""
    filters: Dict[str, Any] = {}
    for name in request.query_params.keys():
        values = request.query_params.getlist(name)
        filters[name] = values[0] if len(values) == 1 else values
    return filters


def default_key(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    return request_key(user_id, request.url.path, query_filters(request))


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serves cached JSON for GET requests and stores successful responses.

    Adds ``X-Cache: HIT`` or ``X-Cache: MISS``. Only 200 JSON responses whose
    body is not ``{"success": false, ...}`` are stored. Must sit inside the
    auth middleware so the key can be scoped to the user.
    """

    def __init__(
        self,
        app,
        prefixes: Sequence[str] = ("/api/",),
        exclude: Sequence[str] = ("/api/auth/", "/api/admin/"),
        ttl: Optional[float] = None,
        cache: Optional[CacheService] = None,
        key_builder: Callable[[Request], str] = default_key,
    ):
        super().__init__(app)
        self.prefixes = tuple(prefixes)
        self.exclude = tuple(exclude)
        self.ttl = ttl
        self._cache = cache
        self.key_builder = key_builder

    @property
    def cache(self) -> CacheService:
        if self._cache is not None:
            return self._cache
        return container.cache()

    def _applies(self, request: Request) -> bool:
        path = request.url.path
        return (
            request.method == "GET"
            and path.startswith(self.prefixes)
            and not path.startswith(self.exclude)
        )

    async def dispatch(self, request: Request, call_next):
        if not self._applies(request):
            return await call_next(request)

        key = self.key_builder(request)
        cached = self.cache.get(key)
        if cached is not None:
            return JSONResponse(content=cached, headers={"X-Cache": "HIT"})

        response = await call_next(request)
        if response.status_code != 200 or "application/json" not in response.headers.get("content-type", ""):
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        try:
            data = json.loads(body)
        except ValueError:
            data = None

        if data is not None and not (isinstance(data, dict) and data.get("success") is False):
            ttl = self.ttl if self.ttl is not None else container.settings().cache_response_ttl
            self.cache.set(key, data, ttl)

        headers = dict(response.headers)
        headers["X-Cache"] = "MISS"
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )


def invalidate_after(cache: CacheService, request: Request, patterns: Iterable[KeyPattern]) -> int:
    """Drop cache entries after a successful mutation.

    A callable pattern builds an exact key from the request and is deleted;
    a string pattern is treated as a key prefix.
    """
    removed = 0
    for pattern in patterns:
        if callable(pattern):
            removed += int(cache.delete(pattern(request)))
        else:
            removed += cache.delete_by_prefix(pattern)
    logger.debug("Cache invalidated after mutation", path=request.url.path, removed=removed)
    return removed
