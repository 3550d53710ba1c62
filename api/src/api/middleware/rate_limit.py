"""Redis-backed hourly rate limiting for the public API."""

from __future__ import annotations

import logging
import time
from ipaddress import ip_address, ip_network

from fastapi import Request, Response
from fluentdesk.config import get_settings
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

_PRIVATE_NETWORKS = (
    ip_network("127.0.0.0/8"),
    ip_network("10.0.0.0/8"),
    ip_network("172.16.0.0/12"),
    ip_network("192.168.0.0/16"),
    ip_network("::1/128"),
    ip_network("fc00::/7"),
)

# Providers retry on 429, so webhooks are never throttled.
_EXEMPT_PATHS = {
    "/v1/webhooks/paddle",
    "/v1/webhooks/stripe",
}

# Tighter hourly ceilings for promo code guessing and checkout churn.
_ENDPOINT_RATE_LIMITS: dict[str, int] = {
    "/v1/promo-codes/validate": 60,
    "/v1/promo-codes/apply": 10,
    "/v1/user/subscription/checkout": 20,
    "/v1/user/subscription/test-activate": 10,
}

_WINDOW_SECONDS = 3600


def _is_private_host(host: str) -> bool:
    if host == "testclient":
        return True
    try:
        addr = ip_address(host)
    except ValueError:
        return False
    return any(addr in net for net in _PRIVATE_NETWORKS)


def _resolve_client_ip(request: Request) -> str:
    """Client address, trusting X-Forwarded-For only behind a private proxy."""
    remote_host = request.client.host if request.client else "unknown"
    if not _is_private_host(remote_host):
        return remote_host
    hops = [part.strip() for part in request.headers.get("x-forwarded-for", "").split(",")]
    valid_hops = []
    for hop in hops:
        try:
            ip_address(hop)
        except ValueError:
            continue
        valid_hops.append(hop)
    for hop in reversed(valid_hops):
        if not _is_private_host(hop):
            return hop
    return valid_hops[-1] if valid_hops else remote_host


def _limited() -> Response:
    return Response(
        content='{"detail":"Rate limit exceeded"}',
        status_code=429,
        media_type="application/json",
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    async def _get_redis_client(self, request: Request):
        redis_client = getattr(request.app.state, "_rate_limit_redis", None)
        if redis_client is None:
            import redis.asyncio as aioredis

            redis_client = aioredis.from_url(get_settings().redis_url)
            request.app.state._rate_limit_redis = redis_client
        return redis_client

    async def _over_limit(self, request: Request, key: str, limit: int) -> bool:
        r = await self._get_redis_client(request)
        bucket = f"{key}:{int(time.time() // _WINDOW_SECONDS)}"
        count = await r.incr(bucket)
        if count == 1:
            await r.expire(bucket, _WINDOW_SECONDS)
        return count > limit

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/v1/") or path in _EXEMPT_PATHS:
            return await call_next(request)
        client_ip = _resolve_client_ip(request)

        endpoint_limit = _ENDPOINT_RATE_LIMITS.get(path)
        if endpoint_limit and request.method == "POST":
            try:
                if await self._over_limit(
                    request, f"ratelimit:endpoint:{path}:{client_ip}", endpoint_limit
                ):
                    logger.info("Endpoint rate limit hit for %s on %s", client_ip, path)
                    return _limited()
            except Exception as e:
                logger.warning("Endpoint rate limit check failed: %s", e)

        hourly_limit = get_settings().rate_limit_per_hour
        if hourly_limit <= 0:
            return await call_next(request)
        try:
            if await self._over_limit(request, f"ratelimit:{client_ip}", hourly_limit):
                return _limited()
        except Exception as e:
            logger.warning("Rate limit check failed: %s", e)
        return await call_next(request)
