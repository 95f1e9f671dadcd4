import os
import time
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from accessgate.core.errors import RateLimitError, app_error_handler
from accessgate.core.metrics import ratelimit_block_total, normalize_path
from accessgate.core.logging import get_request_id
from accessgate.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, build_rate_limit_config_from_env


# Routes where each request is a guess at a secret (PIN or reset token)
SENSITIVE_PREFIXES = ("/finance-pin/",)


@dataclass
class RoutePolicy:
    per_minute: int
    burst: int
    category: str


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting middleware (opt-in via env)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, env: Optional[dict] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config_from_env(env or os.environ)
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)
        if hasattr(app, "state"):
            setattr(app.state, "rate_limiter", self.limiter)

    def _policy_for_request(self, request: Request) -> Optional[RoutePolicy]:
        path = request.url.path
        method = request.method.upper()

        if path in {"/healthz", "/readyz", "/metrics"}:
            return None

        # Webhooks are authenticated by signature and arrive in provider bursts
        if path.startswith("/billing/webhook"):
            return None

        if method == "POST" and path.startswith(SENSITIVE_PREFIXES):
            return RoutePolicy(
                per_minute=self.config.per_minute_sensitive,
                burst=self.config.burst_sensitive,
                category="sensitive",
            )

        category = "mutation" if method in {"POST", "PUT", "PATCH", "DELETE"} else "read"
        return RoutePolicy(per_minute=self.config.per_minute_default, burst=self.config.burst_default, category=category)

    def _client_key(self, request: Request, category: str) -> str:
        account_id = request.headers.get("X-User-Id")
        if not account_id:
            auth = request.headers.get("Authorization")
            if auth:
                # Tail only; the header itself is never stored or logged
                account_id = auth[-16:]
        if account_id:
            return f"account:{account_id}:{category}"

        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{category}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = self._policy_for_request(request)
        if not policy:
            return await call_next(request)

        key = self._client_key(request, policy.category)

        allowed = self.limiter.allow(key, per_minute=policy.per_minute, burst=policy.burst)
        if allowed:
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        ratelimit_block_total.inc(labels={"scope": normalize_path(request.url.path)})

        response = await app_error_handler(
            request,
            RateLimitError("Too many requests. Try again shortly.", request_id=rid),
        )
        retry_after = max(1, self.limiter.retry_after(key))
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-RateLimit-Limit"] = str(policy.per_minute)
        response.headers["X-RateLimit-Remaining"] = "0"
        return response
