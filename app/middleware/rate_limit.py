from __future__ import annotations

import math
import re
import threading
import time
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.api.errors import error_response
from app.core.auth import ANONYMOUS_SUBJECT, bearer_subject
from app.core.config import Settings, get_settings


WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
EXEMPT_PREFIXES = ("/api/billing/webhooks/",)

# Routes that take a secret token in the path; lookups count too since a 404 confirms a guess.
_TOKEN_ROUTE_RE = re.compile(r"^/api/(invitations|claims)/[^/]+(/accept)?/?$")


@dataclass
class _Bucket:
    tokens: float
    last_refill: float

    def take(self, now: float, capacity: int, refill_rate: float) -> int:
        """Spend one token; returns 0 on success or the seconds until one is available."""
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(capacity), self.tokens + elapsed * refill_rate)
        self.last_refill = now
        if self.tokens < 1.0:
            return max(1, math.ceil((1.0 - self.tokens) / refill_rate))
        self.tokens -= 1.0
        return 0


@dataclass(frozen=True)
class RateBudget:
    route_group: str
    capacity: int


class _TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._last_sweep = time.monotonic()

    def take(self, subject: str, budget: RateBudget, *, now: float | None = None) -> tuple[bool, int]:
        if budget.capacity <= 0:
            return False, WINDOW_SECONDS

        now = time.monotonic() if now is None else now
        with self._lock:
            self._evict_idle(now)
            bucket = self._buckets.setdefault(
                (subject, budget.route_group),
                _Bucket(tokens=float(budget.capacity), last_refill=now),
            )
            retry_after = bucket.take(now, budget.capacity, budget.capacity / float(WINDOW_SECONDS))
        return retry_after == 0, retry_after

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict_idle(self, now: float) -> None:
        if now - self._last_sweep < WINDOW_SECONDS:
            return
        self._last_sweep = now
        # A bucket untouched for a whole window has refilled to capacity; a fresh one is identical.
        idle = [key for key, bucket in self._buckets.items() if now - bucket.last_refill >= WINDOW_SECONDS]
        for key in idle:
            del self._buckets[key]


_limiter = _TokenBucketLimiter()


def resolve_budget(method: str, path: str, settings: Settings) -> RateBudget | None:
    if not path.startswith("/api/") or path.startswith(EXEMPT_PREFIXES):
        return None
    token_route = _TOKEN_ROUTE_RE.match(path)
    if token_route is not None:
        return RateBudget(route_group=f"{token_route.group(1)}.token", capacity=settings.rate_limit_token_attempts_per_minute)
    if method.upper() not in MUTATING_METHODS:
        return None
    parts = [part for part in path.split("/") if part]
    return RateBudget(route_group=parts[1] if len(parts) > 1 else "api", capacity=settings.rate_limit_mutations_per_minute)


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled:
            return await call_next(request)

        budget = resolve_budget(request.method, request.url.path, settings)
        if budget is None:
            return await call_next(request)

        subject = bearer_subject(request.headers.get("authorization", "")) or ANONYMOUS_SUBJECT
        allowed, retry_after = _limiter.take(subject, budget)
        if allowed:
            return await call_next(request)

        response = error_response(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Too many requests",
            details={"route_group": budget.route_group, "retry_after_seconds": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _limiter.clear()
