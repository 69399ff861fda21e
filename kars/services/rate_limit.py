from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Request
from sqlalchemy.orm import Session

from kars.services.settings_store import effective_proxy, effective_rate_limit, get_system_settings
from kars.settings import get_settings

AUTH_PATHS = frozenset({"/api/auth/login", "/api/auth/register", "/api/auth/mfa/verify-login"})
PASSWORD_RESET_PATHS = frozenset({"/api/auth/forgot-password", "/api/auth/reset-password"})
PASSWORD_RESET_WINDOW_SECONDS = 60 * 60


class SlidingWindowLimiter:
    """Per-key request counter over a sliding time window."""

    def __init__(
        self,
        *,
        window_seconds: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def hit(self, key: str) -> tuple[bool, float]:
        """Record a request; returns ``(allowed, retry_after_seconds)``."""
        now = self._clock()
        threshold = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(threshold)
                self._last_sweep = now
            queue = self._hits[key]
            while queue and queue[0] <= threshold:
                queue.popleft()
            if len(queue) >= self.max_requests:
                return False, max(0.0, queue[0] + self.window_seconds - now)
            queue.append(now)
            return True, 0.0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, threshold: float) -> None:
        # Drop keys whose newest hit has left the window.
        stale = [key for key, queue in self._hits.items() if not queue or queue[-1] <= threshold]
        for key in stale:
            del self._hits[key]


@dataclass(slots=True)
class RateLimitConfig:
    enabled: bool
    window_seconds: float
    max_requests: int
    auth_max_requests: int
    password_reset_max_requests: int
    trust_proxy: bool
    proxy_type: str
    proxy_trust_level: int


def load_rate_limit_config(db: Session) -> RateLimitConfig:
    settings = get_settings()
    row = get_system_settings(db)
    db.commit()
    rate = effective_rate_limit(row)
    proxy = effective_proxy(row)
    return RateLimitConfig(
        enabled=bool(rate["enabled"]["value"]),
        window_seconds=max(1, int(rate["windowMs"]["value"])) / 1000,
        max_requests=max(1, int(rate["maxRequests"]["value"])),
        auth_max_requests=max(1, settings.auth_rate_limit_max_requests),
        password_reset_max_requests=max(1, settings.password_reset_rate_limit_max_requests),
        trust_proxy=bool(proxy["enabled"]["value"]),
        proxy_type=str(proxy["type"]["value"] or "standard"),
        proxy_trust_level=int(proxy["trustLevel"]["value"] or 1),
    )


def client_ip(request: Request, config: RateLimitConfig) -> str:
    if config.trust_proxy:
        if config.proxy_type == "cloudflare":
            cf_ip = request.headers.get("CF-Connecting-IP")
            if cf_ip:
                return cf_ip.strip()
        forwarded = [part.strip() for part in request.headers.get("X-Forwarded-For", "").split(",") if part.strip()]
        if forwarded:
            # Count trusted hops from the right; the client is the entry just before them.
            index = max(0, len(forwarded) - max(1, config.proxy_trust_level))
            return forwarded[index]
    return request.client.host if request.client else "unknown"


class RequestRateLimiter:
    def __init__(self, config: RateLimitConfig) -> None:
        self.config = config
        self.general = SlidingWindowLimiter(window_seconds=config.window_seconds, max_requests=config.max_requests)
        self.auth = SlidingWindowLimiter(window_seconds=config.window_seconds, max_requests=config.auth_max_requests)
        self.password_reset = SlidingWindowLimiter(
            window_seconds=PASSWORD_RESET_WINDOW_SECONDS,
            max_requests=config.password_reset_max_requests,
        )

    def check(self, request: Request) -> dict[str, Any] | None:
        """Return a rejection description when the request is over its limit, else ``None``."""
        path = request.url.path
        if not self.config.enabled or not path.startswith("/api/") or path == "/api/health":
            return None
        ip = client_ip(request, self.config)
        if path in PASSWORD_RESET_PATHS and request.method == "POST":
            limiter, message = self.password_reset, "Too many password reset requests. Please try again later."
        elif path in AUTH_PATHS and request.method == "POST":
            limiter, message = self.auth, "Too many authentication attempts. Please try again later."
        else:
            limiter, message = self.general, "Too many requests. Please try again later."
        allowed, retry_after = limiter.hit(f"{ip}:{path}" if limiter is not self.general else ip)
        if allowed:
            return None
        return {"message": message, "retry_after": int(retry_after) + 1}
