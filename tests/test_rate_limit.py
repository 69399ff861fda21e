from __future__ import annotations

import unittest

from fastapi.testclient import TestClient
from starlette.requests import Request

from kars.db import get_db
from kars.main import app
from kars.security import reset_login_attempts
from kars.services.rate_limit import RateLimitConfig, RequestRateLimiter, SlidingWindowLimiter, client_ip
from tests.helpers import make_session_factory, override_get_db


def _config(**overrides) -> RateLimitConfig:
    values = {
        "enabled": True,
        "window_seconds": 60.0,
        "max_requests": 100,
        "auth_max_requests": 10,
        "password_reset_max_requests": 5,
        "trust_proxy": False,
        "proxy_type": "standard",
        "proxy_trust_level": 1,
    }
    values.update(overrides)
    return RateLimitConfig(**values)


def _request(path: str = "/api/assets", headers: dict[str, str] | None = None, method: str = "GET") -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "scheme": "http",
        "server": ("testserver", 80),
        "client": ("10.0.0.9", 50000),
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
    }
    return Request(scope)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class SlidingWindowLimiterTests(unittest.TestCase):
    def test_blocks_after_limit_until_window_slides(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowLimiter(window_seconds=10, max_requests=2, clock=clock)

        self.assertEqual(limiter.hit("ip"), (True, 0.0))
        clock.now += 4
        self.assertTrue(limiter.hit("ip")[0])
        allowed, retry_after = limiter.hit("ip")
        self.assertFalse(allowed)
        self.assertAlmostEqual(retry_after, 6.0)
        self.assertTrue(limiter.hit("other-ip")[0])

        clock.now += 6
        self.assertTrue(limiter.hit("ip")[0])

    def test_idle_keys_are_dropped_once_the_window_passes(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowLimiter(window_seconds=10, max_requests=5, clock=clock)

        for index in range(500):
            limiter.hit(f"10.1.{index // 256}.{index % 256}")
        self.assertEqual(limiter.tracked_keys(), 500)

        clock.now += 11
        self.assertTrue(limiter.hit("10.9.9.9")[0])

        self.assertEqual(limiter.tracked_keys(), 1)


class ClientIpTests(unittest.TestCase):
    def test_ignores_forwarded_header_without_trusted_proxy(self) -> None:
        request = _request(headers={"X-Forwarded-For": "1.1.1.1"})
        self.assertEqual(client_ip(request, _config()), "10.0.0.9")

    def test_counts_trusted_hops_from_the_right(self) -> None:
        request = _request(headers={"X-Forwarded-For": "6.6.6.6, 1.1.1.1, 172.16.0.2"})

        self.assertEqual(client_ip(request, _config(trust_proxy=True, proxy_trust_level=1)), "172.16.0.2")
        self.assertEqual(client_ip(request, _config(trust_proxy=True, proxy_trust_level=2)), "1.1.1.1")
        self.assertEqual(client_ip(request, _config(trust_proxy=True, proxy_trust_level=9)), "6.6.6.6")

    def test_cloudflare_header_wins_when_configured(self) -> None:
        request = _request(headers={"CF-Connecting-IP": "8.8.8.8", "X-Forwarded-For": "1.1.1.1"})

        self.assertEqual(client_ip(request, _config(trust_proxy=True, proxy_type="cloudflare")), "8.8.8.8")
        self.assertEqual(client_ip(request, _config(trust_proxy=True)), "1.1.1.1")


class RequestRateLimiterTests(unittest.TestCase):
    def test_disabled_and_health_requests_are_never_limited(self) -> None:
        disabled = RequestRateLimiter(_config(enabled=False, max_requests=1))
        enabled = RequestRateLimiter(_config(max_requests=1))

        for _ in range(3):
            self.assertIsNone(disabled.check(_request()))
            self.assertIsNone(enabled.check(_request("/api/health")))
            self.assertIsNone(enabled.check(_request("/static/app.js")))

    def test_auth_paths_use_their_own_budget(self) -> None:
        limiter = RequestRateLimiter(_config(max_requests=100, auth_max_requests=1))

        self.assertIsNone(limiter.check(_request("/api/auth/login", method="POST")))
        rejection = limiter.check(_request("/api/auth/login", method="POST"))
        self.assertIsNotNone(rejection)
        self.assertIn("authentication", rejection["message"])
        self.assertGreaterEqual(rejection["retry_after"], 1)
        self.assertIsNone(limiter.check(_request("/api/assets")))


class RateLimitMiddlewareTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_login_attempts()
        self.SessionLocal = make_session_factory()
        app.dependency_overrides[get_db] = override_get_db(self.SessionLocal)
        app.state.rate_limiter = RequestRateLimiter(_config(max_requests=2))
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        del app.state.rate_limiter

    def test_returns_429_with_retry_after(self) -> None:
        first = self.client.get("/api/not-a-route")
        second = self.client.get("/api/not-a-route")
        third = self.client.get("/api/not-a-route")
        health = self.client.get("/api/health")

        self.assertEqual(first.status_code, 404)
        self.assertEqual(second.status_code, 404)
        self.assertEqual(third.status_code, 429)
        self.assertEqual(third.json()["error"]["code"], "TOO_MANY_REQUESTS")
        self.assertIn("Retry-After", third.headers)
        self.assertEqual(health.status_code, 200)


if __name__ == "__main__":
    unittest.main()
