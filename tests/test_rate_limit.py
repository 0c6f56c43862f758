"""Tests for sliding window rate limiting."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from fastapi_botguard.errors import RateExceeded
from fastapi_botguard.rate_limit import (
    MemoryRateLimitBackend,
    RateLimitConfig,
    SlidingWindowRateLimiter,
    per_ip_rate_limit,
    rate_limit,
)


@pytest.fixture
def limiter():
    return SlidingWindowRateLimiter(RateLimitConfig(window_seconds=60, max_requests=100))


class TestSlidingWindow:
    """Test the limiter on its own."""

    def test_defaults(self):
        limiter = SlidingWindowRateLimiter()

        assert limiter.window_seconds == 60
        assert limiter.max_requests == 100

    def test_hundred_requests_then_rejection(self, limiter):
        """100 requests in 59 seconds pass; the 101st is rejected."""
        for i in range(100):
            limiter.check_and_record("k", now=1000 + i * 0.59)

        with pytest.raises(RateExceeded) as exc_info:
            limiter.check_and_record("k", now=1059.5)

        assert exc_info.value.limit == 100
        assert exc_info.value.key == "k"

    def test_rejection_is_not_recorded(self, limiter):
        for _ in range(100):
            limiter.check_and_record("k", now=1000)

        for _ in range(5):
            with pytest.raises(RateExceeded):
                limiter.check_and_record("k", now=1010)

        assert limiter.peek("k", now=1010) == 100

    def test_window_slides(self, limiter):
        for _ in range(100):
            limiter.check_and_record("k", now=1000)

        status = limiter.check_and_record("k", now=1061)

        assert status.remaining == 99

    def test_timestamp_exactly_at_cutoff_is_kept(self, limiter):
        """Only timestamps strictly older than now - window are pruned."""
        for _ in range(100):
            limiter.check_and_record("k", now=1000)

        with pytest.raises(RateExceeded):
            limiter.check_and_record("k", now=1060)

    def test_retry_after(self, limiter):
        for i in range(100):
            limiter.check_and_record("k", now=1000 + i * 0.1)

        with pytest.raises(RateExceeded) as exc_info:
            limiter.check_and_record("k", now=1010)

        assert exc_info.value.retry_after == pytest.approx(50.0)
        headers = exc_info.value.headers(now=1010)
        assert headers["Retry-After"] == "50"
        assert headers["X-RateLimit-Limit"] == "100"
        assert headers["X-RateLimit-Remaining"] == "0"

    def test_remaining_counts_down(self, limiter):
        first = limiter.check_and_record("k", now=0)
        second = limiter.check_and_record("k", now=1)

        assert first.remaining == 99
        assert second.remaining == 98
        assert second.headers()["X-RateLimit-Remaining"] == "98"

    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(RateLimitConfig(window_seconds=60, max_requests=1))

        limiter.check_and_record("a", now=0)
        limiter.check_and_record("b", now=0)

        with pytest.raises(RateExceeded):
            limiter.check_and_record("a", now=1)

    def test_reset(self, limiter):
        for _ in range(100):
            limiter.check_and_record("k", now=0)

        limiter.reset("k")

        assert limiter.peek("k", now=0) == 0
        limiter.check_and_record("k", now=0)

    def test_sweep_drops_idle_keys(self):
        backend = MemoryRateLimitBackend()
        limiter = SlidingWindowRateLimiter(RateLimitConfig(window_seconds=10), backend)
        limiter.check_and_record("old", now=0)
        limiter.check_and_record("fresh", now=15)

        removed = limiter.sweep(now=20)

        assert removed == 1
        assert len(backend) == 1


class TestConcurrency:
    """The limit holds under concurrent callers on one key."""

    def test_never_admits_more_than_max(self):
        limiter = SlidingWindowRateLimiter(RateLimitConfig(window_seconds=60, max_requests=100))
        barrier = threading.Barrier(16)
        admitted = []
        rejected = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            for _ in range(25):
                try:
                    limiter.check_and_record("shared", now=5000)
                    outcome = admitted
                except RateExceeded:
                    outcome = rejected
                with lock:
                    outcome.append(1)

        with ThreadPoolExecutor(max_workers=16) as executor:
            futures = [executor.submit(worker) for _ in range(16)]
            for future in futures:
                future.result()

        assert len(admitted) == 100
        assert len(rejected) == 16 * 25 - 100
        assert limiter.peek("shared", now=5000) == 100


class TestRateLimitShield:
    """Test the shield integration."""

    def test_shield_rejects_with_429(self):
        app = FastAPI()

        @app.get("/limited")
        @rate_limit(requests=2, window_seconds=60)
        def limited():
            return {"ok": True}

        client = TestClient(app)

        assert client.get("/limited").status_code == 200
        assert client.get("/limited").status_code == 200

        response = client.get("/limited")
        assert response.status_code == 429
        assert response.json()["detail"] == "Rate limit exceeded"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Limit"] == "2"

    def test_custom_key_func(self):
        app = FastAPI()

        def key_by_user(request: Request) -> str:
            return request.headers.get("x-user", "anonymous")

        @app.get("/limited")
        @rate_limit(requests=1, window_seconds=60, key_func=key_by_user)
        def limited():
            return {"ok": True}

        client = TestClient(app)

        assert client.get("/limited", headers={"x-user": "alice"}).status_code == 200
        assert client.get("/limited", headers={"x-user": "bob"}).status_code == 200
        assert client.get("/limited", headers={"x-user": "alice"}).status_code == 429

    def test_per_ip_limit_uses_forwarded_address(self):
        app = FastAPI()

        @app.get("/items/{item_id}")
        @per_ip_rate_limit(requests=1, window_seconds=60)
        def get_item(item_id: int):
            return {"item_id": item_id}

        client = TestClient(app)

        first = client.get("/items/7", headers={"x-forwarded-for": "198.51.100.1"})
        assert first.status_code == 200
        assert first.json() == {"item_id": 7}
        assert client.get("/items/7", headers={"x-forwarded-for": "198.51.100.2"}).status_code == 200
        assert client.get("/items/7", headers={"x-forwarded-for": "198.51.100.1"}).status_code == 429

    def test_spoofed_forwarded_address_is_ignored_behind_trusted_proxies(self):
        app = FastAPI()

        @app.get("/limited")
        @rate_limit(requests=1, window_seconds=60, trusted_proxies=["10.0.0.0/8"])
        def limited():
            return {"ok": True}

        client = TestClient(app)

        assert client.get("/limited", headers={"x-forwarded-for": "198.51.100.1"}).status_code == 200
        assert client.get("/limited", headers={"x-forwarded-for": "198.51.100.2"}).status_code == 429
