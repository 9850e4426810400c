from types import SimpleNamespace

from fastapi.testclient import TestClient

import socialflow.api.main as api_main
from socialflow.core import rate_limit
from socialflow.core.metrics import render_prometheus_metrics, reset_metrics_for_tests
from socialflow.core.rate_limit import InMemoryIPRateLimiter, RateLimitDecision, RedisIPRateLimiter


class _StaticLimiter:
    def __init__(self, decision: RateLimitDecision) -> None:
        self._decision = decision
        self.seen_ips: list[str] = []

    def check(self, *, ip: str) -> RateLimitDecision:
        self.seen_ips.append(ip)
        return self._decision


def test_rate_limit_blocks_request_and_sets_headers(monkeypatch) -> None:
    reset_metrics_for_tests()
    monkeypatch.setattr(api_main.settings, "ip_rate_limit_enabled", True)
    monkeypatch.setattr(
        api_main,
        "get_ip_rate_limiter",
        lambda: _StaticLimiter(
            RateLimitDecision(
                allowed=False,
                limit=10,
                remaining=0,
                reset_seconds=30,
            )
        ),
    )

    client = TestClient(api_main.app)
    response = client.post("/auth/login", json={"email": "a@acme.io", "password": "guess", "team_id": "t"})

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "rate_limited"
    assert response.json()["error"]["details"]["reset_seconds"] == 30
    assert response.headers["x-rate-limit-limit"] == "10"
    assert response.headers["x-rate-limit-remaining"] == "0"
    assert response.headers["x-rate-limit-reset"] == "30"
    assert response.headers["x-request-id"]

    payload = render_prometheus_metrics(app_name="socialflow", app_version="0.1.0", env="test")
    assert 'socialflow_rate_limit_block_total{kind="ip"} 1' in payload


def test_rate_limit_allows_request_and_sets_headers(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "ip_rate_limit_enabled", True)
    monkeypatch.setattr(
        api_main,
        "get_ip_rate_limiter",
        lambda: _StaticLimiter(
            RateLimitDecision(
                allowed=True,
                limit=10,
                remaining=9,
                reset_seconds=60,
            )
        ),
    )

    client = TestClient(api_main.app)
    response = client.get("/version")

    assert response.status_code == 200
    assert response.headers["x-rate-limit-limit"] == "10"
    assert response.headers["x-rate-limit-remaining"] == "9"
    assert response.headers["x-rate-limit-reset"] == "60"


def test_rate_limit_keys_on_forwarded_client_ip(monkeypatch) -> None:
    limiter = _StaticLimiter(RateLimitDecision(allowed=True, limit=10, remaining=9, reset_seconds=60))
    monkeypatch.setattr(api_main.settings, "ip_rate_limit_enabled", True)
    monkeypatch.setattr(api_main, "get_ip_rate_limiter", lambda: limiter)

    client = TestClient(api_main.app)
    client.get("/version", headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"})
    client.get("/version", headers={"x-real-ip": "198.51.100.4"})

    assert limiter.seen_ips == ["203.0.113.7", "198.51.100.4"]


def test_disabled_rate_limit_skips_limiter(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "ip_rate_limit_enabled", False)

    def _fail():
        raise AssertionError("limiter must not be consulted")

    monkeypatch.setattr(api_main, "get_ip_rate_limiter", _fail)

    response = TestClient(api_main.app).get("/version")

    assert response.status_code == 200
    assert "x-rate-limit-limit" not in response.headers


def test_in_memory_limiter_blocks_after_limit_per_ip(monkeypatch) -> None:
    monkeypatch.setattr(rate_limit, "time", SimpleNamespace(time=lambda: 1_000_020.0))
    limiter = InMemoryIPRateLimiter(requests_per_window=2, window_seconds=60)

    decisions = [limiter.check(ip="203.0.113.7") for _ in range(3)]

    assert [decision.allowed for decision in decisions] == [True, True, False]
    assert [decision.remaining for decision in decisions] == [1, 0, 0]
    assert limiter.check(ip="198.51.100.4").allowed is True


def test_redis_limiter_shares_counter_and_fails_open(monkeypatch, fake_redis) -> None:
    monkeypatch.setattr(rate_limit, "get_client", lambda: fake_redis)
    monkeypatch.setattr(rate_limit, "time", SimpleNamespace(time=lambda: 1_000_020.0))
    limiter = RedisIPRateLimiter(requests_per_window=1, window_seconds=60)

    first = limiter.check(ip="203.0.113.7")
    second = limiter.check(ip="203.0.113.7")

    assert first.allowed is True
    assert second.allowed is False
    assert list(fake_redis.expirations.values()) == [61]

    fake_redis.unavailable = True
    degraded = limiter.check(ip="203.0.113.7")
    assert degraded.allowed is True
    assert degraded.remaining == 1
