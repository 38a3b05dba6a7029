import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from materials_api.config import Settings
from materials_api.limiter import (
    RATE_LIMIT_CONFIGS,
    RateLimitConfig,
    RateLimiter,
    RequestCache,
    build_rate_limiter,
    get_client_identifier,
    rate_limit,
)

WINDOW = 60 * 1000


def make_request(headers=None, client=("203.0.113.5", 4321)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def make_limiter(clock, max_size=10_000, ttl_ms=5 * 60 * 1000):
    return RateLimiter(cache=RequestCache(max_size=max_size, ttl_ms=ttl_ms, clock=clock), clock=clock)


# ---------- Configuration ----------

def test_presets():
    expected = {"auth": 5, "upload": 10, "delete": 20, "general": 100, "test": 50}
    for name, max_requests in expected.items():
        assert RATE_LIMIT_CONFIGS[name].max_requests == max_requests
        assert RATE_LIMIT_CONFIGS[name].interval_ms == WINDOW


@pytest.mark.parametrize("interval_ms, max_requests", [(0, 5), (-1, 5), (1000, 0)])
def test_malformed_config_fails_fast(interval_ms, max_requests):
    with pytest.raises(ValueError):
        RateLimitConfig(interval_ms=interval_ms, max_requests=max_requests)


# ---------- Sliding window ----------

def test_rejects_after_max_requests(clock):
    limiter = make_limiter(clock)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=3)

    decisions = [limiter.check_and_consume("ip:1.1.1.1", config) for _ in range(3)]
    assert [d.is_limited for d in decisions] == [False, False, False]
    assert [d.remaining for d in decisions] == [3, 2, 1]

    rejected = limiter.check_and_consume("ip:1.1.1.1", config)
    assert rejected.is_limited is True
    assert rejected.remaining == 0
    assert rejected.reset_time == clock.now + WINDOW


def test_rejected_requests_do_not_consume_quota(clock):
    limiter = make_limiter(clock)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=2)

    for _ in range(5):
        limiter.check_and_consume("ip:1.1.1.1", config)

    assert len(limiter.get_info("ip:1.1.1.1")["requests"]) == 2


def test_quota_recovers_after_window(clock):
    limiter = make_limiter(clock)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=2)

    limiter.check_and_consume("ip:1.1.1.1", config)
    limiter.check_and_consume("ip:1.1.1.1", config)
    assert limiter.check_and_consume("ip:1.1.1.1", config).is_limited

    clock.advance(WINDOW)
    decision = limiter.check_and_consume("ip:1.1.1.1", config)
    assert decision.is_limited is False
    assert decision.remaining == 2


def test_window_slides_per_request(clock):
    limiter = make_limiter(clock)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=2)

    limiter.check_and_consume("ip:1.1.1.1", config)
    clock.advance(30_000)
    limiter.check_and_consume("ip:1.1.1.1", config)
    clock.advance(30_000)

    # Only the first request has aged out.
    decision = limiter.check_and_consume("ip:1.1.1.1", config)
    assert decision.is_limited is False
    assert decision.remaining == 1
    assert limiter.check_and_consume("ip:1.1.1.1", config).is_limited


def test_identifiers_do_not_share_quota(clock):
    limiter = make_limiter(clock)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=2)

    for _ in range(3):
        limiter.check_and_consume("ip:1.1.1.1", config)

    other = limiter.check_and_consume("ip:2.2.2.2", config)
    assert other.is_limited is False
    assert other.remaining == 2


def test_remaining_stays_in_bounds(clock):
    limiter = make_limiter(clock)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=4)

    previous = config.max_requests + 1
    for _ in range(10):
        decision = limiter.check_and_consume("ip:1.1.1.1", config)
        assert 0 <= decision.remaining <= config.max_requests
        assert decision.remaining <= previous
        previous = decision.remaining
        clock.advance(1)


# ---------- Cache ----------

def test_cache_evicts_least_recently_used(clock):
    cache = RequestCache(max_size=2, ttl_ms=WINDOW, clock=clock)
    cache.set("a", [1])
    cache.set("b", [2])
    cache.get("a")
    cache.set("c", [3])

    assert cache.get("b") is None
    assert cache.get("a") == [1]
    assert cache.get("c") == [3]
    assert len(cache) == 2


def test_cache_entries_expire_after_ttl(clock):
    cache = RequestCache(max_size=10, ttl_ms=1000, clock=clock)
    cache.set("a", [1])

    clock.advance(999)
    assert "a" in cache
    clock.advance(1)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_idle_client_regains_full_quota(clock):
    limiter = make_limiter(clock, ttl_ms=1000)
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=1)

    limiter.check_and_consume("ip:1.1.1.1", config)
    assert limiter.check_and_consume("ip:1.1.1.1", config).is_limited

    clock.advance(1000)
    assert limiter.check_and_consume("ip:1.1.1.1", config).is_limited is False


def test_get_info_and_clear(clock):
    limiter = make_limiter(clock)
    limiter.check_and_consume("ip:1.1.1.1", RATE_LIMIT_CONFIGS["general"])

    info = limiter.get_info("ip:1.1.1.1")
    assert info["requests"] == [clock.now]
    assert info["config"]["max_requests"] == 100

    limiter.clear()
    assert limiter.get_info("ip:1.1.1.1")["requests"] == []


# ---------- Client identifier ----------

def test_identifier_prefers_forwarded_for():
    request = make_request({
        "X-Forwarded-For": "198.51.100.7, 10.0.0.1",
        "X-Real-IP": "198.51.100.8",
        "CF-Connecting-IP": "198.51.100.9",
    })
    assert get_client_identifier(request) == "ip:198.51.100.7"


def test_identifier_header_priority():
    request = make_request({"X-Real-IP": "198.51.100.8", "CF-Connecting-IP": "198.51.100.9"})
    assert get_client_identifier(request) == "ip:198.51.100.8"

    request = make_request({"CF-Connecting-IP": "198.51.100.9"})
    assert get_client_identifier(request) == "ip:198.51.100.9"


def test_identifier_falls_back_to_socket_address():
    assert get_client_identifier(make_request()) == "ip:203.0.113.5"


def test_identifier_strips_ipv4_mapped_prefix():
    request = make_request({"X-Real-IP": "::ffff:192.0.2.10"})
    assert get_client_identifier(request) == "ip:192.0.2.10"


def test_identifier_uses_user_agent_for_loopback():
    agent = "Mozilla/5.0 " + "x" * 100
    request = make_request({"User-Agent": agent}, client=("127.0.0.1", 80))
    assert get_client_identifier(request) == f"ua:{agent[:50]}"

    assert get_client_identifier(make_request(client=None)) == "ua:unknown"


# ---------- Decorator ----------

def build_app(limiter, config, calls=None):
    app = FastAPI()
    app.state.rate_limiter = limiter

    @app.get("/ping")
    @rate_limit(config)
    async def ping(request: Request):
        if calls is not None:
            calls.append(1)
        return {"pong": True}

    return app


def test_decorator_adds_headers(clock):
    limiter = make_limiter(clock)
    client = TestClient(build_app(limiter, RateLimitConfig(interval_ms=WINDOW, max_requests=2)))

    response = client.get("/ping")
    assert response.status_code == 200
    assert response.json() == {"pong": True}
    assert response.headers["X-RateLimit-Limit"] == "2"
    assert response.headers["X-RateLimit-Remaining"] == "2"
    assert response.headers["X-RateLimit-Reset"] == str(clock.now + WINDOW)


def test_decorator_short_circuits_with_429(clock):
    limiter = make_limiter(clock)
    calls = []
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=1)
    client = TestClient(build_app(limiter, config, calls))

    assert client.get("/ping").status_code == 200

    response = client.get("/ping")
    assert response.status_code == 429
    assert len(calls) == 1
    assert response.json() == {
        "error": "Rate limit exceeded",
        "message": "Too many requests. Please try again later.",
        "retryAfter": 60,
    }
    assert response.headers["Retry-After"] == "60"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["X-RateLimit-Limit"] == "1"


def test_decorator_uses_the_limiter_of_each_app(clock):
    config = RateLimitConfig(interval_ms=WINDOW, max_requests=1)
    first_limiter, second_limiter = make_limiter(clock), make_limiter(clock)
    first = TestClient(build_app(first_limiter, config))
    second = TestClient(build_app(second_limiter, config))

    assert first.get("/ping").status_code == 200
    assert first.get("/ping").status_code == 429
    assert second.get("/ping").status_code == 200
    assert second_limiter.get_info("ip:testclient")["requests"] == [clock.now]


def test_decorator_logs_rejections(clock, log_records):
    client = TestClient(build_app(make_limiter(clock),
                                  RateLimitConfig(interval_ms=WINDOW, max_requests=1)))
    client.get("/ping")
    assert log_records == []

    client.get("/ping")

    assert len(log_records) == 1
    record = log_records[0]
    assert record["level"].name == "WARNING"
    assert record["message"] == "Rate limit exceeded"
    assert record["extra"] == {"identifier": "ip:testclient", "path": "/ping", "limit": 1}


def test_decorator_requires_limiter_on_app_state():
    app = FastAPI()

    @app.get("/ping")
    @rate_limit(RATE_LIMIT_CONFIGS["general"])
    async def ping(request: Request):
        return {"pong": True}

    with pytest.raises(RuntimeError):
        TestClient(app).get("/ping")


def test_decorator_requires_request_parameter():
    with pytest.raises(TypeError):
        @rate_limit(RATE_LIMIT_CONFIGS["general"])
        async def handler():
            return {}


def test_build_rate_limiter_sizes_cache_from_settings(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_CACHE_SIZE", "3")
    monkeypatch.setenv("RATE_LIMIT_CACHE_TTL_MS", "1000")

    limiter = build_rate_limiter(Settings())

    assert limiter.cache.max_size == 3
    assert limiter.cache.ttl_ms == 1000
