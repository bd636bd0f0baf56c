import threading

from gympay import config
from gympay.rate_limiter import InMemoryRateLimiter, RedisRateLimiter


class FakeClock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_blocks():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)

    results = [limiter.check("ip-1", 3, 60_000) for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[-1].reset_time == clock.now + 60_000


def test_window_resets():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    for _ in range(3):
        limiter.check("ip-1", 3, 60_000)

    clock.now += 60_001

    assert limiter.check("ip-1", 3, 60_000).allowed


def test_keys_are_independent():
    limiter = InMemoryRateLimiter(clock=FakeClock())
    limiter.check("ip-1", 1, 60_000)

    assert not limiter.check("ip-1", 1, 60_000).allowed
    assert limiter.check("ip-2", 1, 60_000).allowed


def test_concurrent_increments_never_exceed_limit():
    limiter = InMemoryRateLimiter()
    allowed = []
    lock = threading.Lock()

    def hit():
        result = limiter.check("shared", 20, 60_000)
        with lock:
            allowed.append(result.allowed)

    threads = [threading.Thread(target=hit) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert allowed.count(True) == 20


def test_redis_limiter(mocker):
    client = mocker.Mock()
    pipe = client.pipeline.return_value
    pipe.execute.side_effect = [[1, True, 60_000], [4, False, 30_000]]
    limiter = RedisRateLimiter(client)

    first = limiter.check("payments:create:abc", 3, 60_000)
    second = limiter.check("payments:create:abc", 3, 60_000)

    assert first.allowed and first.remaining == 2
    assert not second.allowed
    pipe.incr.assert_called_with("ratelimit:payments:create:abc")
    pipe.pexpire.assert_called_with("ratelimit:payments:create:abc", 60_000, nx=True)


def test_endpoint_returns_429_with_retry_after(client, enrollment):
    body = {"enrollmentId": 7, "amount": 10, "paymentType": "tuition"}
    statuses = [client.post("/payments", json=body).status_code for _ in range(6)]

    assert statuses == [200] * 5 + [429]
    response = client.post("/payments", json=body)
    assert int(response.headers["Retry-After"]) > 0
    assert response.json()["success"] is False


def test_spoofed_forwarded_for_does_not_reset_the_bucket(client, enrollment):
    body = {"enrollmentId": 7, "amount": 10, "paymentType": "tuition"}
    statuses = [
        client.post("/payments", json=body, headers={"X-Forwarded-For": f"10.0.0.{i}"}).status_code
        for i in range(6)
    ]

    assert statuses == [200] * 5 + [429]


def test_forwarded_for_is_used_behind_a_trusted_proxy(client, enrollment, monkeypatch):
    monkeypatch.setattr(config, "TRUST_PROXY_HEADERS", True)
    body = {"enrollmentId": 7, "amount": 10, "paymentType": "tuition"}

    for _ in range(5):
        client.post("/payments", json=body, headers={"X-Forwarded-For": "10.0.0.1"})
    blocked = client.post("/payments", json=body, headers={"X-Forwarded-For": "10.0.0.1"})
    other = client.post("/payments", json=body, headers={"X-Forwarded-For": "10.0.0.2, 172.16.0.1"})

    assert blocked.status_code == 429
    assert other.status_code == 200
