import asyncio

import pytest
from starlette.datastructures import Headers

from muma_api.services.cleanup import CleanupScheduler
from muma_api.services.server_limiter import (
    ACTION_LIMITS,
    RateLimitDecision,
    ServerRateLimiter,
    UnknownActionError,
    client_ip_from_headers,
)


class FakeClock:
    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture()
def clock():
    return FakeClock(now=1_700_000_000_000)


@pytest.fixture()
def limiter(clock):
    return ServerRateLimiter(clock=clock)


def test_configured_thresholds():
    assert ACTION_LIMITS["whatsapp"].max_actions == 5
    assert ACTION_LIMITS["whatsapp"].window_ms == 60_000
    assert ACTION_LIMITS["contact"].max_actions == 3
    assert ACTION_LIMITS["contact"].window_ms == 300_000


def test_whatsapp_sixth_request_is_denied(limiter, clock):
    decisions = []
    for _ in range(6):
        decisions.append(limiter.check("whatsapp", "203.0.113.9"))
        clock.advance(1_000)

    assert all(decision.allowed for decision in decisions[:5])
    denied = decisions[5]
    assert denied.allowed is False
    assert denied.reset_in == 60_000 - 5_000
    assert denied.message == "Rate limit exceeded. Try again in 55 seconds."


def test_denied_message_rounds_seconds_up():
    decision = RateLimitDecision.denied(1_001)
    assert decision.message == "Rate limit exceeded. Try again in 2 seconds."


def test_actions_and_clients_use_separate_buckets(limiter):
    for _ in range(3):
        assert limiter.check("contact", "198.51.100.1").allowed
    assert limiter.check("contact", "198.51.100.1").allowed is False

    assert limiter.check("contact", "198.51.100.2").allowed is True
    assert limiter.check("whatsapp", "198.51.100.1").allowed is True


def test_record_lifecycle_and_lazy_reset(limiter, clock):
    limiter.check("contact", "10.0.0.1")
    clock.advance(2_000)
    limiter.check("contact", "10.0.0.1")

    record = limiter.store.get("contact:10.0.0.1")
    assert record.count == 2
    assert record.first_attempt == clock.now - 2_000
    assert record.reset_at == clock.now - 2_000 + 300_000

    clock.advance(300_000)
    assert limiter.check("contact", "10.0.0.1").allowed is True
    assert limiter.store.get("contact:10.0.0.1").count == 1


def test_sweep_removes_only_expired_records(limiter, clock):
    limiter.check("whatsapp", "10.0.0.1")
    limiter.check("contact", "10.0.0.2")
    assert limiter.active_records() == 2

    clock.advance(60_000)
    assert limiter.sweep() == 1
    assert limiter.active_records() == 1
    assert limiter.store.get("contact:10.0.0.2") is not None


@pytest.mark.parametrize("action", ["bogus", None, "", 5, ["whatsapp"]])
def test_unknown_action_raises(limiter, action):
    with pytest.raises(UnknownActionError):
        limiter.check(action, "10.0.0.1")


def test_internal_failure_fails_open(limiter, monkeypatch, caplog):
    def broken_read(_key):
        raise RuntimeError("store corrupted")

    monkeypatch.setattr(limiter.store, "read", broken_read)

    decision = limiter.check("whatsapp", "10.0.0.1")

    assert decision.allowed is True
    events = [getattr(record, "event", None) for record in caplog.records]
    assert "rate_limit_error" in events


def test_check_and_exceeded_events_are_logged(limiter, caplog):
    limiter.check("contact", "10.0.0.9")
    for _ in range(3):
        limiter.check("contact", "10.0.0.9")

    security = [record.security for record in caplog.records if hasattr(record, "security")]
    checks = [entry for entry in security if entry["event"] == "rate_limit_check"]
    exceeded = [entry for entry in security if entry["event"] == "rate_limit_exceeded"]

    assert checks[0]["newRecord"] is True
    assert checks[0]["ip"] == "10.0.0.9"
    assert len(exceeded) == 1
    assert exceeded[0]["maxRequests"] == 3
    assert exceeded[0]["resetIn"] > 0


def test_client_ip_prefers_first_forwarded_for_value():
    headers = Headers({"X-Forwarded-For": " 203.0.113.5 , 10.0.0.1", "X-Real-IP": "198.51.100.7"})
    assert client_ip_from_headers(headers) == "203.0.113.5"


def test_client_ip_falls_back_to_real_ip_then_unknown():
    assert client_ip_from_headers(Headers({"X-Real-IP": " 198.51.100.7 "})) == "198.51.100.7"
    assert client_ip_from_headers(Headers({})) == "unknown"
    assert client_ip_from_headers({"x-forwarded-for": " , "}) == "unknown"


def test_cleanup_scheduler_starts_once_and_stops():
    async def scenario() -> None:
        scheduler = CleanupScheduler(ServerRateLimiter(), interval_seconds=60)
        assert scheduler.start() is True
        assert scheduler.start() is False
        assert scheduler.started is True

        await scheduler.stop()
        assert scheduler.started is False
        assert scheduler.start() is True
        await scheduler.stop()

    asyncio.run(scenario())


def test_cleanup_scheduler_sweeps_expired_records(clock):
    limiter = ServerRateLimiter(clock=clock)
    limiter.check("whatsapp", "10.0.0.1")
    clock.advance(61_000)

    async def scenario() -> None:
        scheduler = CleanupScheduler(limiter, interval_seconds=0.01)
        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

    asyncio.run(scenario())
    assert limiter.active_records() == 0
