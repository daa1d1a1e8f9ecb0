"""Tests for the circuit breaker and the TTL cache."""

from datetime import datetime, timedelta

from afip_monitor.monitoring.cache import TTLCache
from afip_monitor.monitoring.circuit_breaker import CircuitBreaker


class Clock:
    def __init__(self):
        self.now = datetime(2024, 3, 12, 9, 0)

    def __call__(self):
        return self.now


# =============================================================================
# Circuit breaker
# =============================================================================

class TestCircuitBreaker:

    def test_starts_closed(self):
        breaker = CircuitBreaker(clock=Clock())
        assert not breaker.is_open()
        assert breaker.failures == 0

    def test_opens_exactly_on_fifth_failure(self):
        breaker = CircuitBreaker(threshold=5, clock=Clock())
        for _ in range(4):
            breaker.record_failure()
            assert not breaker.is_open()

        breaker.record_failure()
        assert breaker.is_open()
        assert breaker.get_status()["is_open"] is True

    def test_stays_open_until_cooldown_elapses(self):
        clock = Clock()
        breaker = CircuitBreaker(threshold=5, cooldown=timedelta(minutes=5), clock=clock)
        for _ in range(5):
            breaker.record_failure()

        clock.now += timedelta(minutes=4, seconds=59)
        assert breaker.is_open()

        clock.now += timedelta(seconds=1)
        assert not breaker.is_open()
        assert breaker.failures == 0

    def test_cooldown_counts_from_last_failure(self):
        clock = Clock()
        breaker = CircuitBreaker(threshold=2, cooldown=timedelta(minutes=5), clock=clock)
        breaker.record_failure()
        breaker.record_failure()

        clock.now += timedelta(minutes=3)
        breaker.record_failure()
        clock.now += timedelta(minutes=3)
        assert breaker.is_open()

    def test_success_resets_failures(self):
        breaker = CircuitBreaker(threshold=5, clock=Clock())
        for _ in range(4):
            breaker.record_failure()
        breaker.record_success()

        for _ in range(4):
            breaker.record_failure()
        assert not breaker.is_open()


# =============================================================================
# TTL cache
# =============================================================================

class TestTTLCache:

    def test_get_and_set(self):
        cache = TTLCache(ttl=timedelta(minutes=5), clock=Clock())
        cache.set("20123456786", {"risk": 0.5})
        assert cache.get("20123456786") == {"risk": 0.5}
        assert cache.get("missing") is None

    def test_entries_expire(self):
        clock = Clock()
        cache = TTLCache(ttl=timedelta(minutes=5), clock=clock)
        cache.set("a", 1)

        clock.now += timedelta(minutes=4)
        assert cache.get("a") == 1

        clock.now += timedelta(minutes=1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_purge_expired(self):
        clock = Clock()
        cache = TTLCache(ttl=timedelta(minutes=5), clock=clock)
        cache.set("a", 1)
        cache.set("b", 2, ttl=timedelta(minutes=30))

        clock.now += timedelta(minutes=10)
        assert cache.purge_expired() == 1
        assert len(cache) == 1
        assert cache.get("b") == 2

    def test_delete_and_clear(self):
        cache = TTLCache(ttl=timedelta(minutes=5), clock=Clock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.delete("a")
        cache.delete("a")
        assert cache.get("a") is None

        cache.clear()
        assert len(cache) == 0
