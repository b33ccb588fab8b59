"""
Test: Sliding-window rate limiting and the grading rate gate.
"""
import threading

from handgrade.services.rate_limit import GradingRateGate, SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:
    def test_allows_up_to_limit(self):
        limiter = SlidingWindowRateLimiter(3, 60)
        results = [limiter.check("user-1", now=100 + i) for i in range(3)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

    def test_rejects_over_limit_with_retry_after(self):
        limiter = SlidingWindowRateLimiter(2, 60)
        limiter.check("user-1", now=100)
        limiter.check("user-1", now=110)
        result = limiter.check("user-1", now=120)
        assert not result.allowed
        assert result.remaining == 0
        assert result.retry_after == 40
        assert result.reset_at == 160

    def test_window_slides(self):
        limiter = SlidingWindowRateLimiter(2, 60)
        limiter.check("user-1", now=100)
        limiter.check("user-1", now=130)
        assert not limiter.check("user-1", now=150).allowed
        # The first hit has left the window, the second has not
        assert limiter.check("user-1", now=160).allowed
        assert not limiter.check("user-1", now=170).allowed

    def test_rejected_requests_are_not_counted(self):
        limiter = SlidingWindowRateLimiter(1, 10)
        limiter.check("user-1", now=0)
        for t in range(1, 9):
            assert not limiter.check("user-1", now=t).allowed
        assert limiter.check("user-1", now=10).allowed

    def test_identifiers_are_independent(self):
        limiter = SlidingWindowRateLimiter(1, 60)
        assert limiter.check("user-1", now=0).allowed
        assert limiter.check("user-2", now=0).allowed
        assert not limiter.check("user-1", now=1).allowed

    def test_reset_and_clear(self):
        limiter = SlidingWindowRateLimiter(1, 60)
        limiter.check("user-1", now=0)
        limiter.check("user-2", now=0)
        limiter.reset("user-1")
        assert limiter.check("user-1", now=1).allowed
        limiter.clear()
        assert limiter.check("user-2", now=1).allowed

    def test_stale_keys_are_cleaned_up(self):
        limiter = SlidingWindowRateLimiter(5, 10)
        limiter._last_cleanup = 0
        limiter.check("old-user", now=1)
        limiter.check("new-user", now=100)
        assert "old-user" not in limiter._hits
        assert "new-user" in limiter._hits

    def test_thread_safe_counting(self):
        limiter = SlidingWindowRateLimiter(50, 60)
        allowed = []
        lock = threading.Lock()

        def hit():
            result = limiter.check("user-1", now=1000)
            with lock:
                allowed.append(result.allowed)

        threads = [threading.Thread(target=hit) for _ in range(80)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert allowed.count(True) == 50


class TestGradingRateGate:
    def test_burst_limit_trips_first(self, settings):
        gate = GradingRateGate.from_config(settings)
        gate.limiters[0].max_requests = 2
        gate.limiters[1].max_requests = 5
        assert gate.check("user-1", now=0).allowed
        assert gate.check("user-1", now=1).allowed
        result = gate.check("user-1", now=2)
        assert not result.allowed
        assert result.retry_after == 8

    def test_per_minute_limit(self):
        gate = GradingRateGate(SlidingWindowRateLimiter(5, 60), SlidingWindowRateLimiter(2, 10))
        times = [0, 1, 20, 21, 40]
        assert all(gate.check("user-1", now=t).allowed for t in times)
        result = gate.check("user-1", now=55)
        assert not result.allowed
        assert result.retry_after == 5

    def test_rejected_request_spends_no_burst_budget(self):
        gate = GradingRateGate(SlidingWindowRateLimiter(2, 60), SlidingWindowRateLimiter(2, 10))
        assert gate.check("user-1", now=0).allowed
        assert gate.check("user-1", now=1).allowed
        # Turned away by the per-minute window; the burst window must stay empty
        assert not gate.check("user-1", now=59).allowed
        assert not gate.check("user-1", now=59.5).allowed
        assert gate.check("user-1", now=61).allowed

    def test_peek_does_not_record(self):
        limiter = SlidingWindowRateLimiter(1, 60)
        assert limiter.check("user-1", now=0, record=False).allowed
        assert limiter.check("user-1", now=1).allowed
        assert not limiter.check("user-1", now=2, record=False).allowed
