from quiz_agent.services.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_rejects():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    assert all(limiter.check("u1", 3, 60) for _ in range(3))
    assert limiter.check("u1", 3, 60) is False


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    assert limiter.check("u1", 2, 60)
    clock.now += 30
    assert limiter.check("u1", 2, 60)
    assert not limiter.check("u1", 2, 60)
    clock.now += 31  # first request has left the window
    assert limiter.check("u1", 2, 60)
    assert not limiter.check("u1", 2, 60)


def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter(clock=FakeClock())
    assert limiter.check("u1", 1, 60)
    assert not limiter.check("u1", 1, 60)
    assert limiter.check("u2", 1, 60)


def test_rejected_calls_are_not_counted():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock)
    limiter.check("u1", 1, 10)
    for _ in range(5):
        clock.now += 1
        assert not limiter.check("u1", 1, 10)
    clock.now += 6
    assert limiter.check("u1", 1, 10)


def test_cleanup_drops_idle_keys():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock=clock, max_tracked_keys=3)
    for key in ("a", "b", "c"):
        limiter.check(key, 5, 10)
    clock.now += 20
    limiter.check("d", 5, 10)
    assert len(limiter) == 1


def test_instances_do_not_share_state():
    first, second = SlidingWindowRateLimiter(clock=FakeClock()), SlidingWindowRateLimiter(clock=FakeClock())
    assert first.check("u1", 1, 60)
    assert second.check("u1", 1, 60)
