import pytest

from duet.errors import RateLimited
from duet.services.security import InMemoryCounterStore, LockoutGuard, RateLimiter, SecurityGuard


@pytest.fixture
def lockout(clock):
    return LockoutGuard(InMemoryCounterStore(), threshold=5, window=900, duration=300, clock=clock)


def test_lock_opens_at_threshold(lockout):
    for _ in range(4):
        assert lockout.record_failure("a@example.com") is False
    assert not lockout.is_locked("a@example.com")
    assert lockout.record_failure("a@example.com") is True
    assert lockout.is_locked("A@Example.com ")

    info = lockout.lock_info("a@example.com")
    assert info.locked and info.remaining_seconds == 300 and info.attempts == 5


def test_lock_expires_and_clears_history(lockout, clock):
    for _ in range(5):
        lockout.record_failure("a@example.com")
    clock.advance(299)
    assert lockout.is_locked("a@example.com")
    assert lockout.lock_info("a@example.com").remaining_seconds == 1
    clock.advance(1)
    assert not lockout.is_locked("a@example.com")
    assert lockout.lock_info("a@example.com") is None
    assert lockout.failure_count("a@example.com") == 0


def test_failures_slide_out_of_window(lockout, clock):
    for _ in range(4):
        lockout.record_failure("a@example.com")
    clock.advance(901)
    assert lockout.record_failure("a@example.com") is False
    assert lockout.failure_count("a@example.com") == 1


def test_clear_failures(lockout):
    for _ in range(4):
        lockout.record_failure("a@example.com")
    lockout.clear_failures("a@example.com")
    assert lockout.failure_count("a@example.com") == 0
    assert lockout.record_failure("a@example.com") is False


def test_identifiers_are_independent(lockout):
    for _ in range(5):
        lockout.record_failure("a@example.com")
    assert not lockout.is_locked("b@example.com")


def test_rate_limiter_fixed_window(clock):
    limiter = RateLimiter(InMemoryCounterStore(), window=60, limits={"api": 3}, clock=clock)
    for _ in range(3):
        limiter.hit("api", "10.0.0.1")
    with pytest.raises(RateLimited) as exc:
        limiter.hit("api", "10.0.0.1")
    assert exc.value.retry_after == 60
    assert exc.value.detail == RateLimited.default_detail

    # other callers have their own window
    limiter.hit("api", "10.0.0.2")

    clock.advance(60)
    assert limiter.hit("api", "10.0.0.1") == 1


def test_rate_limiter_check_does_not_count(clock):
    limiter = RateLimiter(InMemoryCounterStore(), window=60, limits={"login_failures": 2}, clock=clock)
    for _ in range(5):
        limiter.check("login_failures", "ip")
    limiter.hit("login_failures", "ip")
    limiter.check("login_failures", "ip")
    limiter.hit("login_failures", "ip")
    with pytest.raises(RateLimited):
        limiter.check("login_failures", "ip")


def test_guard_prunes_idle_keys(clock):
    guard = SecurityGuard(InMemoryCounterStore(), clock=clock)
    guard.limiter.hit("api", "ip")
    guard.lockout.record_failure("a@example.com")
    assert guard.prune() == 0
    clock.advance(max(guard.lockout.window, guard.limiter.window) + 1)
    assert guard.prune() == 2
