import pytest

from catalog_sync.services.erp.retry_policy import (
    DEFAULT_POLICIES,
    MIN_JITTERED_DELAY,
    RetryPolicy,
    RetryStrategy,
    get_policy,
)
from catalog_sync.services.errors import NetworkError, ValidationError
from catalog_sync.services.retry_manager import RetryManager


def no_jitter(**kwargs):
    return RetryPolicy(name="test", jitter=False, **kwargs)


def test_exponential_delays():
    policy = no_jitter(base_delay=1.0, backoff_multiplier=2.0, max_delay=60)
    assert [policy.compute_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]


def test_linear_delays():
    policy = no_jitter(base_delay=5.0, max_delay=300, strategy=RetryStrategy.LINEAR)
    assert [policy.compute_delay(i) for i in range(3)] == [5.0, 10.0, 15.0]


def test_fixed_delay():
    policy = no_jitter(base_delay=3.0, strategy=RetryStrategy.FIXED)
    assert policy.compute_delay(0) == policy.compute_delay(5) == 3.0


def test_custom_delay():
    policy = no_jitter(strategy=RetryStrategy.CUSTOM, custom_delay=lambda index, p: 7.0 + index)
    assert policy.compute_delay(2) == 9.0


def test_delay_is_capped_by_max_delay():
    policy = no_jitter(base_delay=2.0, backoff_multiplier=2.5, max_delay=120)
    assert policy.compute_delay(10) == 120


def test_jitter_stays_within_ten_percent():
    policy = RetryPolicy(name="j", base_delay=10.0, backoff_multiplier=1.0, max_delay=100, jitter=True)
    assert policy.compute_delay(0, rng=lambda: 0.0) == pytest.approx(9.0)
    assert policy.compute_delay(0, rng=lambda: 1.0) == pytest.approx(11.0)
    assert policy.compute_delay(0, rng=lambda: 0.5) == pytest.approx(10.0)


def test_jitter_has_floor():
    policy = RetryPolicy(name="tiny", base_delay=0.05, jitter=True)
    assert policy.compute_delay(0, rng=lambda: 0.0) == MIN_JITTERED_DELAY


def test_default_policies():
    critical = DEFAULT_POLICIES["critical"]
    assert (critical.max_retries, critical.base_delay, critical.max_delay, critical.backoff_multiplier) == (
        5, 2.0, 120.0, 2.5)
    background = DEFAULT_POLICIES["background"]
    assert background.strategy == RetryStrategy.LINEAR
    assert background.max_retries == 7
    realtime = DEFAULT_POLICIES["realtime"]
    assert realtime.jitter is False
    assert [realtime.compute_delay(i) for i in range(2)] == [0.5, 1.0]


def test_unknown_policy_falls_back_to_standard():
    assert get_policy("nope").name == "standard"
    assert get_policy(None).name == "standard"
    assert get_policy("critical").name == "critical"


# Внешняя обертка повторов

def test_retry_manager_retries_retryable_errors(sleeps):
    manager = RetryManager(max_attempts=3, base_delay=1.0, max_delay=30, sleep=sleeps, rng=lambda: 0.0)
    calls = []

    def operation():
        calls.append(1)
        if len(calls) < 3:
            raise NetworkError("connection reset")
        return "ok"

    assert manager.execute(operation, "op-1") == "ok"
    # NetworkError задает собственную базовую задержку 5с
    assert sleeps.calls == [5.0, 10.0]
    assert manager.get_retry_count("op-1") == 2


def test_retry_manager_gives_up_after_max_attempts(sleeps):
    manager = RetryManager(max_attempts=2, sleep=sleeps, rng=lambda: 0.5)

    def operation():
        raise NetworkError("down")

    with pytest.raises(NetworkError):
        manager.execute(operation, "op-2")
    assert len(sleeps.calls) == 1


def test_retry_manager_does_not_retry_permanent_errors(sleeps):
    manager = RetryManager(max_attempts=5, sleep=sleeps)

    def operation():
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        manager.execute(operation, "op-3")
    assert sleeps.calls == []


def test_retry_manager_delay_formula():
    manager = RetryManager(base_delay=1.0, max_delay=30, rng=lambda: 0.25)
    assert manager.calculate_delay(1) == 1.25
    assert manager.calculate_delay(3) == 4.25
    assert manager.calculate_delay(10) == 30
