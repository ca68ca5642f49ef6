"""Unit tests for the retry policy and retrier."""

import random

import pytest

from lockchain.core.config import RetryConfig
from lockchain.core.exceptions import DatasetNotFound, ProviderError
from lockchain.core.models import Severity
from lockchain.workflow import events as codes
from lockchain.workflow.retry import Retrier, RetryPolicy


class Flaky:
    def __init__(self, failures, error=None):
        self.failures = failures
        self.calls = 0
        self.error = error

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error or ProviderError(f"timeout #{self.calls}")
        return "ok"


@pytest.fixture
def emitted():
    return []


def _retrier(emitted, sleeps, **policy):
    return Retrier(
        RetryPolicy(**policy),
        lambda *args: emitted.append(args),
        sleep=sleeps.append,
        rng=random.Random(1),
    )


# ==============================================================================
# RetryPolicy
# ==============================================================================

def test_from_config_converts_milliseconds():
    policy = RetryPolicy.from_config(RetryConfig(max_attempts=4, base_delay_ms=250, max_delay_ms=2000))
    assert policy == RetryPolicy(max_attempts=4, base_delay=0.25, max_delay=2.0, jitter_ratio=0.1)


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"jitter_ratio": -0.1}, {"jitter_ratio": 1.1}])
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_base_delay_doubles_then_caps():
    policy = RetryPolicy(base_delay=0.5, max_delay=5.0)
    assert [policy.base_delay_for(n) for n in range(1, 7)] == [0.5, 1.0, 2.0, 4.0, 5.0, 5.0]


def test_huge_attempt_numbers_stay_capped():
    assert RetryPolicy(base_delay=0.5, max_delay=5.0).base_delay_for(10_000) == 5.0


@pytest.mark.parametrize("seed", range(25))
def test_delay_properties_hold_for_random_policies(seed):
    rng = random.Random(seed)
    base = rng.uniform(0.001, 2.0)
    policy = RetryPolicy(
        max_attempts=rng.randint(1, 10),
        base_delay=base,
        max_delay=base * rng.uniform(1.0, 50.0),
        jitter_ratio=rng.uniform(0.0, 1.0),
    )
    previous = 0.0
    for attempt in range(1, 40):
        raw = policy.base_delay_for(attempt)
        assert raw >= previous
        assert raw <= policy.max_delay
        previous = raw
        jittered = policy.delay(attempt, rng)
        assert raw * (1 - policy.jitter_ratio) - 1e-9 <= jittered <= raw * (1 + policy.jitter_ratio) + 1e-9
        assert jittered >= 0


def test_zero_jitter_is_exact():
    assert RetryPolicy(jitter_ratio=0).delay(2) == 1.0


# ==============================================================================
# Retrier
# ==============================================================================

def test_success_first_try(emitted, sleeps):
    assert _retrier(emitted, sleeps).call("op", lambda: 42) == 42
    assert emitted == [] and sleeps == []


def test_transient_failures_retried(emitted, sleeps):
    fn = Flaky(2)
    assert _retrier(emitted, sleeps, jitter_ratio=0).call("load_key_tree", fn, "tank/b") == "ok"
    assert fn.calls == 3
    assert sleeps == [0.5, 1.0]
    assert [e[1] for e in emitted] == [codes.PROVIDER_RETRY, codes.PROVIDER_RETRY]
    assert all(e[0] is Severity.WARNING and e[3] == "tank/b" for e in emitted)


def test_exhaustion_reraises_with_attempts(emitted, sleeps):
    fn = Flaky(10)
    with pytest.raises(ProviderError) as exc:
        _retrier(emitted, sleeps, max_attempts=2).call("encryption_root", fn, "tank/a")
    assert fn.calls == 2
    assert exc.value.attempts == 2
    assert exc.value.dataset == "tank/a"
    assert [(e[0], e[1]) for e in emitted] == [
        (Severity.WARNING, codes.PROVIDER_RETRY),
        (Severity.ERROR, codes.PROVIDER_EXHAUSTED),
    ]
    assert len(sleeps) == 1


def test_single_attempt_never_sleeps(emitted, sleeps):
    with pytest.raises(ProviderError):
        _retrier(emitted, sleeps, max_attempts=1).call("op", Flaky(1))
    assert sleeps == []


def test_dataset_not_found_not_retried(emitted, sleeps):
    fn = Flaky(5, error=DatasetNotFound("gone", dataset="tank/x"))
    with pytest.raises(DatasetNotFound):
        _retrier(emitted, sleeps).call("encryption_root", fn, "tank/x")
    assert fn.calls == 1
    assert emitted == []


def test_other_exceptions_propagate(emitted, sleeps):
    def boom():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        _retrier(emitted, sleeps).call("op", boom)
    assert emitted == []
