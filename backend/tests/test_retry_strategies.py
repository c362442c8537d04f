"""Tests for workflow retry strategies."""

import pytest

from core.exceptions import DefinitionError
from workflow.retry_strategies import (
    RETRY_PRESETS,
    ReplayFrom,
    RetryPolicy,
    RetryStrategy,
)


# ─── RetryStrategy creation ───

@pytest.mark.unit
class TestRetryStrategyCreation:
    def test_none_strategy(self):
        s = RetryStrategy.none()
        assert s.policy == RetryPolicy.NONE
        assert s.limit == 0

    def test_fixed_strategy(self):
        s = RetryStrategy.fixed(limit=3, delay=5.0)
        assert s.policy == RetryPolicy.FIXED
        assert s.base_delay == 5.0
        assert s.jitter is False

    def test_exponential_strategy(self):
        s = RetryStrategy.exponential(limit=5, base_delay=1.0, max_delay=60.0)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.limit == 5
        assert s.jitter is False

    def test_linear_strategy(self):
        s = RetryStrategy.linear(limit=4, base_delay=2.0)
        assert s.policy == RetryPolicy.LINEAR
        assert s.base_delay == 2.0

    def test_from_dict(self):
        config = {
            'policy': 'exponential',
            'limit': 7,
            'base_delay': 0.5,
            'max_delay': 120.0,
            'jitter': True,
        }
        s = RetryStrategy.from_dict(config)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.limit == 7
        assert s.base_delay == 0.5
        assert s.replay_from == ReplayFrom.HERE

    def test_to_dict_roundtrip(self):
        original = RetryStrategy.exponential(limit=5, base_delay=0.5, replay_from=ReplayFrom.START)
        restored = RetryStrategy.from_dict(original.to_dict())
        assert restored == original

    def test_default_backoff(self):
        s = RetryStrategy.from_dict({}, default_backoff=0.25)
        assert s.policy == RetryPolicy.FIXED
        assert s.limit is None
        assert s.base_delay == 0.25


# ─── Text form ───

@pytest.mark.unit
class TestFromText:
    def test_full_form(self):
        s = RetryStrategy.from_text("from start limit 20 backoff 5ms")
        assert s.replay_from == ReplayFrom.START
        assert s.limit == 20
        assert s.policy == RetryPolicy.FIXED
        assert s.base_delay == pytest.approx(0.005)

    def test_increasing_backoff(self):
        s = RetryStrategy.from_text("backoff 10ms increasing 2x up to 1s")
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.limit is None
        assert s.compute_delay(3) == pytest.approx(0.04)
        assert s.compute_delay(10) == 1.0

    def test_empty_retries_forever(self):
        s = RetryStrategy.from_text("")
        assert s.should_retry(1000)

    @pytest.mark.parametrize("text", ["limit many", "backoff soon", "from middle"])
    def test_invalid(self, text):
        with pytest.raises(DefinitionError):
            RetryStrategy.from_text(text)


# ─── Delay computation ───

@pytest.mark.unit
class TestDelayComputation:
    def test_none_delay(self):
        s = RetryStrategy.none()
        assert s.compute_delay(1) == 0.0

    def test_fixed_delay(self):
        s = RetryStrategy.fixed(delay=5.0)
        assert s.compute_delay(1) == 5.0
        assert s.compute_delay(3) == 5.0

    def test_exponential_delay_no_jitter(self):
        s = RetryStrategy.exponential(base_delay=1.0, jitter=False)
        assert s.compute_delay(1) == 1.0
        assert s.compute_delay(2) == 2.0
        assert s.compute_delay(3) == 4.0
        assert s.compute_delay(4) == 8.0

    def test_linear_delay(self):
        s = RetryStrategy.linear(base_delay=2.0)
        assert s.compute_delay(1) == 2.0
        assert s.compute_delay(2) == 4.0
        assert s.compute_delay(3) == 6.0

    def test_max_delay_cap(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=30.0, jitter=False)
        assert s.compute_delay(5) == 30.0  # 10 * 16 = 160, capped at 30

    def test_exponential_with_jitter_in_range(self):
        s = RetryStrategy.exponential(base_delay=10.0, jitter=True, max_delay=100.0)
        for _ in range(50):
            delay = s.compute_delay(1)
            # base=10, jitter_range=0.5 → between 5 and 15
            assert 5.0 <= delay <= 15.0


# ─── Should retry ───

@pytest.mark.unit
class TestShouldRetry:
    def test_none_never_retries(self):
        s = RetryStrategy.none()
        assert s.should_retry(0) is False

    def test_limit(self):
        s = RetryStrategy.fixed(limit=3)
        assert s.should_retry(2) is True
        assert s.should_retry(3) is False

    def test_unbounded(self):
        s = RetryStrategy.fixed(limit=None)
        assert s.should_retry(10_000) is True


# ─── Presets ───

@pytest.mark.unit
class TestPresets:
    def test_all_presets_exist(self):
        expected = {'none', 'conservative', 'aggressive', 'conflict', 'forever'}
        assert set(RETRY_PRESETS.keys()) == expected

    def test_presets_are_valid(self):
        for name, strategy in RETRY_PRESETS.items():
            assert isinstance(strategy, RetryStrategy)
            assert strategy.limit is None or strategy.limit >= 0

    def test_preset_by_name(self):
        s = RetryStrategy.from_dict({'policy': 'conservative', 'limit': '5', 'from': 'start'})
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.limit == 5
        assert s.base_delay == 2.0
        assert s.replay_from == ReplayFrom.START
        assert RETRY_PRESETS['conservative'].limit == 3

    def test_unknown_policy(self):
        with pytest.raises(DefinitionError, match="Unknown retry policy"):
            RetryStrategy.from_dict({'policy': 'sometimes'})
