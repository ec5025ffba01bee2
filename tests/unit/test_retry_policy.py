"""
Retry Policy Unit Tests
"""

import random
from datetime import timedelta

import pytest

from vendhub_fiscal.models.queue import OperationKind
from vendhub_fiscal.services.retry_policy import RetryPolicies, RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy"""

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_retries=5, base_delay=1000, max_delay=60000)
        assert [policy.backoff(n) for n in range(4)] == [1000, 2000, 4000, 8000]

    def test_backoff_capped(self):
        policy = RetryPolicy(max_retries=10, base_delay=1000, max_delay=5000)
        assert policy.backoff(8) == 5000

    def test_jitter_bounded(self):
        """Should add at most the jitter ratio of the capped delay"""
        policy = RetryPolicy(max_retries=5, base_delay=1000, max_delay=5000, jitter=0.5)
        rng = random.Random(7)

        delays = [policy.backoff(8, rng) for _ in range(50)]

        assert all(5000 <= d <= 7500 for d in delays)
        assert len(set(delays)) > 1

    def test_jitter_needs_rng(self):
        policy = RetryPolicy(max_retries=5, base_delay=1000, max_delay=5000, jitter=0.5)
        assert policy.backoff(1) == 2000

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": 0, "base_delay": 1000, "max_delay": 5000},
        {"max_retries": 3, "base_delay": 0, "max_delay": 5000},
        {"max_retries": 3, "base_delay": 5000, "max_delay": 1000},
        {"max_retries": 3, "base_delay": 1000, "max_delay": 5000, "jitter": 1.5},
    ])
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryPolicies:
    """Tests for per-operation lookup"""

    def test_from_config(self, config, clock):
        policies = RetryPolicies.from_config(config)
        policy = policies.for_operation(OperationKind.RECEIPT_SALE)

        assert policy.max_retries == 5
        assert policies.next_retry_at(OperationKind.RECEIPT_SALE, 2, clock.now()) == (
            clock.now() + timedelta(seconds=4)
        )

    def test_override(self, config, clock):
        close_policy = RetryPolicy(max_retries=20, base_delay=60000, max_delay=3600000)
        policies = RetryPolicies.from_config(
            config, overrides={OperationKind.SHIFT_CLOSE: close_policy}
        )

        assert policies.for_operation(OperationKind.SHIFT_CLOSE) is close_policy
        assert policies.for_operation(OperationKind.SHIFT_OPEN).max_retries == 5

    def test_precondition_delay(self, config, clock):
        policies = RetryPolicies.from_config(config)
        assert policies.precondition_retry_at(OperationKind.RECEIPT_SALE, clock.now()) == (
            clock.now() + timedelta(seconds=2)
        )
