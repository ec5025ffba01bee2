"""Retry budgets and backoff per operation kind"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from vendhub_fiscal.config.fiscal_config import FiscalConfig
from vendhub_fiscal.models.queue import OperationKind


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff of one operation kind

    Attributes:
        max_retries: Attempts allowed before the item is FAILED
        base_delay: Backoff base in milliseconds
        max_delay: Backoff cap in milliseconds (jitter is added on top)
        jitter: Random extra delay as a ratio of the capped delay
        precondition_delay: Delay when the shift is not ready, in milliseconds
    """
    max_retries: int
    base_delay: int
    max_delay: int
    jitter: float = 0.0
    precondition_delay: int = 5000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 1 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 1 <= base_delay <= max_delay")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    def backoff(self, retry_count: int, rng: Optional[random.Random] = None) -> int:
        """Delay in milliseconds: base * 2^retry_count, capped, plus jitter"""
        delay = min(self.base_delay * (2 ** retry_count), self.max_delay)
        if self.jitter and rng is not None:
            delay += int(rng.uniform(0, delay * self.jitter))
        return delay


class RetryPolicies:
    """
    Policy lookup with per-operation overrides

    Example:
        >>> policies = RetryPolicies.from_config(config, overrides={
        ...     OperationKind.SHIFT_CLOSE: RetryPolicy(max_retries=20, base_delay=60000,
        ...                                            max_delay=3600000),
        ... })
        >>> policies.next_retry_at(OperationKind.RECEIPT_SALE, 0, now)
    """

    def __init__(
        self,
        default: RetryPolicy,
        overrides: Optional[Dict[OperationKind, RetryPolicy]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._default = default
        self._overrides = dict(overrides or {})
        self._rng = rng or random.Random()

    @classmethod
    def from_config(
        cls,
        config: FiscalConfig,
        overrides: Optional[Dict[OperationKind, RetryPolicy]] = None,
        rng: Optional[random.Random] = None,
    ) -> "RetryPolicies":
        default = RetryPolicy(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
            precondition_delay=config.precondition_retry_delay,
        )
        return cls(default, overrides, rng)

    def for_operation(self, operation: OperationKind) -> RetryPolicy:
        return self._overrides.get(operation, self._default)

    def next_retry_at(
        self, operation: OperationKind, retry_count: int, now: datetime
    ) -> datetime:
        """When a transiently failed item becomes eligible again"""
        delay = self.for_operation(operation).backoff(retry_count, self._rng)
        return now + timedelta(milliseconds=delay)

    def precondition_retry_at(self, operation: OperationKind, now: datetime) -> datetime:
        """When an item waiting for its shift becomes eligible again"""
        delay = self.for_operation(operation).precondition_delay
        return now + timedelta(milliseconds=delay)
