"""Exponential backoff with jitter around provider calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from lockchain.core.config import RetryConfig
from lockchain.core.exceptions import ProviderError, is_transient
from lockchain.core.models import Severity

from . import events as codes

logger = logging.getLogger(__name__)

T = TypeVar("T")

# emit(severity, code, message, dataset)
Emitter = Callable[[Severity, str, str, Optional[str]], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter_ratio: float = 0.1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            base_delay=cfg.base_delay_ms / 1000.0,
            max_delay=cfg.max_delay_ms / 1000.0,
            jitter_ratio=cfg.jitter_ratio,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay after *attempt* (1-based): doubles, capped at max_delay."""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # cap the exponent so huge attempt numbers do not overflow
        exponent = min(attempt - 1, 64)
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        base = self.base_delay_for(attempt)
        if self.jitter_ratio == 0:
            return base
        rng = rng or random
        factor = rng.uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return max(0.0, base * factor)


class Retrier:
    """Runs provider calls under a RetryPolicy and reports each retry."""

    def __init__(
        self,
        policy: RetryPolicy,
        emit: Emitter,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.policy = policy
        self._emit = emit
        self._sleep = sleep
        self._rng = rng or random.Random()

    def call(self, operation: str, fn: Callable[[], T], dataset: Optional[str] = None) -> T:
        """Invoke *fn*, retrying transient ProviderErrors up to max_attempts.

        Non-transient errors propagate on the first failure. On exhaustion the
        last ProviderError is re-raised with ``attempts`` set.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except ProviderError as err:
                if not is_transient(err):
                    raise
                if attempt >= self.policy.max_attempts:
                    err.attempts = attempt
                    if err.dataset is None:
                        err.dataset = dataset
                    self._emit(
                        Severity.ERROR,
                        codes.PROVIDER_EXHAUSTED,
                        f"{operation} failed after {attempt} attempt(s): {err}",
                        dataset,
                    )
                    raise
                wait = self.policy.delay(attempt, self._rng)
                self._emit(
                    Severity.WARNING,
                    codes.PROVIDER_RETRY,
                    f"{operation} attempt {attempt}/{self.policy.max_attempts} failed: {err}; "
                    f"retrying in {wait:.3f}s",
                    dataset,
                )
                logger.debug("retrying %s for %s in %.3fs", operation, dataset, wait)
                self._sleep(wait)
