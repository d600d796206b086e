from __future__ import annotations

import random
import time
from typing import Callable

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt
from tenacity.wait import wait_base

from .errors import LifecycleError, ProbeTimeout

TRANSIENT_ERRORS = (LifecycleError, ProbeTimeout)


class wait_jittered_exponential(wait_base):
    """Exponential backoff (base * 2**n, capped) scaled by a +/- jitter factor."""

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 30.0,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        self.base = base
        self.cap = cap
        self.jitter = max(0.0, min(1.0, jitter))
        self.rng = rng or random.Random()

    def delay(self, attempt_number: int) -> float:
        exp = self.base * (2 ** max(0, attempt_number - 1))
        factor = self.rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return max(0.0, min(self.cap, exp * factor))

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.delay(retry_state.attempt_number)


def apply_retrying(
    attempts: int = 3,
    base: float = 1.0,
    cap: float = 30.0,
    jitter: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> Retrying:
    """Retry policy for applying one intent within a tick.

    Only transient errors are retried; the last one is re-raised so the
    caller can record the failure and let the next tick re-derive the intent.
    """
    return Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_jittered_exponential(base=base, cap=cap, jitter=jitter, rng=rng),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        sleep=sleep,
        reraise=True,
    )
