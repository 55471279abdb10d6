"""
retry.py — Shared retry/backoff policy
=======================================
Used by the RPC client (transport retries) and by the search controller
(caller-side probe retries). Delay before retry n (0-based) is

    min(base_delay * 2**n, cap)

where cap is `cap_delay` for server-side 503s and `network_cap_delay` for
network / cross-origin failures. Non-retryable errors propagate on the
first occurrence.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from .errors import KIND_SERVER, SimulationUnavailable
from .errors import is_retryable as transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts:       int   = 3
    base_delay:         float = 1.0
    cap_delay:          float = 10.0
    network_cap_delay:  float = 5.0
    is_retryable:       Callable[[BaseException], bool] = transient_error
    sleep:              Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int, error: BaseException) -> float:
        """Backoff before the next attempt, capped per error kind."""
        cap = self.cap_delay
        if isinstance(error, SimulationUnavailable) and error.kind != KIND_SERVER:
            cap = self.network_cap_delay
        return min(self.base_delay * (2 ** attempt), cap)

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.base_delay,
            cap_delay=self.cap_delay,
            network_cap_delay=self.network_cap_delay,
            is_retryable=self.is_retryable,
            sleep=self.sleep,
        )

    async def run(self, operation: Callable[[], Awaitable[T]], label: str = "call") -> T:
        """Call `operation` until it succeeds or attempts run out."""
        attempts = max(1, self.max_attempts)
        last_error: BaseException = None
        for attempt in range(attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                if attempt == attempts - 1:
                    break
                delay = self.delay_for(attempt, e)
                logger.warning(
                    f"🔁 {label}: attempt {attempt + 1}/{attempts} failed ({e}); "
                    f"retrying in {delay:.1f}s"
                )
                await self.sleep(delay)

        logger.error(f"❌ {label}: giving up after {attempts} attempts")
        if isinstance(last_error, SimulationUnavailable):
            raise SimulationUnavailable(last_error.kind, attempts, last_error.cause) from last_error
        raise last_error
