"""
Rate limited dispatch of RPC calls.

Every outbound call to an RPC provider goes through a RateLimitedDispatcher,
which enforces the provider profile's concurrency ceiling and minimum call
interval and recovers from rate-limit responses. It deliberately does not
retry anything else.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from bundlebot.solana.errors import RateLimitExceededError
from bundlebot.solana.models import RpcProfile
from bundlebot.utils.rate_limit_utils import is_rate_limit_error


class RateLimitState:
    """
    Shared dispatch bookkeeping for one RPC profile.

    Construct one per provider at process start and hand the same instance to
    every dispatcher that talks to that provider. All mutations happen in
    synchronous methods so they are atomic with respect to the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.last_dispatch: Optional[float] = None
        self.in_flight = 0
        self.peak_in_flight = 0
        self.total_dispatches = 0

    def try_acquire_slot(self, max_concurrent: int) -> bool:
        if self.in_flight >= max_concurrent:
            return False
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        return True

    def release_slot(self):
        self.in_flight = max(self.in_flight - 1, 0)

    def reserve_dispatch(self, interval_seconds: float) -> float:
        """
        Claim the next dispatch time and return how long to wait for it.

        Reservations are handed out back to back, so concurrent callers are
        spaced by at least `interval_seconds` even while they all sleep.
        """
        now = self._clock()
        start = now
        if self.last_dispatch is not None:
            start = max(now, self.last_dispatch + interval_seconds)
        self.last_dispatch = start
        self.total_dispatches += 1
        return start - now


class RateLimitedDispatcher:
    """
    Throttles and retries calls to a single RPC provider.
    """

    # Maximum dispatch attempts when the provider keeps rate limiting
    MAX_ATTEMPTS = 3
    # Backoff ceiling in seconds
    MAX_BACKOFF = 30.0
    # Poll interval while waiting for a free slot, in seconds
    SLOT_POLL_INTERVAL = 0.05

    def __init__(self,
                 profile: RpcProfile,
                 state: Optional[RateLimitState] = None,
                 max_attempts: int = MAX_ATTEMPTS,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Initialize the dispatcher.

        Args:
            profile: Provider profile with interval, concurrency and backoff
            state: Shared rate limit state; a private one is created if omitted
            max_attempts: Dispatch attempts before giving up on rate limiting
            sleep: Awaitable sleep used for every wait
        """
        self.profile = profile
        self.state = state if state is not None else RateLimitState()
        self.max_attempts = max_attempts
        self._sleep = sleep

    @property
    def interval_seconds(self) -> float:
        return self.profile.call_interval_ms / 1000

    def backoff_for(self, attempt: int) -> float:
        """Backoff before retry `attempt` (0-based) after a rate-limit response."""
        return min(self.profile.retry_backoff_ms / 1000 * (2 ** attempt), self.MAX_BACKOFF)

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run a network operation under the profile's rate limits.

        Args:
            fn: Zero-argument callable returning an awaitable

        Returns:
            Whatever the operation returns

        Raises:
            RateLimitExceededError: If every attempt was rate limited
        """
        while not self.state.try_acquire_slot(self.profile.max_concurrent_requests):
            await self._sleep(self.SLOT_POLL_INTERVAL)

        try:
            last_error = None
            for attempt in range(self.max_attempts):
                wait = self.state.reserve_dispatch(self.interval_seconds)
                if wait > 0:
                    await self._sleep(wait)

                try:
                    return await fn()
                except Exception as e:
                    if not is_rate_limit_error(e):
                        raise
                    last_error = e
                    if attempt + 1 >= self.max_attempts:
                        break
                    backoff = self.backoff_for(attempt)
                    logger.warning(
                        f"RPC rate limited, waiting {backoff:.1f}s (attempt {attempt + 1}/{self.max_attempts})",
                        extra={"profile": self.profile.name, "backoff": backoff}
                    )
                    await self._sleep(backoff)

            logger.error(f"RPC call still rate limited after {self.max_attempts} attempts")
            raise RateLimitExceededError(
                f"RPC call failed after {self.max_attempts} rate limited attempts"
            ) from last_error
        finally:
            self.state.release_slot()
