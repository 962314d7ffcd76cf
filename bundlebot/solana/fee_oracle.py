"""
Priority fee estimation for Solana.
"""

import math
from collections import deque
from typing import Deque, Iterable, List, Optional

from loguru import logger
from solders.pubkey import Pubkey

from bundlebot.solana.dispatcher import RateLimitedDispatcher


class FeeOracle:
    """
    Recommends a compute unit price from recently paid prioritization fees.
    """

    # Used when the cluster reports nothing useful
    DEFAULT_PRIORITY_FEE = 100_000  # micro-lamports
    # Never recommend less than this
    MIN_PRIORITY_FEE = 50_000
    PERCENTILE = 0.9
    # Number of recent recommendations to keep; the latest stands in when the RPC fails
    HISTORY_SIZE = 20

    def __init__(self,
                 client,
                 dispatcher: RateLimitedDispatcher,
                 default_fee: int = DEFAULT_PRIORITY_FEE,
                 min_fee: int = MIN_PRIORITY_FEE):
        """
        Initialize the fee oracle.

        Args:
            client: solana AsyncClient (or compatible)
            dispatcher: Dispatcher the fee query is routed through
            default_fee: Fallback compute unit price in micro-lamports
            min_fee: Floor for the recommendation in micro-lamports
        """
        self.client = client
        self.dispatcher = dispatcher
        self.default_fee = default_fee
        self.min_fee = min_fee

        self.fee_history: Deque[int] = deque(maxlen=self.HISTORY_SIZE)

    @property
    def fallback_fee(self) -> int:
        """Most recent recommendation, or the default before the first one."""
        if self.fee_history:
            return self.fee_history[-1]
        return self.default_fee

    @staticmethod
    def percentile(values: List[int], fraction: float) -> int:
        """Nearest-rank percentile of a non-empty list."""
        ordered = sorted(values)
        index = min(max(math.ceil(fraction * len(ordered)) - 1, 0), len(ordered) - 1)
        return ordered[index]

    async def recommend_priority_fee(self, accounts: Optional[Iterable] = None) -> int:
        """
        Recommend a compute unit price for transactions touching `accounts`.

        Args:
            accounts: Writable accounts of the transaction (Pubkey or base58 str)

        Returns:
            Compute unit price in micro-lamports
        """
        keys = [a if isinstance(a, Pubkey) else Pubkey.from_string(str(a)) for a in (accounts or [])]

        try:
            response = await self.dispatcher.call(
                lambda: self.client.get_recent_prioritization_fees(keys or None)
            )
            fees = [entry.prioritization_fee for entry in (response.value or [])]
        except Exception as e:
            fallback = self.fallback_fee
            logger.warning(f"Error fetching prioritization fees, using {fallback}: {e}")
            return fallback

        non_zero = [fee for fee in fees if fee > 0]
        if not non_zero:
            logger.debug(f"No recent prioritization fees, using default {self.default_fee}")
            return self.default_fee

        recommended = max(self.percentile(non_zero, self.PERCENTILE), self.min_fee)
        self.fee_history.append(recommended)

        logger.debug(
            f"Recommended priority fee: {recommended} micro-lamports from {len(non_zero)} samples",
            extra={"fee": recommended, "samples": len(non_zero)}
        )
        return recommended
