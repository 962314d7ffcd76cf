"""
Signature confirmation for Solana transactions.

Confirmation waits for a websocket signature notification. When none arrives
in time, a single rate limited status poll decides between confirmed and
timed out.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from loguru import logger
from solana.rpc.websocket_api import connect
from solders.signature import Signature

from bundlebot.solana.dispatcher import RateLimitedDispatcher
from bundlebot.solana.errors import SubscriptionError
from bundlebot.solana.models import (
    ConfirmationMethod,
    ConfirmationResult,
    ConfirmationStatus,
    RpcProfile,
)

COMMITMENT_RANK = {
    "processed": 0,
    "confirmed": 1,
    "finalized": 2,
}


def commitment_name(value: Any) -> Optional[str]:
    """
    Normalise a commitment / confirmation status to its lowercase name.

    Accepts plain strings as well as solders' TransactionConfirmationStatus,
    whose str() looks like "TransactionConfirmationStatus.Confirmed".
    """
    if value is None:
        return None
    return str(value).rsplit(".", 1)[-1].lower()


def commitment_reached(confirmation_status: Any, commitment: str) -> bool:
    """True if `confirmation_status` is at least as final as `commitment`."""
    actual = COMMITMENT_RANK.get(commitment_name(confirmation_status))
    target = COMMITMENT_RANK.get(commitment_name(commitment), COMMITMENT_RANK["confirmed"])
    return actual is not None and actual >= target


def to_signature(signature) -> Signature:
    if isinstance(signature, Signature):
        return signature
    return Signature.from_string(str(signature))


@dataclass(frozen=True)
class SignatureNotice:
    """A signature notification: `err` is None when the transaction succeeded."""
    err: Optional[str] = None
    slot: Optional[int] = None


class SignatureSubscription:
    """Handle for one live signature subscription."""

    async def wait(self) -> SignatureNotice:
        raise NotImplementedError


class SignatureSubscriber:
    """
    Source of push notifications for transaction signatures.

    `subscribe` is an async context manager; leaving the block always
    releases the subscription, whichever way the block exits.
    """

    def subscribe(self, signature: str, commitment: str):
        raise NotImplementedError


class _WebsocketSubscription(SignatureSubscription):

    def __init__(self, websocket, signature: str):
        self._websocket = websocket
        self._signature = signature

    async def wait(self) -> SignatureNotice:
        try:
            while True:
                messages = await self._websocket.recv()
                for message in messages:
                    result = getattr(message, "result", None)
                    value = getattr(result, "value", None)
                    if value is None or not hasattr(value, "err"):
                        continue
                    context = getattr(result, "context", None)
                    err = value.err
                    return SignatureNotice(
                        err=str(err) if err is not None else None,
                        slot=getattr(context, "slot", None),
                    )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise SubscriptionError(f"Signature subscription for {self._signature[:8]} dropped: {e}") from e


class WebsocketSignatureSubscriber(SignatureSubscriber):
    """
    Signature notifications over the Solana RPC websocket (signatureSubscribe).
    """

    def __init__(self, ws_url: str):
        self.ws_url = ws_url

    @asynccontextmanager
    async def subscribe(self, signature: str, commitment: str) -> AsyncIterator[SignatureSubscription]:
        try:
            websocket_cm = connect(self.ws_url)
            websocket = await websocket_cm.__aenter__()
        except Exception as e:
            raise SubscriptionError(f"Could not connect to {self.ws_url}: {e}") from e

        subscription_id = None
        try:
            try:
                await websocket.signature_subscribe(to_signature(signature), commitment=commitment)
                first_response = await websocket.recv()
                subscription_id = first_response[0].result
            except Exception as e:
                raise SubscriptionError(f"signatureSubscribe failed for {signature[:8]}: {e}") from e

            logger.debug(f"Subscribed to signature {signature[:8]}... (subscription {subscription_id})")
            yield _WebsocketSubscription(websocket, signature)
        finally:
            if subscription_id is not None:
                try:
                    await websocket.signature_unsubscribe(subscription_id)
                except Exception as e:
                    logger.debug(f"signatureUnsubscribe failed for {signature[:8]}: {e}")
            await websocket_cm.__aexit__(None, None, None)


class ConfirmationWatcher:
    """
    Drives one signature to a terminal confirmation state:
    confirmed, failed or timed out.
    """

    # Minimum pause between status polls in poll mode; the profile's call
    # interval raises it
    POLL_SLEEP_SECONDS = 0.5

    def __init__(self,
                 client,
                 dispatcher: RateLimitedDispatcher,
                 profile: Optional[RpcProfile] = None,
                 subscriber: Optional[SignatureSubscriber] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the watcher.

        Args:
            client: solana AsyncClient (or compatible)
            dispatcher: Dispatcher all RPC calls are routed through
            profile: Provider profile; defaults to the dispatcher's
            subscriber: Push notification source; without it the watcher polls
            sleep: Awaitable sleep used between status polls
            clock: Monotonic clock for the poll deadline
        """
        self.client = client
        self.dispatcher = dispatcher
        self.profile = profile or dispatcher.profile
        self.subscriber = subscriber
        self._sleep = sleep
        self._clock = clock

    @property
    def poll_interval(self) -> float:
        return max(self.POLL_SLEEP_SECONDS, self.profile.call_interval_ms / 1000)

    @property
    def push_enabled(self) -> bool:
        return self.profile.use_push_confirmation and self.subscriber is not None

    async def watch(self,
                    signature: str,
                    commitment: str = "confirmed",
                    timeout_ms: Optional[int] = None,
                    last_valid_block_height: Optional[int] = None) -> ConfirmationResult:
        """
        Wait for a signature to reach `commitment`.

        Args:
            signature: Base58 transaction signature
            commitment: Target commitment level
            timeout_ms: Timeout, defaults to the profile's confirmation timeout
            last_valid_block_height: Expiry height of the transaction's blockhash

        Returns:
            ConfirmationResult; timed_out means the outcome is unknown
        """
        timeout = (timeout_ms if timeout_ms is not None else self.profile.confirmation_timeout_ms) / 1000
        start = time.monotonic()

        if self.push_enabled:
            try:
                return await self._watch_push(signature, commitment, timeout, start)
            except SubscriptionError as e:
                logger.warning(f"Push confirmation unavailable, polling instead: {e}")
                timeout = max(timeout - (time.monotonic() - start), 0)

        return await self._watch_poll(signature, commitment, timeout, start, last_valid_block_height)

    async def _watch_push(self, signature: str, commitment: str, timeout: float,
                          start: float) -> ConfirmationResult:
        try:
            async with self.subscriber.subscribe(signature, commitment) as subscription:
                notice = await asyncio.wait_for(subscription.wait(), timeout)
        except asyncio.TimeoutError:
            logger.info(f"Notification timeout for {signature[:8]}..., doing final status check")
            return await self._last_chance(signature, commitment, start)

        if notice.err is not None:
            logger.warning(f"Transaction {signature[:8]}... failed: {notice.err}")
            return self._result(signature, ConfirmationStatus.FAILED, ConfirmationMethod.PUSH, start,
                                error=notice.err)

        logger.info(f"Transaction {signature[:8]}... confirmed via notification (slot {notice.slot})")
        return self._result(signature, ConfirmationStatus.CONFIRMED, ConfirmationMethod.PUSH, start)

    async def _watch_poll(self, signature: str, commitment: str, timeout: float, start: float,
                          last_valid_block_height: Optional[int]) -> ConfirmationResult:
        deadline = self._clock() + timeout
        while True:
            status = await self.fetch_status(signature)
            if status is not None and commitment_reached(status.confirmation_status, commitment):
                if status.err is not None:
                    logger.warning(f"Transaction {signature[:8]}... failed: {status.err}")
                    return self._result(signature, ConfirmationStatus.FAILED, ConfirmationMethod.POLL, start,
                                        error=str(status.err))
                logger.info(f"Transaction {signature[:8]}... confirmed by status poll")
                return self._result(signature, ConfirmationStatus.CONFIRMED, ConfirmationMethod.POLL, start)

            if last_valid_block_height is not None and await self._block_height() > last_valid_block_height:
                logger.info(f"Blockhash of {signature[:8]}... expired, doing final status check")
                return await self._last_chance(signature, commitment, start)

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(self.poll_interval, remaining))

        logger.info(f"Polling timeout for {signature[:8]}..., doing final status check")
        return await self._last_chance(signature, commitment, start)

    async def _block_height(self) -> int:
        response = await self.dispatcher.call(lambda: self.client.get_block_height())
        return response.value

    async def _last_chance(self, signature: str, commitment: str, start: float) -> ConfirmationResult:
        try:
            status = await self.fetch_status(signature)
        except Exception as e:
            logger.warning(f"Final status check failed for {signature[:8]}...: {e}")
            return self._result(signature, ConfirmationStatus.TIMED_OUT, ConfirmationMethod.POLL_FALLBACK,
                                start, error=f"status check failed: {e}")

        if status is not None and commitment_reached(status.confirmation_status, commitment):
            if status.err is None:
                logger.info(f"Transaction {signature[:8]}... confirmed by final status check")
                return self._result(signature, ConfirmationStatus.CONFIRMED,
                                    ConfirmationMethod.POLL_FALLBACK, start)
            return self._result(signature, ConfirmationStatus.FAILED, ConfirmationMethod.POLL_FALLBACK,
                                start, error=str(status.err))

        return self._result(signature, ConfirmationStatus.TIMED_OUT, ConfirmationMethod.POLL_FALLBACK,
                            start, error="confirmation timed out")

    async def fetch_status(self, signature: str):
        """
        Query the current status of a signature through the dispatcher.

        Returns:
            solders TransactionStatus, or None if the cluster has no record
        """
        response = await self.dispatcher.call(
            lambda: self.client.get_signature_statuses([to_signature(signature)])
        )
        statuses = getattr(response, "value", None) or [None]
        return statuses[0]

    async def check_status(self, signature: str, commitment: str = "confirmed") -> bool:
        """True if the signature already reached `commitment` without error."""
        status = await self.fetch_status(signature)
        return (
            status is not None
            and status.err is None
            and commitment_reached(status.confirmation_status, commitment)
        )

    @staticmethod
    def _result(signature: str, status: ConfirmationStatus, method: ConfirmationMethod, start: float,
                error: Optional[str] = None) -> ConfirmationResult:
        return ConfirmationResult(
            signature=signature,
            status=status,
            method=method,
            error=error,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
