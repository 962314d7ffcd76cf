"""
Jito relay client for atomic transaction bundles.

Bundle sends from every client in the process share one RelaySendGate: the
relay enforces its rate limit per organisation, so the floor between two
POSTs is global. Bundles are confirmed through the first transaction's
signature only and the relay's own status endpoints are never polled.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import aiohttp
from loguru import logger
from solders.transaction import VersionedTransaction

from bundlebot.solana.bundle_builder import (
    as_versioned_transaction,
    decode_transaction,
    encode_transaction,
    validate_bundle_size,
)
from bundlebot.solana.confirmation import ConfirmationWatcher
from bundlebot.solana.errors import (
    BundleProtocolError,
    BundleValidationError,
    RelayRateLimitedError,
    RelaySubmissionError,
    RelayTransportError,
)
from bundlebot.solana.models import BundleOptions, BundleOutcome, ConfirmationResult, PreparedBundle
from bundlebot.utils.rate_limit_utils import retry_after_seconds


class RelaySendGate:
    """
    Process-wide bundle send floor and endpoint rotation cursor.

    Create one at startup and share it between all relay clients.
    """

    def __init__(self, interval_seconds: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.interval_seconds = interval_seconds
        self._clock = clock
        self.last_send: Optional[float] = None
        self.cursor = 0
        self.total_sends = 0

    def reserve(self) -> float:
        """Claim the next send slot and return how long to wait for it."""
        now = self._clock()
        start = now
        if self.last_send is not None:
            start = max(now, self.last_send + self.interval_seconds)
        self.last_send = start
        self.total_sends += 1
        return start - now

    def advance(self, endpoint_count: int) -> int:
        """Move the rotation cursor to the next endpoint, wrapping."""
        self.cursor = (self.cursor + 1) % max(endpoint_count, 1)
        return self.cursor


BundleTransactions = Union[PreparedBundle, Sequence[Union[VersionedTransaction, bytes, str]]]


class RelayBundleClient:
    """
    Submits signed transaction bundles to a prioritized list of relay endpoints.
    """

    # Per-request HTTP timeout in seconds
    REQUEST_TIMEOUT = 30

    def __init__(self,
                 endpoints: Sequence[str],
                 watcher: ConfirmationWatcher,
                 gate: Optional[RelaySendGate] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Initialize the relay client.

        Args:
            endpoints: Relay bundle endpoints, most preferred first
            watcher: ConfirmationWatcher used for bundle confirmation
            gate: Shared send gate; a private one is created if omitted
            session: aiohttp session; one is created on first use if omitted
            sleep: Awaitable sleep used for every wait
        """
        if not endpoints:
            raise ValueError("At least one relay endpoint is required")
        self.endpoints = tuple(endpoints)
        self.watcher = watcher
        self.gate = gate if gate is not None else RelaySendGate()
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    @property
    def current_endpoint(self) -> str:
        return self.endpoints[self.gate.cursor % len(self.endpoints)]

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.REQUEST_TIMEOUT),
                headers={"Content-Type": "application/json"},
            )
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @staticmethod
    def build_request(encoded_transactions: Sequence[str], encoding: str) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendBundle",
            "params": [list(encoded_transactions), {"encoding": encoding}],
        }

    @staticmethod
    def encode_bundle(transactions: BundleTransactions, encoding: str) -> List[str]:
        if isinstance(transactions, PreparedBundle):
            if transactions.encoding != encoding:
                raise BundleValidationError(
                    f"Bundle was prepared as {transactions.encoding}, cannot send as {encoding}"
                )
            return list(transactions.encoded_transactions)

        encoded = []
        for tx in transactions:
            # strings are taken as already encoded
            if isinstance(tx, str):
                encoded.append(tx)
            else:
                encoded.append(encode_transaction(bytes(tx), encoding))
        return encoded

    @staticmethod
    def first_signature(transactions: BundleTransactions, encoding: str = "base58") -> str:
        """Signature of the first transaction in a bundle."""
        if isinstance(transactions, PreparedBundle):
            return transactions.first_signature
        if not transactions:
            raise BundleValidationError("Cannot take the first signature of an empty bundle")

        first = transactions[0]
        if isinstance(first, str):
            first = decode_transaction(first, encoding)
        tx = as_versioned_transaction(first)
        return str(tx.signatures[0])

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        wait = self.gate.reserve()
        if wait > 0:
            logger.debug(f"Relay send gate: waiting {wait:.2f}s")
            await self._sleep(wait)

        session = await self._get_session()
        try:
            async with session.post(endpoint, json=payload) as response:
                if response.status == 429:
                    raise RelayRateLimitedError(
                        f"Rate limited by relay endpoint {endpoint}",
                        endpoint=endpoint,
                        retry_after=retry_after_seconds(response.headers),
                    )
                if response.status != 200:
                    text = await response.text()
                    raise RelayTransportError(f"HTTP {response.status} from {endpoint}: {text[:200]}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise BundleProtocolError(f"sendBundle response from {endpoint} is not valid JSON: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RelayTransportError(f"Request to {endpoint} failed: {e}") from e

    async def _send_on_endpoint(self, endpoint: str, payload: Dict[str, Any], options: BundleOptions) -> str:
        delay = options.initial_delay_ms / 1000
        max_delay = options.max_delay_ms / 1000
        last_error: Optional[BaseException] = None

        for attempt in range(1, options.max_retries + 1):
            try:
                data = await self._post(endpoint, payload)
            except RelayTransportError as e:
                last_error = e
            else:
                if not isinstance(data, dict):
                    raise BundleProtocolError(f"sendBundle response from {endpoint} is not a JSON object: {data!r}")
                error = data.get("error")
                if error:
                    message = error.get("message", error) if isinstance(error, dict) else error
                    code = error.get("code", "N/A") if isinstance(error, dict) else "N/A"
                    last_error = RelayTransportError(f"sendBundle RPC error: {message} (code {code})")
                elif not data.get("result"):
                    raise BundleProtocolError(f"sendBundle response from {endpoint} has no bundle id: {data}")
                else:
                    return str(data["result"])

            logger.warning(f"Bundle send attempt {attempt}/{options.max_retries} on {endpoint} failed: {last_error}")
            if attempt < options.max_retries:
                await self._sleep(delay)
                delay = min(delay * 2, max_delay)

        raise RelaySubmissionError(
            f"Bundle send to {endpoint} failed after {options.max_retries} attempts: {last_error}",
            attempts=options.max_retries,
            last_error=last_error,
            endpoint=endpoint,
        )

    async def submit_bundle(self,
                            signed_transactions: BundleTransactions,
                            options: Optional[BundleOptions] = None) -> str:
        """
        Send a bundle of signed transactions to the relay.

        Args:
            signed_transactions: PreparedBundle, or signed transactions as
                solders objects, serialized bytes or encoded strings
            options: Encoding, retry and rotation settings

        Returns:
            The relay's bundle id

        Raises:
            BundleValidationError: If the bundle is empty or too large
            BundleProtocolError: If the relay accepted but returned no id
            RelaySubmissionError: If every attempt or rotation failed
        """
        options = options or BundleOptions()
        encoded = self.encode_bundle(signed_transactions, options.encoding)
        validate_bundle_size(len(encoded))
        payload = self.build_request(encoded, options.encoding)

        rotations = 0
        while True:
            endpoint = self.current_endpoint
            try:
                bundle_id = await self._send_on_endpoint(endpoint, payload, options)
            except RelayRateLimitedError as e:
                if rotations >= options.max_rotations:
                    raise RelaySubmissionError(
                        f"Bundle rate limited on {rotations + 1} endpoints",
                        attempts=rotations + 1,
                        last_error=e,
                        endpoint=endpoint,
                    ) from e
                rotations += 1
                self.gate.advance(len(self.endpoints))
                logger.warning(
                    f"Relay endpoint {endpoint} rate limited, rotating to {self.current_endpoint} "
                    f"({rotations}/{options.max_rotations})"
                )
                # Retry-After from the relay overrides the configured rotation delay
                delay = e.retry_after if e.retry_after is not None else options.rotation_delay_ms / 1000
                await self._sleep(delay)
                continue

            logger.info(f"Bundle sent to {endpoint}: {bundle_id} ({len(encoded)} transactions)")
            return bundle_id

    async def confirm_bundle(self,
                             first_signature: str,
                             commitment: str = "confirmed",
                             timeout_ms: Optional[int] = None) -> ConfirmationResult:
        """
        Confirm a bundle through its first transaction's signature.

        Bundles land atomically, so the first transaction's outcome is the
        bundle's outcome.
        """
        result = await self.watcher.watch(first_signature, commitment=commitment, timeout_ms=timeout_ms)
        if result.confirmed:
            logger.info(f"Bundle with first signature {first_signature[:8]}... confirmed ({result.method.value})")
        else:
            logger.warning(f"Bundle with first signature {first_signature[:8]}... {result.status.value}: {result.error}")
        return result

    async def send_and_confirm_bundle(self,
                                      signed_transactions: BundleTransactions,
                                      options: Optional[BundleOptions] = None,
                                      commitment: str = "confirmed",
                                      timeout_ms: Optional[int] = None) -> BundleOutcome:
        options = options or BundleOptions()
        first_signature = self.first_signature(signed_transactions, options.encoding)
        bundle_id = await self.submit_bundle(signed_transactions, options)
        confirmation = await self.confirm_bundle(first_signature, commitment, timeout_ms)
        return BundleOutcome(bundle_id=bundle_id, first_signature=first_signature, confirmation=confirmation)
