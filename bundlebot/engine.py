"""
Transaction execution engine.

Wires the dispatcher, confirmation watcher, submitter, batch executor and
relay client together from configuration and exposes them as one object.
"""

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair

from bundlebot import config
from bundlebot.solana import bundle_builder, cost_model
from bundlebot.solana.batch_executor import ParallelBatchExecutor
from bundlebot.solana.confirmation import (
    ConfirmationWatcher,
    SignatureSubscriber,
    WebsocketSignatureSubscriber,
)
from bundlebot.solana.dispatcher import RateLimitedDispatcher, RateLimitState
from bundlebot.solana.fee_oracle import FeeOracle
from bundlebot.solana.models import (
    BalanceValidation,
    BatchItem,
    BatchResult,
    BundleEntry,
    BundleOptions,
    BundleOutcome,
    ConfirmationResult,
    CostBreakdown,
    PreparedBundle,
    RpcProfile,
    SignatureConfirmation,
    SubmitOptions,
    TransactionRequest,
)
from bundlebot.solana.relay_client import RelayBundleClient, RelaySendGate
from bundlebot.solana.submitter import TransactionSubmitter

TX_EVENTS = ("on_tx_sent", "on_tx_confirmed", "on_tx_failed", "on_tx_retry")


class ExecutionEngine:
    """
    Single entry point for submitting, confirming and bundling transactions.

    Shared rate limit state (RateLimitState, RelaySendGate) can be passed in
    so several engines in one process respect the same provider limits.
    """

    def __init__(self,
                 rpc_url: Optional[str] = None,
                 ws_url: Optional[str] = None,
                 relay_endpoints: Optional[Sequence[str]] = None,
                 profile: Optional[RpcProfile] = None,
                 client=None,
                 rate_limit_state: Optional[RateLimitState] = None,
                 relay_gate: Optional[RelaySendGate] = None,
                 subscriber: Optional[SignatureSubscriber] = None,
                 session=None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        """
        Initialize the engine.

        Args:
            rpc_url: RPC endpoint, defaults to SOLANA_RPC_URL
            ws_url: Websocket endpoint, derived from rpc_url if omitted
            relay_endpoints: Relay endpoints, defaults to JITO_ENDPOINTS
            profile: Provider profile, selected from rpc_url if omitted
            client: Optional AsyncClient instance. If None, creates a new one.
            rate_limit_state: Optional shared dispatcher state
            relay_gate: Optional shared relay send gate
            subscriber: Optional push notification source
            session: Optional aiohttp session for the relay client
            sleep: Awaitable sleep used by every component
        """
        self.rpc_url = rpc_url or config.SOLANA_RPC_URL
        if ws_url:
            self.ws_url = ws_url
        elif rpc_url:
            self.ws_url = config.derive_ws_url(rpc_url)
        else:
            self.ws_url = config.SOLANA_WS_URL
        self.profile = profile or config.select_rpc_profile(self.rpc_url)

        self._owns_client = client is None
        self.client = client if client is not None else AsyncClient(self.rpc_url)
        self.event_callbacks: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)

        self.dispatcher = RateLimitedDispatcher(self.profile, state=rate_limit_state, sleep=sleep)
        self.watcher = ConfirmationWatcher(
            self.client,
            self.dispatcher,
            profile=self.profile,
            subscriber=subscriber if subscriber is not None else WebsocketSignatureSubscriber(self.ws_url),
            sleep=sleep,
        )
        self.fee_oracle = FeeOracle(
            self.client,
            self.dispatcher,
            default_fee=config.DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
        )
        self.submitter = TransactionSubmitter(
            self.client,
            self.dispatcher,
            self.watcher,
            fee_oracle=self.fee_oracle,
            default_priority_fee=config.DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
            default_compute_unit_limit=config.DEFAULT_COMPUTE_UNIT_LIMIT,
            sleep=sleep,
            **{event: self._event_dispatcher(event) for event in TX_EVENTS},
        )
        self.batch_executor = ParallelBatchExecutor(
            self.submitter,
            self.watcher,
            chunk_size=config.DEFAULT_BATCH_CHUNK_SIZE,
            inter_chunk_delay=config.INTER_CHUNK_DELAY_MS / 1000,
            sleep=sleep,
        )
        self.relay_client = RelayBundleClient(
            relay_endpoints or config.JITO_ENDPOINTS,
            self.watcher,
            gate=relay_gate if relay_gate is not None else RelaySendGate(config.RELAY_SEND_INTERVAL_MS / 1000),
            session=session,
            sleep=sleep,
        )

        logger.info(f"ExecutionEngine initialized with profile '{self.profile.name}'")

    def register_event_callback(self, event_type: str, callback: Callable[[Dict[str, Any]], None]):
        """
        Register a callback for a transaction lifecycle event.

        Args:
            event_type: One of on_tx_sent, on_tx_confirmed, on_tx_failed, on_tx_retry
            callback: Called with the event payload dict
        """
        if event_type not in TX_EVENTS:
            raise ValueError(f"Unknown event type: {event_type}")
        self.event_callbacks[event_type].append(callback)

    def _event_dispatcher(self, event_type: str) -> Callable[[Dict[str, Any]], None]:
        def dispatch(data: Dict[str, Any]):
            for callback in self.event_callbacks[event_type]:
                try:
                    callback(data)
                except Exception as e:
                    logger.exception(f"Error in {event_type} callback: {e}")
        return dispatch

    async def submit(self, request: TransactionRequest, signers: Sequence[Keypair],
                     options: Optional[SubmitOptions] = None) -> str:
        return await self.submitter.submit(request, signers, options)

    async def submit_signed(self, transaction, options: Optional[SubmitOptions] = None) -> str:
        return await self.submitter.submit_signed(transaction, options)

    async def confirm(self, signature: str, commitment: str = "confirmed",
                      timeout_ms: Optional[int] = None) -> bool:
        result = await self.watcher.watch(signature, commitment=commitment, timeout_ms=timeout_ms)
        return result.confirmed

    async def watch(self, signature: str, commitment: str = "confirmed",
                    timeout_ms: Optional[int] = None) -> ConfirmationResult:
        return await self.watcher.watch(signature, commitment=commitment, timeout_ms=timeout_ms)

    async def execute_batch(self, items: Sequence[BatchItem],
                            chunk_size: Optional[int] = None) -> List[BatchResult]:
        return await self.batch_executor.execute(items, chunk_size)

    async def confirm_batch(self, signatures: Sequence[str], commitment: str = "confirmed",
                            timeout_ms: Optional[int] = None) -> List[SignatureConfirmation]:
        return await self.batch_executor.confirm_many(signatures, commitment, timeout_ms)

    async def submit_bundle(self, signed_transactions, options: Optional[BundleOptions] = None) -> str:
        return await self.relay_client.submit_bundle(signed_transactions, options)

    async def confirm_bundle(self, first_signature: str, commitment: str = "confirmed") -> ConfirmationResult:
        return await self.relay_client.confirm_bundle(first_signature, commitment)

    async def send_and_confirm_bundle(self, signed_transactions, options: Optional[BundleOptions] = None,
                                      commitment: str = "confirmed") -> BundleOutcome:
        return await self.relay_client.send_and_confirm_bundle(signed_transactions, options, commitment)

    async def prepare_bundle(self, entries: Sequence[BundleEntry], encoding: str = "base58") -> PreparedBundle:
        """
        Re-stamp and sign bundle entries with one fresh blockhash.

        Args:
            entries: Pre-built transactions with their explicit signers
            encoding: "base58" or "base64"

        Returns:
            PreparedBundle ready for submit_bundle
        """
        response = await self.dispatcher.call(lambda: self.client.get_latest_blockhash("confirmed"))
        return bundle_builder.prepare_bundle(entries, response.value.blockhash, encoding)

    async def recommend_priority_fee(self, accounts: Optional[Iterable] = None) -> int:
        return await self.fee_oracle.recommend_priority_fee(accounts)

    def estimate_cost(self, priority_fee_micro_lamports: int, compute_unit_limit: int,
                      account_types_to_create: Iterable[str] = ()) -> CostBreakdown:
        return cost_model.total_cost(priority_fee_micro_lamports, compute_unit_limit, account_types_to_create)

    def validate_balance(self, balance_lamports: int, cost: CostBreakdown,
                         additional_spend_lamports: int = 0) -> BalanceValidation:
        return cost_model.validate_balance(balance_lamports, cost, additional_spend_lamports)

    async def close(self):
        await self.relay_client.close()
        if self._owns_client:
            await self.client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
