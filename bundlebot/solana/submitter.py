"""
Robust transaction submission for Solana.
"""

import asyncio
import math
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from loguru import logger
from solana.rpc.types import TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from bundlebot.solana import cost_model
from bundlebot.solana.confirmation import ConfirmationWatcher
from bundlebot.solana.dispatcher import RateLimitedDispatcher
from bundlebot.solana.errors import (
    ConfirmationTimeoutError,
    ErrorKind,
    InsufficientFundsError,
    MissingSignerError,
    TransactionFailedError,
    TransactionSubmissionError,
    classify_error,
)
from bundlebot.solana.fee_oracle import FeeOracle
from bundlebot.solana.models import (
    ConfirmationStatus,
    SubmissionAttempt,
    SubmitOptions,
    TransactionRequest,
)

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")


class TransactionSubmitter:
    """
    Sends transactions with fresh blockhashes, escalating compute budgets and
    idempotent retries.
    """

    # Compute unit limit growth per retry
    COMPUTE_UNIT_ESCALATION = 1.1
    # Hard cap on compute units per transaction
    MAX_COMPUTE_UNIT_LIMIT = 1_400_000
    DEFAULT_COMPUTE_UNIT_LIMIT = 200_000
    DEFAULT_PRIORITY_FEE = 100_000  # micro-lamports

    # Retry backoff tiers in seconds
    TIMING_BACKOFF = 0.5
    BLOCKHASH_BACKOFF = 1.0
    DEFAULT_BACKOFF = 1.5
    # Wait before re-checking a signature whose confirmation timed out
    TIMEOUT_SETTLE_DELAY = 2.0

    def __init__(self,
                 client,
                 dispatcher: RateLimitedDispatcher,
                 watcher: ConfirmationWatcher,
                 fee_oracle: Optional[FeeOracle] = None,
                 default_priority_fee: int = DEFAULT_PRIORITY_FEE,
                 default_compute_unit_limit: int = DEFAULT_COMPUTE_UNIT_LIMIT,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 on_tx_sent=None,
                 on_tx_confirmed=None,
                 on_tx_failed=None,
                 on_tx_retry=None):
        """
        Initialize the submitter.

        Args:
            client: solana AsyncClient (or compatible)
            dispatcher: Dispatcher every RPC call goes through
            watcher: ConfirmationWatcher for sent signatures
            fee_oracle: Optional oracle consulted when no priority fee is given
            default_priority_fee: Compute unit price in micro-lamports
            default_compute_unit_limit: Base compute unit limit
            sleep: Awaitable sleep used for backoff
            on_tx_sent: Callback when a transaction is sent
            on_tx_confirmed: Callback when a transaction is confirmed
            on_tx_failed: Callback when a submission fails for good
            on_tx_retry: Callback before a submission is retried
        """
        self.client = client
        self.dispatcher = dispatcher
        self.watcher = watcher
        self.fee_oracle = fee_oracle
        self.default_priority_fee = default_priority_fee
        self.default_compute_unit_limit = default_compute_unit_limit
        self._sleep = sleep

        # Event callbacks
        self.on_tx_sent = on_tx_sent
        self.on_tx_confirmed = on_tx_confirmed
        self.on_tx_failed = on_tx_failed
        self.on_tx_retry = on_tx_retry

    def escalated_compute_unit_limit(self, base_limit: int, attempt: int) -> int:
        """Compute unit limit for a 1-based attempt number."""
        # round away float noise so 200000 * 1.1**2 stays 242000
        limit = math.ceil(round(base_limit * self.COMPUTE_UNIT_ESCALATION ** (attempt - 1), 6))
        return min(limit, self.MAX_COMPUTE_UNIT_LIMIT)

    def backoff_for(self, kind: ErrorKind) -> float:
        if kind == ErrorKind.TIMING:
            return self.TIMING_BACKOFF
        if kind == ErrorKind.RATE_LIMIT:
            return self.dispatcher.profile.retry_backoff_ms / 1000
        if kind == ErrorKind.BLOCKHASH_NOT_FOUND:
            return self.BLOCKHASH_BACKOFF
        return self.DEFAULT_BACKOFF

    @staticmethod
    def build_transaction(request: TransactionRequest,
                          signers: Sequence[Keypair],
                          blockhash: Hash,
                          compute_unit_limit: int,
                          priority_fee_micro_lamports: int) -> Transaction:
        """
        Build and sign a fresh transaction from an immutable request.

        Compute budget instructions already present in the request are
        replaced by a limit and price instruction pair placed first.

        Args:
            request: The base request
            signers: Keypairs available for signing
            blockhash: Recent blockhash for this attempt
            compute_unit_limit: Compute unit limit for this attempt
            priority_fee_micro_lamports: Compute unit price

        Returns:
            Signed legacy Transaction

        Raises:
            MissingSignerError: If a required signer is not among `signers`
        """
        instructions = [
            set_compute_unit_limit(compute_unit_limit),
            set_compute_unit_price(priority_fee_micro_lamports),
        ]
        instructions.extend(ix for ix in request.instructions if ix.program_id != COMPUTE_BUDGET_PROGRAM_ID)

        message = Message.new_with_blockhash(instructions, request.payer, blockhash)
        required = list(message.account_keys[:message.header.num_required_signatures])
        available = {kp.pubkey(): kp for kp in signers}

        missing = [str(key) for key in required if key not in available]
        if missing:
            raise MissingSignerError(f"Missing required signer(s): {', '.join(missing)}")

        return Transaction([available[key] for key in required], message, blockhash)

    async def resolve_priority_fee(self, request: TransactionRequest, options: SubmitOptions) -> int:
        if options.priority_fee_micro_lamports is not None:
            return options.priority_fee_micro_lamports
        if self.fee_oracle is not None:
            writable = {
                meta.pubkey
                for ix in request.instructions
                for meta in ix.accounts
                if meta.is_writable
            }
            return await self.fee_oracle.recommend_priority_fee(sorted(writable, key=str))
        return self.default_priority_fee

    async def validate_balance(self, request: TransactionRequest, options: SubmitOptions,
                               priority_fee: int, compute_unit_limit: int):
        """
        Check the payer can cover the request before anything is sent.

        Raises:
            InsufficientFundsError: If the balance falls short
        """
        cost = cost_model.total_cost(priority_fee, compute_unit_limit, request.account_types_to_create)
        response = await self.dispatcher.call(
            lambda: self.client.get_balance(request.payer, options.commitment)
        )
        validation = cost_model.validate_balance(response.value, cost, options.additional_spend_lamports)
        if not validation.is_valid:
            raise InsufficientFundsError(
                f"Payer {request.payer} short by {validation.shortfall_lamports} lamports "
                f"({validation.total_required_lamports} required)"
            )
        return validation

    async def submit(self,
                     request: TransactionRequest,
                     signers: Sequence[Keypair],
                     options: Optional[SubmitOptions] = None) -> str:
        """
        Submit a transaction and wait until it is confirmed.

        Args:
            request: Immutable base request
            signers: Every keypair the transaction must be signed with
            options: Submission options

        Returns:
            The confirmed transaction signature

        Raises:
            InsufficientFundsError: Immediately, without retrying
            FatalEngineError: For malformed input
            TransactionSubmissionError: When all attempts failed
        """
        options = options or SubmitOptions()
        priority_fee = await self.resolve_priority_fee(request, options)
        base_limit = options.compute_unit_limit or self.default_compute_unit_limit
        label = request.label or request.role.value

        if options.validate_balance:
            try:
                await self.validate_balance(request, options, priority_fee, base_limit)
            except InsufficientFundsError as e:
                self._notify_failed(label, None, e)
                raise

        async def prepare_attempt(attempt: int) -> Tuple[bytes, str, Optional[int]]:
            response = await self.dispatcher.call(
                lambda: self.client.get_latest_blockhash(options.commitment)
            )
            blockhash = response.value.blockhash
            last_valid_block_height = response.value.last_valid_block_height

            limit = self.escalated_compute_unit_limit(base_limit, attempt)
            tx = self.build_transaction(request, signers, blockhash, limit, priority_fee)
            signature = str(tx.signatures[0])

            record = SubmissionAttempt(
                attempt_number=attempt,
                blockhash=str(blockhash),
                last_valid_block_height=last_valid_block_height,
                compute_unit_limit=limit,
                priority_fee_micro_lamports=priority_fee,
                signature=signature,
            )
            logger.debug(
                f"Attempt {attempt}: signed {signature[:8]}... with {limit} CU at {priority_fee} micro-lamports",
                extra={"attempt": record.model_dump()}
            )
            return bytes(tx), signature, last_valid_block_height

        return await self._submit_with_retries(prepare_attempt, options, label)

    async def submit_signed(self, transaction, options: Optional[SubmitOptions] = None) -> str:
        """
        Submit an already signed transaction without modifying it.

        Retries resend the same bytes, so they only help until its blockhash
        expires.

        Args:
            transaction: Signed solders (Versioned)Transaction
            options: Submission options; fee and limit settings are ignored

        Returns:
            The confirmed transaction signature
        """
        options = options or SubmitOptions()
        raw = bytes(transaction)
        signature = str(transaction.signatures[0])
        label = signature[:8]

        async def prepare_attempt(attempt: int) -> Tuple[bytes, str, Optional[int]]:
            return raw, signature, None

        return await self._submit_with_retries(prepare_attempt, options, label)

    async def _send_raw(self, raw: bytes, options: SubmitOptions):
        opts = TxOpts(
            skip_preflight=options.skip_preflight,
            preflight_commitment=options.commitment,
            max_retries=0,
        )
        await self.dispatcher.call(lambda: self.client.send_raw_transaction(raw, opts=opts))

    async def _already_confirmed(self, signature: str, commitment: str) -> bool:
        try:
            confirmed = await self.watcher.check_status(signature, commitment)
        except Exception as e:
            logger.warning(f"Status check for {signature[:8]}... failed: {e}")
            return False
        if confirmed:
            logger.info(f"Transaction {signature[:8]}... already confirmed, not resending")
        return confirmed

    async def _submit_with_retries(self,
                                   prepare_attempt: Callable[[int], Awaitable[Tuple[bytes, str, Optional[int]]]],
                                   options: SubmitOptions,
                                   label: str) -> str:
        last_signature: Optional[str] = None
        checked_signature: Optional[str] = None
        last_error: Optional[BaseException] = None
        attempts = 0

        for attempt in range(1, options.max_retries + 1):
            attempts = attempt
            if last_signature and last_signature != checked_signature:
                if await self._already_confirmed(last_signature, options.commitment):
                    return last_signature

            try:
                raw, signature, last_valid_block_height = await prepare_attempt(attempt)
                # The signature is known before sending; a send that times out may still land
                last_signature = signature
                await self._send_raw(raw, options)
                self._notify("on_tx_sent", {"label": label, "signature": signature, "attempt": attempt})

                result = await self.watcher.watch(
                    signature,
                    commitment=options.commitment,
                    last_valid_block_height=last_valid_block_height,
                )
                if result.confirmed:
                    logger.info(
                        f"Transaction {label} confirmed on attempt {attempt} "
                        f"({result.method.value}, {result.elapsed_ms}ms): {signature}"
                    )
                    self._notify("on_tx_confirmed", {
                        "label": label,
                        "signature": signature,
                        "attempt": attempt,
                        "confirmation": result,
                    })
                    return signature
                if result.status == ConfirmationStatus.FAILED:
                    raise TransactionFailedError(
                        f"Transaction {signature} failed: {result.error}",
                        signature=signature,
                        reason=result.error,
                    )
                raise ConfirmationTimeoutError(f"Confirmation of {signature} timed out", signature=signature)

            except Exception as e:
                kind = classify_error(e)

                if kind == ErrorKind.INSUFFICIENT_FUNDS:
                    logger.warning(f"Insufficient funds, aborting retries: {e}")
                    self._notify_failed(label, last_signature, e)
                    if isinstance(e, InsufficientFundsError):
                        raise
                    raise InsufficientFundsError(f"Insufficient funds for {label}: {e}") from e

                if kind == ErrorKind.FATAL:
                    logger.error(f"Non-retryable error for {label}: {e}")
                    self._notify_failed(label, last_signature, e)
                    raise

                last_error = e
                logger.warning(f"Attempt {attempt}/{options.max_retries} for {label} failed ({kind.value}): {e}")

                if kind == ErrorKind.TIMING and last_signature:
                    await self._sleep(self.TIMEOUT_SETTLE_DELAY)
                    checked_signature = last_signature
                    if await self._already_confirmed(last_signature, options.commitment):
                        return last_signature

                if attempt >= options.max_retries:
                    break

                backoff = self.backoff_for(kind)
                self._notify("on_tx_retry", {
                    "label": label,
                    "retry_count": attempt,
                    "error": str(e),
                })
                await self._sleep(backoff)

        error = TransactionSubmissionError(
            f"Transaction {label} failed after {attempts} attempts: {last_error}",
            attempts=attempts,
            last_error=last_error,
            last_signature=last_signature,
        )
        self._notify_failed(label, last_signature, error)
        raise error from last_error

    def _notify(self, name: str, payload: Dict[str, Any]):
        callback = getattr(self, name)
        if callback:
            payload["timestamp"] = datetime.now().isoformat()
            callback(payload)

    def _notify_failed(self, label: str, signature: Optional[str], error: BaseException):
        self._notify("on_tx_failed", {"label": label, "signature": signature, "error": str(error)})
