"""
Solana transaction execution for the bundle bot.

This package contains the components that get transactions on chain:
rate limited RPC dispatch, cost estimation, confirmation, robust submission,
parallel batches and relay bundles.

Note: nothing in this package reads configuration; values are passed in by
bundlebot.engine.ExecutionEngine.
"""

from bundlebot.solana.models import (
    RpcProfile,
    TransactionRole,
    TransactionRequest,
    SubmitOptions,
    ConfirmationResult,
    ConfirmationStatus,
    ConfirmationMethod,
    CostBreakdown,
    BalanceValidation,
    BatchItem,
    BatchResult,
    BatchSummary,
    BundleEntry,
    BundleOptions,
    BundleOutcome,
    PreparedBundle,
)
from bundlebot.solana.errors import (
    EngineError,
    FatalEngineError,
    InsufficientFundsError,
    InvalidAccountTypeError,
    MissingSignerError,
    BundleValidationError,
    BundleProtocolError,
    RateLimitExceededError,
    TransactionSubmissionError,
    RelaySubmissionError,
)
from bundlebot.solana.dispatcher import RateLimitState, RateLimitedDispatcher
from bundlebot.solana.confirmation import ConfirmationWatcher, WebsocketSignatureSubscriber
from bundlebot.solana.fee_oracle import FeeOracle
from bundlebot.solana.submitter import TransactionSubmitter
from bundlebot.solana.batch_executor import ParallelBatchExecutor
from bundlebot.solana.bundle_builder import prepare_bundle
from bundlebot.solana.relay_client import RelayBundleClient, RelaySendGate
