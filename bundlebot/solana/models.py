"""
Models for Solana transaction execution.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

LAMPORTS_PER_SOL = 1_000_000_000


class RpcProfile(BaseModel):
    """Rate limit and confirmation settings for one RPC provider tier."""
    model_config = ConfigDict(frozen=True)

    name: str
    call_interval_ms: int
    max_concurrent_requests: int
    retry_backoff_ms: int
    confirmation_timeout_ms: int
    use_push_confirmation: bool = True
    description: str = ""


class TransactionRole(str, Enum):
    """Declared purpose of a transaction request."""
    TRANSFER = "transfer"
    CREATE = "create"
    BUY = "buy"
    SELL = "sell"
    OTHER = "other"


class ConfirmationStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ConfirmationMethod(str, Enum):
    PUSH = "push"
    POLL = "poll"
    POLL_FALLBACK = "poll-fallback"


class ConfirmationResult(BaseModel):
    """Terminal outcome of one confirmation watch."""
    model_config = ConfigDict(frozen=True)

    signature: str
    status: ConfirmationStatus
    method: ConfirmationMethod
    error: Optional[str] = None
    elapsed_ms: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmationStatus.CONFIRMED

    @property
    def timed_out(self) -> bool:
        return self.status == ConfirmationStatus.TIMED_OUT


class SubmissionAttempt(BaseModel):
    """One send attempt of a logical transaction."""
    model_config = ConfigDict(frozen=True)

    attempt_number: int
    blockhash: str
    last_valid_block_height: int
    compute_unit_limit: int
    priority_fee_micro_lamports: int
    signature: Optional[str] = None


class CostBreakdown(BaseModel):
    """Fee and rent requirements for an operation, in lamports."""
    model_config = ConfigDict(frozen=True)

    base_fee_lamports: int
    priority_fee_lamports: int
    rent_required_lamports: Dict[str, int] = Field(default_factory=dict)
    buffer_lamports: int = 0
    total_lamports: int

    @property
    def transaction_fee_lamports(self) -> int:
        return self.base_fee_lamports + self.priority_fee_lamports

    @property
    def total_rent_lamports(self) -> int:
        return sum(self.rent_required_lamports.values())

    @property
    def total_sol(self) -> float:
        return self.total_lamports / LAMPORTS_PER_SOL


class BalanceValidation(BaseModel):
    """Result of checking a balance against a cost breakdown."""
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    balance_lamports: int
    total_required_lamports: int
    shortfall_lamports: int


class BatchResult(BaseModel):
    """Outcome of one batch item."""
    request_id: str
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None


class BatchSummary(BaseModel):
    """Success/failure counts for a finished batch."""
    total: int
    succeeded: int
    failed: int

    @classmethod
    def from_results(cls, results: Sequence[BatchResult]) -> "BatchSummary":
        succeeded = sum(1 for r in results if r.success)
        return cls(total=len(results), succeeded=succeeded, failed=len(results) - succeeded)


class SignatureConfirmation(BaseModel):
    """Outcome of confirming one signature in a batch."""
    signature: str
    confirmed: bool
    error: Optional[str] = None


class BundleOutcome(BaseModel):
    """A relay bundle submission together with its confirmation."""
    bundle_id: str
    first_signature: str
    confirmation: ConfirmationResult

    @property
    def confirmed(self) -> bool:
        return self.confirmation.confirmed


@dataclass(frozen=True)
class TransactionRequest:
    """
    Immutable base request a fresh transaction is built from on every attempt.

    Compute budget instructions in `instructions` are ignored; the submitter
    injects its own for each attempt.
    """
    instructions: Tuple[Instruction, ...]
    payer: Pubkey
    role: TransactionRole = TransactionRole.OTHER
    account_types_to_create: Tuple[str, ...] = ()
    label: str = ""

    def __post_init__(self):
        # accept lists from callers but store tuples
        object.__setattr__(self, "instructions", tuple(self.instructions))
        object.__setattr__(self, "account_types_to_create", tuple(self.account_types_to_create))


@dataclass(frozen=True)
class SubmitOptions:
    """Options for a single robust submission."""
    max_retries: int = 3
    commitment: str = "confirmed"
    priority_fee_micro_lamports: Optional[int] = None
    compute_unit_limit: Optional[int] = None
    skip_preflight: bool = False
    # when set, the payer balance is checked against the cost model before sending
    validate_balance: bool = False
    additional_spend_lamports: int = 0


@dataclass
class BatchItem:
    """One independent submission in a parallel batch."""
    request_id: str
    request: TransactionRequest
    signers: List[Keypair]
    options: Optional[SubmitOptions] = None


@dataclass(frozen=True)
class BundleOptions:
    """Options for relay bundle submission."""
    encoding: str = "base58"
    max_retries: int = 3
    max_rotations: int = 3
    initial_delay_ms: int = 2000
    max_delay_ms: int = 30000
    rotation_delay_ms: int = 1500


@dataclass
class BundleEntry:
    """
    A pre-built transaction destined for a relay bundle.

    `signers` must list every keypair the message requires, including e.g. a
    new mint keypair for a create transaction; nothing is inferred from the
    entry's position in the bundle.
    """
    transaction: object  # solders VersionedTransaction or its serialized bytes
    signers: List[Keypair]
    role: TransactionRole = TransactionRole.OTHER
    label: str = ""


@dataclass(frozen=True)
class PreparedBundle:
    """Signed, encoded bundle ready for the relay."""
    encoded_transactions: Tuple[str, ...]
    primary_signatures: Tuple[str, ...]
    encoding: str = "base58"

    @property
    def first_signature(self) -> str:
        return self.primary_signatures[0]

    def __len__(self) -> int:
        return len(self.encoded_transactions)
