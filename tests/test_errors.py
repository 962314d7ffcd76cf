import pytest

from bundlebot.solana.errors import (
    BundleProtocolError,
    ConfirmationTimeoutError,
    ErrorKind,
    InsufficientFundsError,
    MissingSignerError,
    RateLimitExceededError,
    classify_error,
    is_insufficient_funds_error,
)


@pytest.mark.parametrize("message", [
    "Transaction simulation failed: Attempt to debit an account but found no record of a prior credit. insufficient funds",
    "Error processing Instruction 0: custom program error: 0x1",
    "InstructionError(0, Custom(1))",
    "TransactionError: InsufficientFundsForRent { account_index: 2 }",
    "insufficient lamports 100, need 2039280",
])
def test_insufficient_funds_detection(message):
    assert is_insufficient_funds_error(message)
    assert classify_error(RuntimeError(message)) == ErrorKind.INSUFFICIENT_FUNDS


def test_other_custom_errors_are_not_funding_errors():
    assert not is_insufficient_funds_error("custom program error: 0x1771")
    assert not is_insufficient_funds_error("InstructionError(0, Custom(17))")


def test_classification_order():
    assert classify_error(InsufficientFundsError("short")) == ErrorKind.INSUFFICIENT_FUNDS
    assert classify_error(MissingSignerError("mint")) == ErrorKind.FATAL
    assert classify_error(BundleProtocolError("no id")) == ErrorKind.FATAL
    assert classify_error(ConfirmationTimeoutError("late", signature="abc")) == ErrorKind.TIMING
    assert classify_error(RuntimeError("block height exceeded")) == ErrorKind.TIMING
    assert classify_error(RateLimitExceededError("still limited")) == ErrorKind.RATE_LIMIT
    assert classify_error(RuntimeError("HTTP 429 Too Many Requests")) == ErrorKind.RATE_LIMIT
    assert classify_error(RuntimeError("Blockhash not found")) == ErrorKind.BLOCKHASH_NOT_FOUND
    assert classify_error(RuntimeError("connection reset")) == ErrorKind.OTHER
