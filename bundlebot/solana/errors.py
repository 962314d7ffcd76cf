"""
Exceptions raised by the transaction engine and the classifier that decides
how a failure is retried.
"""

import re
from enum import Enum
from typing import Optional

from bundlebot.utils.rate_limit_utils import error_text, is_rate_limit_error


class EngineError(Exception):
    """Base exception for transaction engine errors."""
    pass


class FatalEngineError(EngineError):
    """Errors that no amount of retrying can fix."""
    pass


class InsufficientFundsError(FatalEngineError):
    """The payer cannot cover fees, rent or the transferred amount."""
    pass


class InvalidAccountTypeError(FatalEngineError, ValueError):
    """Unknown account type passed to the cost model."""
    pass


class MissingSignerError(FatalEngineError):
    """A required signer was not provided."""
    pass


class BundleValidationError(FatalEngineError):
    """A bundle is empty, too large or otherwise malformed."""
    pass


class BundleProtocolError(FatalEngineError):
    """The relay answered 200 but without a bundle id."""
    pass


class RateLimitExceededError(EngineError):
    """Rate limiting persisted through every dispatcher retry."""
    pass


class ConfirmationTimeoutError(EngineError):
    """Confirmation did not arrive in time; the transaction may still land."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class TransactionFailedError(EngineError):
    """The transaction landed with an on-chain error."""

    def __init__(self, message: str, signature: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.signature = signature
        self.reason = reason


class SubscriptionError(EngineError):
    """A signature notification subscription could not be established."""
    pass


class RelayRateLimitedError(EngineError):
    """The relay endpoint answered 429."""

    def __init__(self, message: str, endpoint: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.retry_after = retry_after


class RelayTransportError(EngineError):
    """Transport or non-429 HTTP failure talking to the relay."""
    pass


class TransactionSubmissionError(EngineError):
    """Every submission attempt failed."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None,
                 last_signature: Optional[str] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.last_signature = last_signature


class RelaySubmissionError(EngineError):
    """Every relay send attempt on an endpoint failed."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None,
                 endpoint: str = ""):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
        self.endpoint = endpoint


class ErrorKind(str, Enum):
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FATAL = "fatal"
    TIMING = "timing"
    RATE_LIMIT = "rate_limit"
    BLOCKHASH_NOT_FOUND = "blockhash_not_found"
    OTHER = "other"


INSUFFICIENT_FUNDS_INDICATORS = [
    "insufficient funds",
    "insufficient lamports",
    "insufficientfundsforfee",
    "insufficientfundsforrent",
]

# SPL token / system program error 1 is the insufficient funds code
INSUFFICIENT_FUNDS_CODE = re.compile(r"custom program error: (0x1|1)\b|custom\(1\)", re.IGNORECASE)

TIMING_INDICATORS = [
    "timed out",
    "timeout",
    "block height exceeded",
    "blockheight exceeded",
    "unable to confirm transaction",
]


def is_insufficient_funds_error(error) -> bool:
    """
    Check if an error reports a funding shortfall.

    Args:
        error: An exception or an error message

    Returns:
        True if retrying cannot succeed without more funds
    """
    if isinstance(error, InsufficientFundsError):
        return True
    message = error_text(error) if isinstance(error, BaseException) else str(error)
    message_lower = message.lower()
    if any(indicator in message_lower for indicator in INSUFFICIENT_FUNDS_INDICATORS):
        return True
    return bool(INSUFFICIENT_FUNDS_CODE.search(message))


def classify_error(error: BaseException) -> ErrorKind:
    """Decide how a submission failure should be handled."""
    if is_insufficient_funds_error(error):
        return ErrorKind.INSUFFICIENT_FUNDS
    if isinstance(error, FatalEngineError):
        return ErrorKind.FATAL
    if isinstance(error, ConfirmationTimeoutError):
        return ErrorKind.TIMING

    message_lower = error_text(error).lower()
    if any(indicator in message_lower for indicator in TIMING_INDICATORS):
        return ErrorKind.TIMING
    if isinstance(error, RateLimitExceededError) or is_rate_limit_error(error):
        return ErrorKind.RATE_LIMIT
    if "blockhash not found" in message_lower:
        return ErrorKind.BLOCKHASH_NOT_FOUND
    return ErrorKind.OTHER
