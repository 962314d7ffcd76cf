"""
Rate Limiting Utilities

Helpers for recognising provider rate-limit responses in the exceptions
raised by solana-py, aiohttp and the relay client, regardless of how deeply
the HTTP status is wrapped.
"""

from typing import Iterator, Optional


RATE_LIMIT_INDICATORS = [
    "rate limit",
    "rate limited",
    "too many requests",
    "429",
    "throttle",
]


def iter_exception_chain(error: BaseException) -> Iterator[BaseException]:
    """
    Walk an exception and its causes/contexts, outermost first.

    Args:
        error: The exception to walk

    Yields:
        Each distinct exception in the chain
    """
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def error_text(error: BaseException) -> str:
    """Concatenate the type names and messages of an exception chain."""
    return " | ".join(f"{type(e).__name__}: {e}" for e in iter_exception_chain(error))


def http_status_of(error: BaseException) -> Optional[int]:
    """
    Find an HTTP status code attached anywhere in the exception chain.

    httpx.HTTPStatusError exposes it as `response.status_code`,
    aiohttp.ClientResponseError as `status`.
    """
    for e in iter_exception_chain(error):
        response = getattr(e, "response", None)
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status
        status = getattr(e, "status", None)
        if isinstance(status, int):
            return status
    return None


def is_rate_limit_error(error) -> bool:
    """
    Check if an error indicates rate limiting.

    Args:
        error: An exception or an error message

    Returns:
        True if this appears to be a rate limiting error
    """
    if isinstance(error, BaseException):
        if http_status_of(error) == 429:
            return True
        message = error_text(error)
    else:
        message = str(error)

    message_lower = message.lower()
    for indicator in RATE_LIMIT_INDICATORS:
        if indicator in message_lower:
            return True
    return False


def retry_after_seconds(headers) -> Optional[float]:
    """Parse a numeric Retry-After header, if present."""
    if not headers:
        return None
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None
