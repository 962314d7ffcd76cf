"""
Configuration package for the transaction engine.
Core configuration constants and RPC provider profiles.
"""

import os
from dotenv import load_dotenv

from bundlebot.solana.models import RpcProfile

# Load environment variables from .env file
load_dotenv()

# RPC configuration
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")


def derive_ws_url(rpc_url: str) -> str:
    """Derive the websocket endpoint that pairs with an HTTP RPC endpoint."""
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


SOLANA_WS_URL = os.getenv("SOLANA_WS_URL") or derive_ws_url(SOLANA_RPC_URL)

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Prioritized list of Jito block engine endpoints, rotated on 429
DEFAULT_JITO_ENDPOINTS = (
    "https://mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://amsterdam.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://ny.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles",
)


def parse_endpoint_list(raw: str) -> tuple:
    """Split a comma separated endpoint list, dropping blanks."""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


JITO_ENDPOINTS = parse_endpoint_list(os.getenv("JITO_ENDPOINTS", "")) or DEFAULT_JITO_ENDPOINTS

# Fee configuration
DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS = int(os.getenv("DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS", "100000"))
DEFAULT_COMPUTE_UNIT_LIMIT = int(os.getenv("DEFAULT_COMPUTE_UNIT_LIMIT", "200000"))

# Batch configuration
DEFAULT_BATCH_CHUNK_SIZE = int(os.getenv("DEFAULT_BATCH_CHUNK_SIZE", "20"))
INTER_CHUNK_DELAY_MS = int(os.getenv("INTER_CHUNK_DELAY_MS", "500"))

# Relay configuration
RELAY_SEND_INTERVAL_MS = int(os.getenv("RELAY_SEND_INTERVAL_MS", "1000"))  # 1 bundle/s org-wide

# Provider profiles
# Public mainnet-beta: 100 req/10s total, 40 req/10s per method
PUBLIC_RPC_PROFILE = RpcProfile(
    name="Public Mainnet-Beta",
    call_interval_ms=1000,
    max_concurrent_requests=2,
    retry_backoff_ms=15000,
    confirmation_timeout_ms=60000,
    use_push_confirmation=True,
    description="Free public RPC with very strict rate limits - 100 req/10s total",
)

PREMIUM_RPC_PROFILE = RpcProfile(
    name="Premium RPC Provider",
    call_interval_ms=100,
    max_concurrent_requests=10,
    retry_backoff_ms=1000,
    confirmation_timeout_ms=30000,
    use_push_confirmation=True,
    description="Premium RPC with higher rate limits and better performance",
)

RPC_PROFILES = {
    "PUBLIC": PUBLIC_RPC_PROFILE,
    "PREMIUM": PREMIUM_RPC_PROFILE,
}

PUBLIC_RPC_HOST = "api.mainnet-beta.solana.com"


def select_rpc_profile(rpc_url: str = SOLANA_RPC_URL) -> RpcProfile:
    """
    Pick the provider profile for an RPC endpoint.

    Args:
        rpc_url: The RPC endpoint URL

    Returns:
        PUBLIC profile for the public mainnet-beta host, PREMIUM otherwise
    """
    if PUBLIC_RPC_HOST in rpc_url:
        return PUBLIC_RPC_PROFILE
    return PREMIUM_RPC_PROFILE


# Make everything available at package level
__all__ = [
    'SOLANA_RPC_URL',
    'SOLANA_WS_URL',
    'LOG_LEVEL',
    'JITO_ENDPOINTS',
    'DEFAULT_JITO_ENDPOINTS',
    'DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS',
    'DEFAULT_COMPUTE_UNIT_LIMIT',
    'DEFAULT_BATCH_CHUNK_SIZE',
    'INTER_CHUNK_DELAY_MS',
    'RELAY_SEND_INTERVAL_MS',
    'PUBLIC_RPC_PROFILE',
    'PREMIUM_RPC_PROFILE',
    'RPC_PROFILES',
    'select_rpc_profile',
    'derive_ws_url',
    'parse_endpoint_list',
]
