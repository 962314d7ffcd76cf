from bundlebot import config
from bundlebot.config import (
    PREMIUM_RPC_PROFILE,
    PUBLIC_RPC_PROFILE,
    derive_ws_url,
    parse_endpoint_list,
    select_rpc_profile,
)


def test_public_endpoint_selects_public_profile():
    profile = select_rpc_profile("https://api.mainnet-beta.solana.com")

    assert profile is PUBLIC_RPC_PROFILE
    assert profile.call_interval_ms == 1000
    assert profile.max_concurrent_requests == 2
    assert profile.retry_backoff_ms == 15000
    assert profile.confirmation_timeout_ms == 60000


def test_other_endpoints_select_premium_profile():
    profile = select_rpc_profile("https://mainnet.helius-rpc.com/?api-key=abc")

    assert profile is PREMIUM_RPC_PROFILE
    assert profile.call_interval_ms == 100
    assert profile.max_concurrent_requests == 10
    assert profile.use_push_confirmation


def test_derive_ws_url():
    assert derive_ws_url("https://api.mainnet-beta.solana.com") == "wss://api.mainnet-beta.solana.com"
    assert derive_ws_url("http://localhost:8899") == "ws://localhost:8899"
    assert derive_ws_url("wss://already.example") == "wss://already.example"


def test_parse_endpoint_list():
    assert parse_endpoint_list(" https://a , ,https://b ") == ("https://a", "https://b")
    assert parse_endpoint_list("") == ()


def test_defaults():
    assert len(config.JITO_ENDPOINTS) >= 1
    assert set(config.RPC_PROFILES) == {"PUBLIC", "PREMIUM"}
