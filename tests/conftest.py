"""
Shared fakes for the engine tests: an in-memory RPC client, a controllable
signature subscriber, a fake aiohttp session and a virtual clock.
"""

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from bundlebot.solana.confirmation import SignatureNotice, SignatureSubscriber, SignatureSubscription
from bundlebot.solana.dispatcher import RateLimitedDispatcher, RateLimitState
from bundlebot.solana.errors import SubscriptionError
from bundlebot.solana.models import RpcProfile


class FakeClock:
    """Virtual monotonic clock; sleep() advances it instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeRpcClient:
    """Just enough of solana.rpc.async_api.AsyncClient for the engine."""

    def __init__(self):
        self.sent: List[bytes] = []
        self.signatures: List[str] = []
        self.send_errors: List[Optional[Exception]] = []
        self.statuses: Dict[str, SimpleNamespace] = {}
        self.status_errors: List[Exception] = []
        self.status_queries: List[str] = []
        self.block_height = 0
        self.block_height_calls = 0
        self.balance = 10_000_000_000
        self.prioritization_fees: List[int] = []
        self.fee_error: Optional[Exception] = None
        self.blockhash_calls = 0
        self.closed = False

    def mark_confirmed(self, signature: str, commitment: str = "confirmed", err=None):
        self.statuses[signature] = SimpleNamespace(err=err, confirmation_status=commitment)

    async def get_latest_blockhash(self, commitment=None):
        self.blockhash_calls += 1
        return SimpleNamespace(value=SimpleNamespace(
            blockhash=Hash.new_unique(),
            last_valid_block_height=1000 + self.blockhash_calls,
        ))

    async def send_raw_transaction(self, raw, opts=None):
        self.sent.append(raw)
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        signature = VersionedTransaction.from_bytes(raw).signatures[0]
        self.signatures.append(str(signature))
        return SimpleNamespace(value=signature)

    async def get_signature_statuses(self, signatures, search_transaction_history=False):
        if self.status_errors:
            raise self.status_errors.pop(0)
        key = str(signatures[0])
        self.status_queries.append(key)
        return SimpleNamespace(value=[self.statuses.get(key)])

    async def get_block_height(self, commitment=None):
        self.block_height_calls += 1
        return SimpleNamespace(value=self.block_height)

    async def get_balance(self, pubkey, commitment=None):
        return SimpleNamespace(value=self.balance)

    async def get_recent_prioritization_fees(self, accounts=None):
        if self.fee_error is not None:
            raise self.fee_error
        return SimpleNamespace(value=[SimpleNamespace(prioritization_fee=f, slot=i)
                                      for i, f in enumerate(self.prioritization_fees)])

    async def close(self):
        self.closed = True


class FakeSubscription(SignatureSubscription):

    def __init__(self, notice: Optional[SignatureNotice]):
        self.notice = notice

    async def wait(self) -> SignatureNotice:
        if self.notice is None:
            await asyncio.Event().wait()
        return self.notice


class FakeSubscriber(SignatureSubscriber):
    """Delivers preset notices; signatures without one never get notified."""

    def __init__(self, fail: bool = False):
        self.notices: Dict[str, SignatureNotice] = {}
        self.fail = fail
        self.opened = 0
        self.released = 0

    @property
    def active(self) -> int:
        return self.opened - self.released

    @asynccontextmanager
    async def subscribe(self, signature: str, commitment: str):
        if self.fail:
            raise SubscriptionError("websocket unavailable")
        self.opened += 1
        try:
            yield FakeSubscription(self.notices.get(signature))
        finally:
            self.released += 1


class FakeResponse:

    def __init__(self, status: int = 200, payload=None, text: str = "", headers=None):
        self.status = status
        self.payload = payload
        self._text = text
        self.headers = headers or {}

    async def json(self, content_type=None):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """aiohttp.ClientSession stand-in replaying queued responses or exceptions."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.closed = False

    def post(self, url, json=None):
        self.calls.append((url, json))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def make_profile(**overrides) -> RpcProfile:
    values = dict(
        name="Test",
        call_interval_ms=0,
        max_concurrent_requests=10,
        retry_backoff_ms=1000,
        confirmation_timeout_ms=30,
        use_push_confirmation=True,
    )
    values.update(overrides)
    return RpcProfile(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def profile():
    return make_profile()


@pytest.fixture
def rpc_client():
    return FakeRpcClient()


@pytest.fixture
def subscriber():
    return FakeSubscriber()


@pytest.fixture
def dispatcher(profile):
    return RateLimitedDispatcher(profile, state=RateLimitState())


@pytest.fixture
def payer():
    return Keypair()
