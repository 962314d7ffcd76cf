import pytest
from solders.signature import Signature

from bundlebot.solana.confirmation import (
    ConfirmationWatcher,
    SignatureNotice,
    commitment_name,
    commitment_reached,
)
from bundlebot.solana.dispatcher import RateLimitedDispatcher, RateLimitState
from bundlebot.solana.models import ConfirmationMethod, ConfirmationStatus
from tests.conftest import FakeSubscriber, make_profile


@pytest.fixture
def signature():
    return str(Signature.new_unique())


@pytest.fixture
def watcher(rpc_client, dispatcher, profile, subscriber):
    return ConfirmationWatcher(rpc_client, dispatcher, profile=profile, subscriber=subscriber)


def test_commitment_ordering():
    assert commitment_reached("confirmed", "confirmed")
    assert commitment_reached("finalized", "confirmed")
    assert not commitment_reached("processed", "confirmed")
    assert not commitment_reached(None, "processed")
    assert commitment_name("TransactionConfirmationStatus.Finalized") == "finalized"


@pytest.mark.asyncio
async def test_push_notification_confirms(watcher, subscriber, rpc_client, signature):
    subscriber.notices[signature] = SignatureNotice(err=None, slot=42)

    result = await watcher.watch(signature)

    assert result.status == ConfirmationStatus.CONFIRMED
    assert result.method == ConfirmationMethod.PUSH
    assert result.confirmed
    assert subscriber.active == 0
    assert rpc_client.status_queries == []


@pytest.mark.asyncio
async def test_push_notification_with_error_fails(watcher, subscriber, signature):
    subscriber.notices[signature] = SignatureNotice(err="InstructionError(0, Custom(6001))")

    result = await watcher.watch(signature)

    assert result.status == ConfirmationStatus.FAILED
    assert "6001" in result.error
    assert subscriber.active == 0


@pytest.mark.asyncio
async def test_timeout_falls_back_to_one_status_poll(watcher, subscriber, rpc_client, signature):
    rpc_client.mark_confirmed(signature, "finalized")

    result = await watcher.watch(signature, timeout_ms=10)

    assert result.status == ConfirmationStatus.CONFIRMED
    assert result.method == ConfirmationMethod.POLL_FALLBACK
    assert rpc_client.status_queries == [signature]
    assert subscriber.opened == 1
    assert subscriber.active == 0


@pytest.mark.asyncio
async def test_timeout_without_status_is_indeterminate(watcher, subscriber, rpc_client, signature):
    result = await watcher.watch(signature, timeout_ms=10)

    assert result.status == ConfirmationStatus.TIMED_OUT
    assert result.timed_out
    assert not result.confirmed
    assert len(rpc_client.status_queries) == 1
    assert subscriber.active == 0


@pytest.mark.asyncio
async def test_fallback_below_commitment_times_out(watcher, rpc_client, signature):
    rpc_client.mark_confirmed(signature, "processed")

    result = await watcher.watch(signature, commitment="confirmed", timeout_ms=10)

    assert result.status == ConfirmationStatus.TIMED_OUT


@pytest.mark.asyncio
async def test_fallback_poll_error_reports_timeout(watcher, rpc_client, signature):
    rpc_client.status_errors.append(ConnectionError("network partition"))

    result = await watcher.watch(signature, timeout_ms=10)

    assert result.status == ConfirmationStatus.TIMED_OUT
    assert "network partition" in result.error


@pytest.mark.asyncio
async def test_failed_subscription_degrades_to_polling(rpc_client, dispatcher, profile, signature):
    subscriber = FakeSubscriber(fail=True)
    watcher = ConfirmationWatcher(rpc_client, dispatcher, profile=profile, subscriber=subscriber)
    rpc_client.mark_confirmed(signature)

    result = await watcher.watch(signature)

    assert result.status == ConfirmationStatus.CONFIRMED
    assert result.method == ConfirmationMethod.POLL
    assert rpc_client.status_queries == [signature]
    assert subscriber.opened == 0


@pytest.mark.asyncio
async def test_poll_mode_when_push_disabled(rpc_client, subscriber, signature):
    profile = make_profile(use_push_confirmation=False)
    watcher = ConfirmationWatcher(rpc_client, RateLimitedDispatcher(profile), subscriber=subscriber)
    rpc_client.mark_confirmed(signature, "finalized")

    result = await watcher.watch(signature)

    assert result.method == ConfirmationMethod.POLL
    assert result.confirmed
    assert subscriber.opened == 0


@pytest.mark.asyncio
async def test_poll_mode_reports_on_chain_error(rpc_client, signature):
    profile = make_profile(use_push_confirmation=False)
    watcher = ConfirmationWatcher(rpc_client, RateLimitedDispatcher(profile))
    rpc_client.mark_confirmed(signature, err="InsufficientFundsForRent")

    result = await watcher.watch(signature)

    assert result.status == ConfirmationStatus.FAILED
    assert result.method == ConfirmationMethod.POLL
    assert result.error == "InsufficientFundsForRent"


@pytest.mark.asyncio
async def test_poll_mode_respects_rate_floor(clock, rpc_client, signature):
    profile = make_profile(call_interval_ms=1000, use_push_confirmation=False, confirmation_timeout_ms=5000)
    state = RateLimitState(clock=clock)
    watcher = ConfirmationWatcher(
        rpc_client,
        RateLimitedDispatcher(profile, state=state, sleep=clock.sleep),
        sleep=clock.sleep,
        clock=clock,
    )
    query_times = []

    async def timed_statuses(signatures, _get=rpc_client.get_signature_statuses):
        query_times.append(clock())
        return await _get(signatures)

    rpc_client.get_signature_statuses = timed_statuses

    result = await watcher.watch(signature)

    assert result.status == ConfirmationStatus.TIMED_OUT
    assert result.method == ConfirmationMethod.POLL_FALLBACK
    # every status query went through the dispatcher, one per second
    assert len(rpc_client.status_queries) == state.total_dispatches == 7
    gaps = [b - a for a, b in zip(query_times, query_times[1:])]
    assert all(gap >= 1.0 for gap in gaps)
    assert state.in_flight == 0


@pytest.mark.asyncio
async def test_poll_mode_confirms_when_status_lands(clock, rpc_client, signature):
    profile = make_profile(call_interval_ms=1000, use_push_confirmation=False, confirmation_timeout_ms=5000)
    watcher = ConfirmationWatcher(
        rpc_client,
        RateLimitedDispatcher(profile, state=RateLimitState(clock=clock), sleep=clock.sleep),
        sleep=clock.sleep,
        clock=clock,
    )

    async def land_on_third_query(signatures, _get=rpc_client.get_signature_statuses):
        if len(rpc_client.status_queries) == 2:
            rpc_client.mark_confirmed(signature)
        return await _get(signatures)

    rpc_client.get_signature_statuses = land_on_third_query

    result = await watcher.watch(signature)

    assert result.status == ConfirmationStatus.CONFIRMED
    assert result.method == ConfirmationMethod.POLL
    assert len(rpc_client.status_queries) == 3


@pytest.mark.asyncio
async def test_poll_stops_when_blockhash_expires(rpc_client, signature):
    profile = make_profile(use_push_confirmation=False)
    watcher = ConfirmationWatcher(rpc_client, RateLimitedDispatcher(profile))
    rpc_client.block_height = 2_000

    result = await watcher.watch(signature, last_valid_block_height=1_500)

    assert result.status == ConfirmationStatus.TIMED_OUT
    assert result.method == ConfirmationMethod.POLL_FALLBACK
    assert rpc_client.block_height_calls == 1
    assert len(rpc_client.status_queries) == 2


@pytest.mark.asyncio
async def test_check_status(watcher, rpc_client, signature):
    assert not await watcher.check_status(signature)

    rpc_client.mark_confirmed(signature, "confirmed", err="InstructionError")
    assert not await watcher.check_status(signature)

    rpc_client.mark_confirmed(signature, "confirmed")
    assert await watcher.check_status(signature)
    assert not await watcher.check_status(signature, "finalized")
