import pytest
from solders.pubkey import Pubkey

from bundlebot.solana.fee_oracle import FeeOracle


@pytest.fixture
def oracle(rpc_client, dispatcher):
    return FeeOracle(rpc_client, dispatcher)


@pytest.mark.asyncio
async def test_recommends_90th_percentile(oracle, rpc_client):
    rpc_client.prioritization_fees = [0] * 5 + [i * 10_000 for i in range(1, 11)]

    fee = await oracle.recommend_priority_fee([Pubkey.new_unique()])

    assert fee == 90_000
    assert list(oracle.fee_history) == [90_000]


@pytest.mark.asyncio
async def test_recommendation_has_a_floor(oracle, rpc_client):
    rpc_client.prioritization_fees = [1_000, 2_000, 3_000]

    assert await oracle.recommend_priority_fee() == FeeOracle.MIN_PRIORITY_FEE


@pytest.mark.asyncio
async def test_default_without_samples(oracle, rpc_client):
    rpc_client.prioritization_fees = [0, 0, 0]

    assert await oracle.recommend_priority_fee() == FeeOracle.DEFAULT_PRIORITY_FEE


@pytest.mark.asyncio
async def test_default_when_rpc_fails(rpc_client, dispatcher):
    rpc_client.fee_error = ConnectionError("rpc down")
    oracle = FeeOracle(rpc_client, dispatcher, default_fee=123_456)

    assert await oracle.recommend_priority_fee([str(Pubkey.new_unique())]) == 123_456


def test_percentile():
    assert FeeOracle.percentile([5], 0.9) == 5
    assert FeeOracle.percentile([4, 1, 3, 2], 0.5) == 2


@pytest.mark.asyncio
async def test_last_recommendation_used_when_rpc_fails(oracle, rpc_client):
    rpc_client.prioritization_fees = [70_000] * 10
    assert await oracle.recommend_priority_fee() == 70_000

    rpc_client.fee_error = ConnectionError("rpc down")

    assert await oracle.recommend_priority_fee() == 70_000
    assert list(oracle.fee_history) == [70_000]
