from __future__ import annotations

import pytest

from conftest import MockNode, RpcFault
from chainrpc.errors import FeeUnavailable
from chainrpc.gas import GasEstimator, Urgency
from chainrpc.reader import ChainReader

GWEI = 10**9


def history(blocks: int, base_fee: int = 10 * GWEI, tip: int = 2 * GWEI, next_base: int = 12 * GWEI):
    return {
        "oldestBlock": hex(100),
        "baseFeePerGas": [hex(base_fee)] * blocks + [hex(next_base)],
        "gasUsedRatio": [0.5] * blocks,
        "reward": [[hex(tip)] for _ in range(blocks)],
    }


async def test_estimate_from_fee_history(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(int(count, 16)))
    est = await GasEstimator(reader, lookback_blocks=4).estimate()
    assert est.source == "fee_history"
    assert est.base_fee == 12 * GWEI
    assert est.priority_fee == 2 * GWEI
    assert est.max_fee == 2 * 12 * GWEI + 2 * GWEI
    assert est.confidence == "high"
    assert est.samples == 4
    assert not est.legacy
    count, newest, pcts = node.params("eth_feeHistory")[0]
    assert (count, newest, pcts) == ("0x4", "latest", [50.0])


async def test_urgency_selects_percentile(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(2))
    await GasEstimator(reader, lookback_blocks=2).estimate(urgency=Urgency.HIGH)
    assert node.params("eth_feeHistory")[0][2] == [90.0]


async def test_short_history_lowers_confidence(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(3))
    est = await GasEstimator(reader, lookback_blocks=20).estimate()
    assert est.confidence == "low"
    assert est.samples == 3


async def test_minimum_priority_fee_applies(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(2, tip=1))
    est = await GasEstimator(reader, lookback_blocks=2, min_priority_fee_wei=GWEI).estimate()
    assert est.priority_fee == GWEI


async def test_empty_rewards_use_node_tip(node: MockNode, reader: ChainReader):
    def fee_history(count, newest, pcts):
        h = history(2)
        h["reward"] = [["0x0"], ["0x0"]]
        return h

    node.on("eth_feeHistory", fee_history)
    node.on("eth_maxPriorityFeePerGas", hex(3 * GWEI))
    est = await GasEstimator(reader, lookback_blocks=2).estimate()
    assert est.priority_fee == 3 * GWEI


async def test_falls_back_to_gas_price_when_fee_history_is_missing(node: MockNode, reader: ChainReader):
    node.on("eth_gasPrice", hex(20 * GWEI))
    est = await GasEstimator(reader).estimate()
    assert est.source == "gas_price"
    assert est.legacy
    assert est.max_fee == 20 * GWEI
    assert est.confidence == "low"
    assert node.count("eth_feeHistory") == 1


@pytest.mark.parametrize(
    "answer",
    [None, "0x1", {"baseFeePerGas": ["0x1"]}, {"oldestBlock": "0x64", "baseFeePerGas": ["ten gwei"]}],
    ids=["null", "scalar", "missing-oldest-block", "bad-quantity"],
)
async def test_unusable_fee_history_falls_back(node: MockNode, reader: ChainReader, answer):
    node.on("eth_feeHistory", lambda count, newest, pcts: answer)
    node.on("eth_gasPrice", hex(9 * GWEI))
    est = await GasEstimator(reader).estimate()
    assert est.source == "gas_price"
    assert est.max_fee == 9 * GWEI


async def test_pre_london_history_falls_back(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(2, base_fee=0, next_base=0))
    node.on("eth_gasPrice", hex(GWEI))
    est = await GasEstimator(reader, lookback_blocks=2).estimate()
    assert est.legacy


async def test_no_fee_source_at_all(node: MockNode, reader: ChainReader):
    def gas_price():
        raise RpcFault(-32000, "internal failure")

    node.on("eth_gasPrice", gas_price)
    with pytest.raises(FeeUnavailable):
        await GasEstimator(reader).estimate()


async def test_cached_estimate(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(2))
    gas = GasEstimator(reader, lookback_blocks=2)
    first = await gas.estimate()
    assert await gas.estimate(use_cache=True) is first
    assert node.count("eth_feeHistory") == 1
    await gas.estimate()
    assert node.count("eth_feeHistory") == 2


async def test_fee_samples_stream(node: MockNode, reader: ChainReader):
    node.on("eth_feeHistory", lambda count, newest, pcts: history(3))
    samples = [s async for s in GasEstimator(reader, lookback_blocks=3).fee_samples()]
    assert [s.block_number for s in samples] == [100, 101, 102]
    assert all(s.reward == 2 * GWEI for s in samples)


async def test_percentile_is_validated(reader: ChainReader):
    with pytest.raises(ValueError):
        await GasEstimator(reader).estimate(percentile=150)
