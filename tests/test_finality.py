from __future__ import annotations

import asyncio

import pytest

from conftest import FakeChain, block_hash, tx_hash
from chainrpc.errors import FinalityTimeout
from chainrpc.finality import FinalityTracker
from chainrpc.reader import ChainReader
from chainrpc.state import TxState

N = 100


def tracker(reader: ChainReader, **kwargs) -> FinalityTracker:
    return FinalityTracker(reader, clock=lambda: 1000.0, **kwargs)


async def test_depth_two_progression_and_reorg(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=2)
    h = tx_hash(1)
    chain.head = N - 1
    assert t.track(h).state is TxState.SUBMITTED
    assert (await t.poll_status(h)).state is TxState.SUBMITTED

    chain.head = N
    chain.include(h, N)
    st = await t.poll_status(h)
    assert st.state is TxState.PENDING
    assert (st.block_number, st.block_hash, st.confirmations) == (N, block_hash(N), 0)

    chain.head = N + 1
    st = await t.poll_status(h)
    assert st.state is TxState.CONFIRMED
    assert st.confirmations == 1

    chain.head = N + 2
    st = await t.poll_status(h)
    assert st.state is TxState.FINAL
    assert st.confirmations == 2
    assert st.succeeded is True

    # Block N replaced by a different block at the same height.
    chain.reorg(N)
    del chain.receipts[h]
    st = await t.poll_status(h)
    assert st.state is TxState.PENDING
    assert st.block_number is None
    assert st.confirmations == 0
    assert st.reorgs == 1


async def test_reorg_demotes_confirmed_and_reinclusion_resumes(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=3)
    h = tx_hash(2)
    chain.head = N + 1
    chain.include(h, N)
    assert (await t.poll_status(h)).state is TxState.CONFIRMED

    chain.reorg(N)
    assert (await t.poll_status(h)).state is TxState.PENDING

    # Re-included one block later on the new branch.
    chain.include(h, N + 1)
    chain.head = N + 4
    st = await t.poll_status(h)
    assert st.state is TxState.FINAL
    assert st.block_number == N + 1
    assert st.reorgs == 1


async def test_receipt_from_a_stale_block_is_not_recorded(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=1)
    h = tx_hash(3)
    chain.head = N + 5
    chain.include(h, N)
    chain.reorg(N)
    st = await t.poll_status(h)
    assert st.state is TxState.SUBMITTED
    assert st.block_number is None


async def test_never_final_before_depth(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=5)
    h = tx_hash(4)
    chain.include(h, N)
    for head in range(N, N + 5):
        chain.head = head
        assert (await t.poll_status(h)).state is not TxState.FINAL
    chain.head = N + 5
    assert (await t.poll_status(h)).state is TxState.FINAL


def test_zero_confirmations_is_refused(reader: ChainReader):
    with pytest.raises(ValueError):
        FinalityTracker(reader, confirmations=0)


async def test_finalized_tag_mode(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=1, finality_mode="finalized")
    h = tx_hash(5)
    chain.head = N + 10
    chain.include(h, N)
    chain.finalized = N - 1
    st = await t.poll_status(h)
    assert st.state is TxState.CONFIRMED
    assert st.confirmations == 10

    chain.finalized = N
    assert (await t.poll_status(h)).state is TxState.FINAL


async def test_unsupported_tag_falls_back_to_depth(chain: FakeChain, reader: ChainReader, caplog):
    t = tracker(reader, confirmations=2, finality_mode="safe")
    chain.reject_tags = True
    h = tx_hash(6)
    chain.head = N + 2
    chain.include(h, N)
    assert (await t.poll_status(h)).state is TxState.FINAL
    assert any("using confirmation depth" in r.getMessage() for r in caplog.records)


async def test_rejected_is_terminal(chain: FakeChain, reader: ChainReader):
    t = tracker(reader)
    h = tx_hash(7)
    t.mark_rejected(h, "insufficient funds")
    chain.head = N + 5
    chain.include(h, N)
    st = await t.poll_status(h)
    assert st.state is TxState.REJECTED
    assert st.error == "insufficient funds"
    assert t.pending() == []


async def test_concurrent_polls_of_one_transaction(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=2)
    h = tx_hash(8)
    chain.head = N + 2
    chain.include(h, N)
    results = await asyncio.gather(*(t.poll_status(h) for _ in range(5)))
    assert all(r.state is TxState.FINAL for r in results)
    assert all(r.reorgs == 0 for r in results)


async def test_status_table(chain: FakeChain, reader: ChainReader):
    t = tracker(reader)
    h = tx_hash(9)
    assert t.status(h) is None
    t.track(h.upper().replace("0X", "0x"))
    assert t.status(h).tx_hash == h
    assert [p.tx_hash for p in t.pending()] == [h]
    t.forget(h)
    assert t.status(h) is None


async def test_wait_until_final(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=2)
    h = tx_hash(10)
    chain.head = N
    chain.include(h, N)

    async def mine(_delay: float) -> None:
        chain.head += 1

    st = await t.wait_until_final(h, timeout_sec=60, sleep=mine, clock=lambda: 0.0)
    assert st.state is TxState.FINAL
    assert chain.head == N + 2


async def test_wait_until_final_times_out(chain: FakeChain, reader: ChainReader):
    t = tracker(reader, confirmations=2)
    h = tx_hash(11)
    chain.head = N
    now = [0.0]

    async def tick(delay: float) -> None:
        now[0] += delay

    with pytest.raises(FinalityTimeout) as exc:
        await t.wait_until_final(h, timeout_sec=5, poll_interval_sec=1, sleep=tick, clock=lambda: now[0])
    assert exc.value.tx_hash == h
    assert exc.value.last_status.state is TxState.SUBMITTED
