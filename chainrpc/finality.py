from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Awaitable, Callable, List, Optional

from chainrpc.codec import Hash32
from chainrpc.config import FinalityMode
from chainrpc.errors import FinalityTimeout, RpcApplicationError
from chainrpc.reader import ChainReader
from chainrpc.state import KeyedStore, PendingTx, TxState

logger = logging.getLogger(__name__)

TxStatus = PendingTx


class FinalityTracker:
    """
    Per-transaction state machine advanced by discrete `poll_status` calls.

        SUBMITTED -> PENDING(block) -> CONFIRMED(depth) -> FINAL
        PENDING/CONFIRMED/FINAL -> PENDING (inclusion block replaced by a reorg)
        SUBMITTED -> REJECTED (node refused the transaction)

    Every poll re-reads the block at the recorded inclusion height; a different
    hash clears the inclusion and the confirmation depth. Polls of one
    transaction are serialized, polls of different transactions are not.
    """

    def __init__(
        self,
        reader: ChainReader,
        *,
        confirmations: int = 2,
        finality_mode: FinalityMode = "depth",
        clock: Callable[[], float] = time.time,
    ):
        if confirmations < 1:
            raise ValueError("confirmations must be >= 1")
        if finality_mode not in ("depth", "finalized", "safe"):
            raise ValueError(f"Unknown finality mode: {finality_mode!r}")
        self.reader = reader
        self.confirmations = int(confirmations)
        self.finality_mode = finality_mode
        self._clock = clock
        self._store: KeyedStore[PendingTx] = KeyedStore()

    # --- table

    def track(self, tx_hash: str) -> PendingTx:
        key = str(Hash32(tx_hash))
        rec = self._store.get(key)
        if rec is None:
            rec = self._store.set(key, PendingTx(tx_hash=key, submitted_at=self._clock()))
        return rec

    def mark_rejected(self, tx_hash: str, error: str) -> PendingTx:
        key = str(Hash32(tx_hash))
        rec = self._store.get(key) or PendingTx(tx_hash=key, submitted_at=self._clock())
        return self._store.set(key, replace(rec, state=TxState.REJECTED, error=error))

    def status(self, tx_hash: str) -> Optional[PendingTx]:
        return self._store.get(str(Hash32(tx_hash)))

    def forget(self, tx_hash: str) -> None:
        self._store.pop(str(Hash32(tx_hash)))

    def pending(self) -> List[PendingTx]:
        return [rec for _, rec in self._store.items() if rec.state not in (TxState.FINAL, TxState.REJECTED)]

    # --- polling

    async def poll_status(self, tx_hash: str) -> PendingTx:
        key = str(Hash32(tx_hash))
        async with self._store.lock(key):
            rec = self._store.get(key) or PendingTx(tx_hash=key, submitted_at=self._clock())
            if rec.state is TxState.REJECTED:
                return rec
            rec = await self._advance(rec)
            return self._store.set(key, rec)

    async def _advance(self, rec: PendingTx) -> PendingTx:
        if rec.block_number is not None:
            block = await self.reader.get_block(rec.block_number)
            current = block.hash if block is not None else None
            if current != rec.block_hash:
                logger.warning(
                    "Reorg: block %d of %s changed %s -> %s", rec.block_number, rec.tx_hash, rec.block_hash, current
                )
                return replace(
                    rec,
                    state=TxState.PENDING,
                    block_number=None,
                    block_hash=None,
                    confirmations=0,
                    reorgs=rec.reorgs + 1,
                    succeeded=None,
                )
        else:
            receipt = await self.reader.get_transaction_receipt(rec.tx_hash)
            if receipt is None:
                return rec
            block = await self.reader.get_block(receipt.block_number)
            if block is None or block.hash != receipt.block_hash:
                # Receipt from a block that is already off the canonical chain.
                return rec
            rec = replace(
                rec,
                block_number=receipt.block_number,
                block_hash=receipt.block_hash,
                succeeded=receipt.succeeded,
            )

        head = int(await self.reader.block_number())
        depth = max(0, head - rec.block_number)
        final = depth >= self.confirmations
        if self.finality_mode != "depth":
            tagged = await self._tagged_number()
            if tagged is not None:
                final = tagged >= rec.block_number

        if final:
            state = TxState.FINAL
        elif depth > 0:
            state = TxState.CONFIRMED
        else:
            state = TxState.PENDING
        return replace(rec, state=state, confirmations=depth)

    async def _tagged_number(self) -> Optional[int]:
        try:
            n = await self.reader.tagged_block_number(self.finality_mode)
        except RpcApplicationError as e:
            logger.warning("Node rejected the %r tag (%s); using confirmation depth", self.finality_mode, e)
            return None
        if n is None:
            logger.warning("Node has no %r block; using confirmation depth", self.finality_mode)
        return n

    async def wait_until_final(
        self,
        tx_hash: str,
        *,
        timeout_sec: float,
        poll_interval_sec: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> PendingTx:
        """Drive `poll_status` until FINAL or REJECTED; raises FinalityTimeout at the deadline."""
        deadline = clock() + timeout_sec
        while True:
            st = await self.poll_status(tx_hash)
            if st.state in (TxState.FINAL, TxState.REJECTED):
                return st
            if clock() >= deadline:
                raise FinalityTimeout(st.tx_hash, timeout_sec, last_status=st)
            await sleep(poll_interval_sec)
