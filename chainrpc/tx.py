from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from eth_account import Account  # type: ignore
from eth_utils import keccak

from chainrpc.codec import Address, Hash32, decode_data, encode_data
from chainrpc.errors import AlreadyKnown, NonceConflict, RpcApplicationError, TransactionNotSeen, TransactionRejected
from chainrpc.finality import FinalityTracker
from chainrpc.gas import FeeEstimate, GasEstimator
from chainrpc.models import Transaction
from chainrpc.nonce import NonceManager
from chainrpc.reader import ChainReader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentTx:
    tx_hash: str
    from_address: str
    nonce: int
    fee: Optional[FeeEstimate] = None


def buffered_gas(estimate: int) -> int:
    gas = int(estimate)
    return max(gas + 50_000, gas * 6 // 5)


def build_transaction(
    *,
    chain_id: int,
    nonce: int,
    to: Optional[str],
    data: bytes,
    value_wei: int,
    gas: int,
    fee: FeeEstimate,
) -> Dict[str, Any]:
    tx: Dict[str, Any] = {
        "nonce": int(nonce),
        "value": int(value_wei),
        "gas": int(gas),
        "data": encode_data(data),
        "chainId": int(chain_id),
    }
    if to is not None:
        tx["to"] = str(Address(to))
    if fee.legacy:
        tx["gasPrice"] = int(fee.max_fee)
    else:
        tx["type"] = 2
        tx["maxFeePerGas"] = int(fee.max_fee)
        tx["maxPriorityFeePerGas"] = int(fee.priority_fee or 0)
    return tx


class TransactionSubmitter:
    def __init__(
        self,
        reader: ChainReader,
        tracker: FinalityTracker,
        nonces: NonceManager,
        gas: GasEstimator,
        *,
        chain_id: Optional[int] = None,
    ):
        self.reader = reader
        self.tracker = tracker
        self.nonces = nonces
        self.gas = gas
        self._chain_id = chain_id

    async def submit(self, raw_tx: Union[bytes, str]) -> Hash32:
        """
        Send a signed transaction and start tracking it.

        A node refusal is recorded as REJECTED and raised as TransactionRejected;
        transport failures propagate untouched (resending the same bytes is safe).
        """
        raw = decode_data(raw_tx) if isinstance(raw_tx, str) else bytes(raw_tx)
        local_hash = Hash32(keccak(raw))
        try:
            tx_hash = await self.reader.send_raw(raw)
        except AlreadyKnown:
            tx_hash = local_hash
        except RpcApplicationError as e:
            if e.retryable:
                raise
            self.tracker.mark_rejected(local_hash, e.rpc_message)
            raise TransactionRejected(str(local_hash), e) from e
        if tx_hash != local_hash:
            logger.warning("Node returned hash %s for a transaction hashing to %s", tx_hash, local_hash)
        self.tracker.track(tx_hash)
        return tx_hash

    async def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self.reader.chain_id()
        return self._chain_id

    async def send_transaction(
        self,
        *,
        private_key: str,
        to: Optional[str],
        data: Union[bytes, str] = b"",
        value_wei: int = 0,
        gas: Optional[int] = None,
        fee: Optional[FeeEstimate] = None,
    ) -> SentTx:
        """
        Build, sign and submit a transaction from `private_key`'s account.

        The nonce comes from the NonceManager. A nonce conflict reported by the
        node triggers one resync and a single retry with a fresh nonce.
        """
        acct = Account.from_key(private_key)
        sender = str(Address(acct.address))
        payload = decode_data(data) if isinstance(data, str) else bytes(data)
        chain_id = await self.chain_id()
        fee = fee if fee is not None else await self.gas.estimate()
        if gas is None:
            est = await self.reader.estimate_gas({"from": sender, "to": to, "value": int(value_wei), "data": payload})
            gas = buffered_gas(int(est))

        for attempt in range(2):
            nonce = await self.nonces.reserve(sender)
            tx = build_transaction(
                chain_id=chain_id, nonce=nonce, to=to, data=payload, value_wei=value_wei, gas=gas, fee=fee
            )
            signed = Account.sign_transaction(tx, private_key)
            try:
                tx_hash = await self.submit(signed.raw_transaction)
            except TransactionRejected as e:
                await self.nonces.release(sender, nonce)
                if isinstance(e.cause, NonceConflict) and attempt == 0:
                    logger.info("Nonce %d for %s conflicted (%s); resyncing", nonce, sender, e.cause.rpc_message)
                    await self.nonces.resync(sender)
                    continue
                raise
            return SentTx(tx_hash=str(tx_hash), from_address=sender, nonce=int(nonce), fee=fee)
        raise RuntimeError("send_transaction exhausted its attempts without raising.")

    async def wait_for_transaction(
        self,
        tx_hash: str,
        *,
        timeout_sec: float = 120.0,
        poll_interval_sec: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> Transaction:
        """Wait until the node knows the transaction (in its pool or in a block)."""
        deadline = clock() + timeout_sec
        while True:
            tx = await self.reader.get_transaction_by_hash(tx_hash)
            if tx is not None:
                return tx
            if clock() >= deadline:
                raise TransactionNotSeen(tx_hash, timeout_sec)
            await sleep(poll_interval_sec)
