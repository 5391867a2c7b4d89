from __future__ import annotations

import logging
from dataclasses import replace
from typing import FrozenSet, Optional, Union

from chainrpc.codec import Address, Uint256
from chainrpc.reader import ChainReader
from chainrpc.state import KeyedStore, NonceState, account_key

logger = logging.getLogger(__name__)

# Outstanding reservations per account before settled ones are dropped.
PRUNE_AT = 64


class NonceManager:
    """
    Hands out per-account nonces.

    Each account has its own lock, so concurrent `reserve` calls for one
    account are serialized and receive consecutive values while different
    accounts proceed independently. State is created lazily from the node's
    pending transaction count and only moves backward on `resync` when the
    nonces above the chain value have been released as failed. Once an account
    holds `prune_at` outstanding reservations, the next `reserve` drops the ones
    the chain has already confirmed.
    """

    def __init__(
        self,
        reader: ChainReader,
        *,
        init_tag: str = "pending",
        resync_tag: str = "latest",
        prune_at: int = PRUNE_AT,
    ):
        self.reader = reader
        self.init_tag = init_tag
        self.resync_tag = resync_tag
        self.prune_at = prune_at
        self._store: KeyedStore[NonceState] = KeyedStore()

    async def reserve(self, account: Union[str, Address]) -> Uint256:
        key = account_key(account)
        async with self._store.lock(key):
            st = self._store.get(key)
            if st is None:
                chain = int(await self.reader.get_transaction_count(account, self.init_tag))
                st = NonceState(next_nonce=chain, chain_nonce=chain)
            elif len(st.outstanding) >= self.prune_at:
                st = await self._prune(account, st)
            nonce = Uint256(st.next_nonce)
            self._store.set(
                key,
                replace(st, next_nonce=int(nonce + 1), outstanding=st.outstanding | {int(nonce)}),
            )
            return nonce

    async def _prune(self, account: Union[str, Address], st: NonceState) -> NonceState:
        # Nonces below the confirmed count are settled on chain.
        chain = int(await self.reader.get_transaction_count(account, self.resync_tag))
        outstanding = frozenset(n for n in st.outstanding if n >= chain)
        logger.debug("Pruned %d settled nonces for %s (chain %d)", len(st.outstanding) - len(outstanding), account, chain)
        return replace(st, chain_nonce=max(st.chain_nonce, chain), outstanding=outstanding)

    async def resync(self, account: Union[str, Address]) -> Uint256:
        """
        Re-read the chain's confirmed nonce and reset local state to it, keeping
        every locally reserved nonce above it that has not been released.
        """
        key = account_key(account)
        async with self._store.lock(key):
            chain = int(await self.reader.get_transaction_count(account, self.resync_tag))
            st = self._store.get(key)
            outstanding = frozenset(n for n in (st.outstanding if st else ()) if n >= chain)
            floor = max(outstanding) + 1 if outstanding else chain
            new_next = max(chain, floor)
            if st is not None and new_next != st.next_nonce:
                logger.info("Nonce resync for %s: %d -> %d (chain %d)", key, st.next_nonce, new_next, chain)
            self._store.set(key, NonceState(next_nonce=new_next, chain_nonce=chain, outstanding=outstanding))
            return Uint256(new_next)

    async def release(self, account: Union[str, Address], nonce: int) -> None:
        """Mark a reserved nonce as failed: its transaction never reached the node."""
        key = account_key(account)
        async with self._store.lock(key):
            st = self._store.get(key)
            if st is None:
                return
            outstanding = st.outstanding - {int(nonce)}
            next_nonce = st.next_nonce
            # Hand the top nonce back directly when nothing above it is in use.
            if int(nonce) == next_nonce - 1:
                next_nonce = max(st.chain_nonce, (max(outstanding) + 1) if outstanding else int(nonce))
            self._store.set(key, replace(st, next_nonce=next_nonce, outstanding=outstanding))

    def peek(self, account: Union[str, Address]) -> Optional[int]:
        st = self._store.get(account_key(account))
        return None if st is None else st.next_nonce

    def forget(self, account: Union[str, Address]) -> None:
        self._store.pop(account_key(account))

    def outstanding(self, account: Union[str, Address]) -> FrozenSet[int]:
        st = self._store.get(account_key(account))
        return frozenset() if st is None else st.outstanding
