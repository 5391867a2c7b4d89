from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Generic, Iterator, Optional, Tuple, TypeVar

V = TypeVar("V")


class KeyedStore(Generic[V]):
    """
    Process-resident table with one asyncio.Lock per key.

    Mutations for one key are serialized by holding `lock(key)`; distinct keys
    never contend. Each client owns its own stores, so instances do not share
    state.
    """

    def __init__(self) -> None:
        self._values: Dict[str, V] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lk = self._locks.get(key)
        if lk is None:
            lk = asyncio.Lock()
            self._locks[key] = lk
        return lk

    def get(self, key: str) -> Optional[V]:
        return self._values.get(key)

    def set(self, key: str, value: V) -> V:
        self._values[key] = value
        return value

    def pop(self, key: str) -> Optional[V]:
        self._locks.pop(key, None)
        return self._values.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def items(self) -> Iterator[Tuple[str, V]]:
        return iter(list(self._values.items()))


def account_key(address: str) -> str:
    return str(address).lower()


@dataclass(frozen=True)
class NonceState:
    next_nonce: int
    chain_nonce: int
    # Reserved locally, not yet seen confirmed by the chain nor released as failed.
    outstanding: FrozenSet[int] = field(default_factory=frozenset)


class TxState(str, Enum):
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINAL = "final"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PendingTx:
    """
    Tracked state of one submitted transaction.

    `block_number`/`block_hash` are the last observed inclusion; both reset to
    None when that block leaves the canonical chain, and `reorgs` counts how
    often that happened. `confirmations` is the number of blocks on top of the
    inclusion block.
    """

    tx_hash: str
    submitted_at: float
    state: TxState = TxState.SUBMITTED
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    confirmations: int = 0
    reorgs: int = 0
    succeeded: Optional[bool] = None
    error: Optional[str] = None
