from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Iterator, Optional

from chainrpc.errors import DecodeError, FeeUnavailable, ProtocolError, RpcApplicationError, TransportError
from chainrpc.models import FeeHistory
from chainrpc.reader import ChainReader

logger = logging.getLogger(__name__)


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def percentile(self) -> float:
        return {"low": 10.0, "medium": 50.0, "high": 90.0}[self.value]


@dataclass(frozen=True)
class FeeSample:
    block_number: int
    base_fee: int
    gas_used_ratio: float
    reward: Optional[int] = None


@dataclass(frozen=True)
class FeeEstimate:
    """
    `max_fee` is the per-gas cap to sign with. With `priority_fee` set it is an
    EIP-1559 maxFeePerGas; without it the estimate came from eth_gasPrice and
    `max_fee` is a legacy gasPrice.
    """

    base_fee: int
    priority_fee: Optional[int]
    max_fee: int
    confidence: str
    source: str
    samples: int = 0

    @property
    def legacy(self) -> bool:
        return self.priority_fee is None


class GasEstimator:
    def __init__(
        self,
        reader: ChainReader,
        *,
        lookback_blocks: int = 20,
        min_priority_fee_wei: int = 0,
        base_fee_multiplier: int = 2,
    ):
        if lookback_blocks < 1:
            raise ValueError("lookback_blocks must be >= 1")
        self.reader = reader
        self.lookback_blocks = int(lookback_blocks)
        self.min_priority_fee_wei = int(min_priority_fee_wei)
        self.base_fee_multiplier = int(base_fee_multiplier)
        self._cached: Optional[FeeEstimate] = None

    async def fee_samples(self, percentile: float = 50.0) -> AsyncIterator[FeeSample]:
        """Per-block samples for the lookback window, oldest first."""
        history = await self.reader.fee_history(self.lookback_blocks, "latest", [percentile])
        for s in _samples(history):
            yield s

    async def estimate(
        self,
        *,
        urgency: Urgency = Urgency.MEDIUM,
        percentile: Optional[float] = None,
        use_cache: bool = False,
    ) -> FeeEstimate:
        if use_cache and self._cached is not None:
            return self._cached
        pct = float(percentile) if percentile is not None else urgency.percentile
        if not 0.0 <= pct <= 100.0:
            raise ValueError(f"percentile must be within [0, 100], got {pct}")

        est = await self._from_history(pct)
        if est is None:
            est = await self._from_gas_price()
        self._cached = est
        return est

    async def _from_history(self, pct: float) -> Optional[FeeEstimate]:
        try:
            history = await self.reader.fee_history(self.lookback_blocks, "latest", [pct])
        except (RpcApplicationError, ProtocolError, DecodeError) as e:
            logger.warning("eth_feeHistory unavailable (%s); falling back to eth_gasPrice", e)
            return None

        samples = list(_samples(history))
        # baseFeePerGas carries one extra trailing entry: the next block's base fee.
        if len(history.base_fee_per_gas) > len(samples):
            next_base = history.base_fee_per_gas[-1]
        elif samples:
            next_base = samples[-1].base_fee
        else:
            next_base = 0
        if not next_base:
            # Pre-London chains report zero base fees.
            return None

        rewards = [s.reward for s in samples if s.reward]
        if rewards:
            priority = int(statistics.median(rewards))
        else:
            priority = await self._node_priority_fee()
        priority = max(priority, self.min_priority_fee_wei)

        max_fee = int(next_base) * self.base_fee_multiplier + priority
        return FeeEstimate(
            base_fee=int(next_base),
            priority_fee=priority,
            max_fee=max_fee,
            confidence="high" if len(samples) >= self.lookback_blocks else "low",
            source="fee_history",
            samples=len(samples),
        )

    async def _node_priority_fee(self) -> int:
        try:
            return int(await self.reader.max_priority_fee())
        except RpcApplicationError as e:
            logger.info("eth_maxPriorityFeePerGas unavailable (%s); using minimum tip", e)
            return self.min_priority_fee_wei

    async def _from_gas_price(self) -> FeeEstimate:
        try:
            gp = int(await self.reader.gas_price())
        except (RpcApplicationError, TransportError) as e:
            raise FeeUnavailable(f"No fee data obtainable from node: {e}", method="eth_gasPrice") from e
        return FeeEstimate(base_fee=gp, priority_fee=None, max_fee=gp, confidence="low", source="gas_price")


def _samples(history: FeeHistory) -> Iterator[FeeSample]:
    rewards = history.reward or []
    for i, ratio in enumerate(history.gas_used_ratio):
        if i >= len(history.base_fee_per_gas):
            break
        reward = rewards[i][0] if i < len(rewards) and rewards[i] else None
        yield FeeSample(
            block_number=history.oldest_block + i,
            base_fee=history.base_fee_per_gas[i],
            gas_used_ratio=float(ratio),
            reward=reward,
        )
