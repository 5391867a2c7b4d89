from __future__ import annotations

from typing import Any, List, Optional, Sequence

import httpx

from chainrpc.codec import Hash32
from chainrpc.config import ClientConfig, load_config
from chainrpc.events import check_for_arbitrary_events, check_for_events, wait_for_event, wait_for_event_alt
from chainrpc.finality import FinalityTracker
from chainrpc.gas import FeeEstimate, GasEstimator, Urgency
from chainrpc.logs import LogFilter, LogQuery
from chainrpc.models import LogEntry
from chainrpc.nonce import NonceManager
from chainrpc.reader import ChainReader
from chainrpc.rpc import JsonRpcClient
from chainrpc.state import PendingTx
from chainrpc.tx import SentTx, TransactionSubmitter


class Web3:
    """
    One node connection with every component wired around a single dispatcher.

    Components are public attributes (`rpc`, `reader`, `gas`, `nonces`,
    `tracker`, `submitter`, `logs`); the methods below cover the common paths.
    Nonce and finality tables belong to this instance only.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if config is None:
            config = ClientConfig(url=url) if url else ClientConfig()
        elif url:
            config = config.model_copy(update={"url": url})
        self.config = config

        self.rpc = JsonRpcClient.from_config(config, transport=transport)
        self.reader = ChainReader(self.rpc)
        self.gas = GasEstimator(
            self.reader,
            lookback_blocks=config.fee_history_blocks,
            min_priority_fee_wei=config.min_priority_fee_wei,
        )
        self.nonces = NonceManager(self.reader)
        self.tracker = FinalityTracker(
            self.reader,
            confirmations=config.confirmations,
            finality_mode=config.finality_mode,
        )
        self.submitter = TransactionSubmitter(self.reader, self.tracker, self.nonces, self.gas)
        self.logs = LogQuery(self.reader, max_block_span=config.max_log_block_span)

    @classmethod
    def from_env(cls, *, transport: Optional[httpx.AsyncBaseTransport] = None, **overrides: Any) -> "Web3":
        return cls(load_config(**overrides), transport=transport)

    async def __aenter__(self) -> "Web3":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        await self.rpc.aclose()

    # --- fees and nonces

    async def estimate_fees(self, urgency: Urgency = Urgency.MEDIUM) -> FeeEstimate:
        return await self.gas.estimate(urgency=urgency)

    async def next_nonce(self, account: str) -> int:
        return int(await self.nonces.reserve(account))

    async def resync_nonce(self, account: str) -> int:
        return int(await self.nonces.resync(account))

    async def release_nonce(self, account: str, nonce: int) -> None:
        await self.nonces.release(account, nonce)

    # --- transactions

    async def submit(self, raw_tx: bytes) -> Hash32:
        return await self.submitter.submit(raw_tx)

    async def send_transaction(self, **kwargs: Any) -> SentTx:
        return await self.submitter.send_transaction(**kwargs)

    async def poll_status(self, tx_hash: str) -> PendingTx:
        return await self.tracker.poll_status(tx_hash)

    async def wait_until_final(self, tx_hash: str, *, timeout_sec: float, poll_interval_sec: float = 1.0) -> PendingTx:
        return await self.tracker.wait_until_final(tx_hash, timeout_sec=timeout_sec, poll_interval_sec=poll_interval_sec)

    # --- logs and events

    async def get_logs(self, f: LogFilter) -> List[LogEntry]:
        return await self.logs.collect(f)

    async def check_for_events(
        self, start_block: int, end_block: Optional[int], addresses: Sequence[str], signatures: Sequence[str]
    ) -> List[LogEntry]:
        return await check_for_events(self.logs, start_block, end_block, addresses, signatures)

    async def check_for_arbitrary_events(
        self, start_block: int, end_block: Optional[int], addresses: Sequence[str], topics: Sequence[Sequence[bytes]]
    ) -> List[LogEntry]:
        return await check_for_arbitrary_events(self.logs, start_block, end_block, addresses, topics)

    async def wait_for_event(self, wait_for_sec: float, addresses: Sequence[str], signature: str, **kwargs: Any) -> LogEntry:
        return await wait_for_event(self.logs, wait_for_sec, addresses, signature, **kwargs)

    async def wait_for_event_alt(self, wait_sec: float, addresses: Sequence[str], signature: str, **kwargs: Any) -> LogEntry:
        return await wait_for_event_alt(self.logs, wait_sec, addresses, signature, **kwargs)
