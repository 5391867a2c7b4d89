from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

from chainrpc.codec import Address, BlockTag, Hash32, decode_quantity, encode_block_tag, is_symbolic_tag
from chainrpc.errors import ProtocolError, RangeTooLarge
from chainrpc.models import LogEntry
from chainrpc.reader import ChainReader, parse_model

logger = logging.getLogger(__name__)

Topic = Union[str, bytes]
# One position of a topic filter: any (None), one topic, or a set of alternatives.
TopicPattern = Union[None, Topic, Sequence[Topic]]


def _topic(t: Topic) -> str:
    return str(Hash32(t))


def encode_topic_pattern(p: TopicPattern) -> Any:
    if p is None:
        return None
    if isinstance(p, (str, bytes, bytearray)):
        return _topic(p)
    alts = [_topic(t) for t in p]
    return alts or None


@dataclass(frozen=True)
class LogFilter:
    """
    `from_block` must be concrete (a number, or "earliest") for ranged queries;
    `to_block` may be symbolic and is resolved before dispatch.
    """

    addresses: Tuple[str, ...] = ()
    topics: Tuple[TopicPattern, ...] = ()
    from_block: Optional[BlockTag] = None
    to_block: Optional[BlockTag] = "latest"

    def to_params(self, from_block: Optional[BlockTag] = None, to_block: Optional[BlockTag] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.addresses:
            addrs = [str(Address(a)) for a in self.addresses]
            out["address"] = addrs[0] if len(addrs) == 1 else addrs
        if self.topics:
            out["topics"] = [encode_topic_pattern(p) for p in self.topics]
        fb = self.from_block if from_block is None else from_block
        tb = self.to_block if to_block is None else to_block
        if fb is not None:
            out["fromBlock"] = encode_block_tag(fb)
        if tb is not None:
            out["toBlock"] = encode_block_tag(tb)
        return out


def _parse_logs(raw: Any, *, method: str) -> List[LogEntry]:
    if not isinstance(raw, list):
        raise ProtocolError(f"{method} returned a non-array", method=method, payload=raw)
    return [parse_model(LogEntry, item, method=method) for item in raw]


class LogQuery:
    """
    Range-split eth_getLogs.

    A range is walked in sub-ranges of at most `max_block_span` blocks. A
    sub-range the node refuses as too large is halved until it passes, and the
    smaller span is kept for the rest of the walk. Entries come out ordered by
    (block number, log index) however the range was divided.
    """

    def __init__(self, reader: ChainReader, *, max_block_span: int = 2000):
        if max_block_span < 1:
            raise ValueError("max_block_span must be >= 1")
        self.reader = reader
        self.max_block_span = int(max_block_span)

    async def resolve_range(self, f: LogFilter) -> Tuple[int, int]:
        start = self._lower_bound(f.from_block)
        tb = "latest" if f.to_block is None else f.to_block
        if is_symbolic_tag(tb):
            tag = str(tb).strip().lower()
            if tag == "earliest":
                end = 0
            elif tag in ("latest", "pending"):
                end = int(await self.reader.block_number())
            else:
                n = await self.reader.tagged_block_number(tag)
                if n is None:
                    raise ProtocolError(f"Node reported no {tag!r} block", method="eth_getBlockByNumber")
                end = n
        else:
            end = tb if isinstance(tb, int) else decode_quantity(tb)
        return start, end

    @staticmethod
    def _lower_bound(tag: Optional[BlockTag]) -> int:
        if tag is None:
            raise ValueError("LogFilter.from_block is required for a ranged query")
        if isinstance(tag, bool):
            raise ValueError(f"Invalid block tag: {tag!r}")
        if isinstance(tag, int):
            if tag < 0:
                raise ValueError(f"Invalid block number: {tag}")
            return tag
        if str(tag).strip().lower() == "earliest":
            return 0
        if is_symbolic_tag(tag):
            raise ValueError(f"Symbolic tag {tag!r} is only valid as the upper bound")
        return decode_quantity(tag)

    async def query(self, f: LogFilter) -> AsyncIterator[LogEntry]:
        start, end = await self.resolve_range(f)
        span = self.max_block_span
        cur = start
        while cur <= end:
            hi = min(end, cur + span - 1)
            entries, used = await self._fetch(f, cur, hi)
            span = min(span, used)
            for entry in entries:
                yield entry
            cur = hi + 1

    async def collect(self, f: LogFilter) -> List[LogEntry]:
        return [entry async for entry in self.query(f)]

    async def _fetch(self, f: LogFilter, lo: int, hi: int) -> Tuple[List[LogEntry], int]:
        try:
            raw = await self.reader.rpc.call("eth_getLogs", [f.to_params(lo, hi)])
        except RangeTooLarge:
            if lo >= hi:
                raise
            mid = lo + (hi - lo) // 2
            logger.info("eth_getLogs range %d-%d too large; halving", lo, hi)
            left, left_span = await self._fetch(f, lo, mid)
            right, right_span = await self._fetch(f, mid + 1, hi)
            return left + right, min(left_span, right_span)
        entries = _parse_logs(raw, method="eth_getLogs")
        entries.sort(key=lambda e: e.sort_key)
        return entries, hi - lo + 1

    # --- single-shot and filter-based access

    async def get_logs(self, f: LogFilter) -> List[LogEntry]:
        """One eth_getLogs call with the filter as given; no range splitting."""
        raw = await self.reader.rpc.call("eth_getLogs", [f.to_params()])
        return _parse_logs(raw, method="eth_getLogs")

    async def new_filter(self, f: LogFilter) -> str:
        fid = await self.reader.rpc.call("eth_newFilter", [f.to_params()])
        if not isinstance(fid, str):
            raise ProtocolError("eth_newFilter returned a non-string id", method="eth_newFilter", payload=fid)
        return fid

    async def get_filter_changes(self, filter_id: str) -> List[LogEntry]:
        raw = await self.reader.rpc.call("eth_getFilterChanges", [filter_id])
        return _parse_logs(raw, method="eth_getFilterChanges")

    async def uninstall_filter(self, filter_id: str) -> bool:
        return bool(await self.reader.rpc.call("eth_uninstallFilter", [filter_id]))
