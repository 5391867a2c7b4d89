from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Sequence

from chainrpc.abi import address_to_topic, event_signature, event_topic
from chainrpc.codec import BlockTag
from chainrpc.errors import ChainRpcError, EventNotFound, FilterRemovalError
from chainrpc.logs import LogFilter, LogQuery, TopicPattern
from chainrpc.models import LogEntry

logger = logging.getLogger(__name__)

LocalFilter = Callable[[LogEntry], bool]

__all__ = [
    "address_to_topic",
    "check_for_arbitrary_events",
    "check_for_events",
    "event_filter",
    "event_topic",
    "wait_for_event",
    "wait_for_event_alt",
]


def event_filter(
    addresses: Sequence[str],
    signature: str,
    topics: Sequence[Sequence[bytes]] = (),
    *,
    from_block: Optional[BlockTag] = None,
    to_block: Optional[BlockTag] = None,
) -> LogFilter:
    """topic0 pinned to `signature`; each entry of `topics` is the alternatives for the next position."""
    pattern: List[TopicPattern] = [event_signature(signature)]
    pattern.extend(list(t) if t else None for t in topics)
    return LogFilter(addresses=tuple(addresses), topics=tuple(pattern), from_block=from_block, to_block=to_block)


async def check_for_events(
    logs: LogQuery,
    start_block: int,
    end_block: Optional[int],
    addresses: Sequence[str],
    signatures: Sequence[str],
) -> List[LogEntry]:
    """
    Logs matching any of `signatures` over a block range. Without `end_block`
    the range ends at the node's finalized block. Does not wait.
    """
    f = LogFilter(
        addresses=tuple(addresses),
        topics=([event_signature(s) for s in signatures],) if signatures else (),
        from_block=start_block,
        to_block=end_block if end_block is not None else "finalized",
    )
    return await logs.collect(f)


async def check_for_arbitrary_events(
    logs: LogQuery,
    start_block: int,
    end_block: Optional[int],
    addresses: Sequence[str],
    topics: Sequence[Sequence[bytes]],
) -> List[LogEntry]:
    f = LogFilter(
        addresses=tuple(addresses),
        topics=tuple(list(t) if t else None for t in topics),
        from_block=start_block,
        to_block=end_block if end_block is not None else "finalized",
    )
    return await logs.collect(f)


async def wait_for_event(
    logs: LogQuery,
    wait_for_sec: float,
    addresses: Sequence[str],
    signature: str,
    topics: Sequence[Sequence[bytes]] = (),
    local_filter: Optional[LocalFilter] = None,
    *,
    poll_interval_sec: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> LogEntry:
    """
    Install a log filter, poll its changes until a log passes `local_filter`
    or `wait_for_sec` elapses, then uninstall the filter.
    """
    fid = await logs.new_filter(event_filter(addresses, signature, topics))
    found: Optional[LogEntry] = None
    deadline = clock() + wait_for_sec
    try:
        while found is None and clock() < deadline:
            await sleep(poll_interval_sec)
            for entry in await logs.get_filter_changes(fid):
                if local_filter is None or local_filter(entry):
                    found = entry
                    break
    except BaseException:
        # The polling error wins; removal is best effort here.
        try:
            await logs.uninstall_filter(fid)
        except ChainRpcError as e:
            logger.warning("Could not remove filter %s: %s", fid, e)
        raise

    try:
        removed = await logs.uninstall_filter(fid)
    except ChainRpcError as e:
        raise FilterRemovalError(f"Could not remove filter {fid}: {e}") from e
    if not removed:
        logger.warning("Node did not confirm removal of filter %s", fid)

    if found is None:
        raise EventNotFound(signature)
    return found


async def wait_for_event_alt(
    logs: LogQuery,
    wait_sec: float,
    addresses: Sequence[str],
    signature: str,
    topics: Sequence[Sequence[bytes]] = (),
    local_filter: Optional[LocalFilter] = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> LogEntry:
    """Wait `wait_sec` unconditionally, then look for the event once in the latest logs."""
    await sleep(wait_sec)
    for entry in await logs.get_logs(event_filter(addresses, signature, topics)):
        if local_filter is None or local_filter(entry):
            return entry
    raise EventNotFound(signature)
