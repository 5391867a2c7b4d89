from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Mapping, Optional

import httpx


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    DECODE = "decode"
    APPLICATION = "application"
    FINALITY_TIMEOUT = "finality_timeout"


class ChainRpcError(Exception):
    """
    Base of every error raised by chainrpc.

    - `retryable`: the dispatcher may repeat the same request internally.
    - `safe_to_resubmit`: the caller may repeat the whole operation without
      risking a double submission.
    """

    kind: ErrorKind = ErrorKind.APPLICATION
    retryable: bool = False
    safe_to_resubmit: bool = False

    def __init__(self, message: str, *, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class TransportError(ChainRpcError):
    kind = ErrorKind.TRANSPORT
    retryable = True
    safe_to_resubmit = True

    def __init__(self, message: str, *, method: Optional[str] = None, timed_out: bool = False, status: Optional[int] = None):
        super().__init__(message, method=method)
        self.timed_out = timed_out
        self.status = status


class ProtocolError(ChainRpcError):
    kind = ErrorKind.PROTOCOL

    def __init__(self, message: str, *, method: Optional[str] = None, payload: Any = None):
        super().__init__(message, method=method)
        self.payload = payload


class DecodeError(ChainRpcError, ValueError):
    kind = ErrorKind.DECODE


class ChainIntegerOverflow(ChainRpcError, OverflowError):
    kind = ErrorKind.DECODE


class RpcApplicationError(ChainRpcError):
    kind = ErrorKind.APPLICATION

    def __init__(self, code: Optional[int], message: str, *, data: Any = None, method: Optional[str] = None):
        where = f" calling {method}" if method else ""
        super().__init__(f"RPC error{where}: code={code} message={message}", method=method)
        self.code = code
        self.rpc_message = message
        self.data = data


class MethodNotFound(RpcApplicationError):
    pass


class InvalidParams(RpcApplicationError):
    pass


class NodeBusy(RpcApplicationError):
    retryable = True
    safe_to_resubmit = True


class NonceConflict(RpcApplicationError):
    pass


class InsufficientFunds(RpcApplicationError):
    pass


class ExecutionReverted(RpcApplicationError):
    pass


class AlreadyKnown(RpcApplicationError):
    # The node already holds this exact transaction.
    safe_to_resubmit = True


class RangeTooLarge(RpcApplicationError):
    pass


class TransactionRejected(ChainRpcError):
    """The node refused a raw transaction outright; `cause` is the classified node error."""

    def __init__(self, tx_hash: str, cause: RpcApplicationError):
        super().__init__(f"Transaction {tx_hash} rejected: {cause.rpc_message}", method=cause.method)
        self.tx_hash = tx_hash
        self.cause = cause


class FinalityTimeout(ChainRpcError):
    kind = ErrorKind.FINALITY_TIMEOUT

    def __init__(self, tx_hash: str, timeout_sec: float, last_status: Any = None):
        super().__init__(f"Transaction {tx_hash} not final within {timeout_sec}s")
        self.tx_hash = tx_hash
        self.timeout_sec = timeout_sec
        self.last_status = last_status


class TransactionNotSeen(ChainRpcError):
    def __init__(self, tx_hash: str, timeout_sec: float):
        super().__init__(f"Transaction {tx_hash} not seen within {timeout_sec}s")
        self.tx_hash = tx_hash
        self.timeout_sec = timeout_sec


class FeeUnavailable(ChainRpcError):
    pass


class EventNotFound(ChainRpcError):
    def __init__(self, event: str):
        super().__init__(f"Event {event} not found")
        self.event = event


class FilterRemovalError(ChainRpcError):
    pass


# --- Classification

# Standard JSON-RPC codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# Widely used node extensions
LIMIT_EXCEEDED = -32005
EXECUTION_ERROR = 3

BUSY_CODES = frozenset({LIMIT_EXCEEDED, -32097, -32098})
RETRYABLE_HTTP_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})

_RANGE_PATTERNS = (
    "block range",
    "range too large",
    "range is too large",
    "exceed maximum block range",
    "query returned more than",
    "too many results",
    "response size exceeded",
    "log response size",
    "query timeout exceeded",
)
_BUSY_PATTERNS = ("rate limit", "too many requests", "busy", "try again later", "capacity exceeded")
_NONCE_PATTERNS = (
    "nonce too low",
    "nonce too high",
    "invalid nonce",
    "nonce has already been used",
    "replacement transaction underpriced",
    "transaction underpriced: nonce",
)
_KNOWN_PATTERNS = ("already known", "known transaction", "already imported")
_FUNDS_PATTERNS = ("insufficient funds", "insufficient balance")


def _contains(message: str, patterns: tuple) -> bool:
    return any(p in message for p in patterns)


def classify_error_object(error: Any, *, method: Optional[str] = None) -> RpcApplicationError:
    """Map a JSON-RPC `error` member onto the closed taxonomy. Pure and deterministic."""
    if isinstance(error, Mapping):
        raw_code = error.get("code")
        message = str(error.get("message") or "")
        data = error.get("data")
    else:
        raw_code = None
        message = str(error)
        data = None
    try:
        code: Optional[int] = int(raw_code) if raw_code is not None else None
    except (TypeError, ValueError):
        code = None

    m = message.lower()
    if code == METHOD_NOT_FOUND or "method not found" in m or "does not exist/is not available" in m:
        cls: type = MethodNotFound
    elif _contains(m, _RANGE_PATTERNS):
        cls = RangeTooLarge
    elif _contains(m, _KNOWN_PATTERNS):
        cls = AlreadyKnown
    elif _contains(m, _NONCE_PATTERNS):
        cls = NonceConflict
    elif _contains(m, _FUNDS_PATTERNS):
        cls = InsufficientFunds
    elif code == EXECUTION_ERROR or "execution reverted" in m or "revert" in m:
        cls = ExecutionReverted
    elif (code in BUSY_CODES) or _contains(m, _BUSY_PATTERNS):
        cls = NodeBusy
    elif code == INVALID_PARAMS:
        cls = InvalidParams
    else:
        cls = RpcApplicationError
    return cls(code, message, data=data, method=method)


def classify_transport_failure(exc: BaseException, *, method: Optional[str] = None) -> TransportError:
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransportError(f"Timed out calling {method or 'node'}", method=method, timed_out=True)
    return TransportError(f"Transport failure calling {method or 'node'}: {exc!r}", method=method)


def classify_http_status(status: int, body: str, *, method: Optional[str] = None) -> ChainRpcError:
    snippet = body[:256]
    if status in RETRYABLE_HTTP_STATUS:
        return TransportError(f"HTTP {status}: {snippet}", method=method, status=status)
    return ProtocolError(f"Unexpected HTTP {status}: {snippet}", method=method, payload=snippet)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ChainRpcError) and exc.retryable
