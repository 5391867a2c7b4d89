from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from chainrpc.config import ClientConfig
from chainrpc.errors import (
    ChainRpcError,
    ProtocolError,
    RETRYABLE_HTTP_STATUS,
    classify_error_object,
    classify_http_status,
    classify_transport_failure,
    is_retryable,
)

logger = logging.getLogger(__name__)

Params = Optional[Sequence[Any]]
Call = Tuple[str, Params]


@dataclass(frozen=True)
class RpcRequest:
    id: int
    method: str
    params: Tuple[Any, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"jsonrpc": "2.0", "id": self.id, "method": self.method, "params": list(self.params)}


@dataclass(frozen=True)
class RpcResponse:
    id: Any
    result: Any = None
    error: Optional[Mapping[str, Any]] = None

    @classmethod
    def parse(cls, obj: Any) -> "RpcResponse":
        if not isinstance(obj, dict) or "id" not in obj:
            raise ProtocolError("Malformed JSON-RPC response object", payload=obj)
        err = obj.get("error")
        if err is not None:
            return cls(id=obj["id"], error=err if isinstance(err, Mapping) else {"message": str(err)})
        if "result" not in obj:
            raise ProtocolError("JSON-RPC response has neither result nor error", payload=obj)
        return cls(id=obj["id"], result=obj["result"])


class JsonRpcClient:
    """
    Async JSON-RPC 2.0 dispatcher over one pooled httpx client.

    - `call` sends a single request and returns its `result`.
    - `call_many` sends a batch; each slot holds a result or the classified
      error instance for that call, matched back by id.
    - Retryable failures (transport, node busy) are repeated with exponential
      backoff; everything else surfaces immediately.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_sec: float = 30.0,
        max_retries: int = 3,
        backoff_base_sec: float = 0.25,
        backoff_max_sec: float = 8.0,
        max_connections: int = 10,
        debug_requests: bool = False,
        debug_responses: bool = False,
        debug_errors: bool = False,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not (url or "").strip():
            raise ValueError("url must be a non-empty string.")
        self.url = url.strip()
        self.timeout_sec = float(timeout_sec)
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_sec = float(backoff_base_sec)
        self.backoff_max_sec = float(backoff_max_sec)
        self.debug_requests = debug_requests
        self.debug_responses = debug_responses
        self.debug_errors = debug_errors
        self._ids = itertools.count(1)

        merged = {"Content-Type": "application/json", "Accept": "application/json"}
        if headers:
            merged.update(dict(headers))
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_sec),
            limits=httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections),
            headers=merged,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ClientConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> "JsonRpcClient":
        return cls(
            config.url,
            timeout_sec=config.timeout_sec,
            max_retries=config.max_retries,
            backoff_base_sec=config.backoff_base_sec,
            backoff_max_sec=config.backoff_max_sec,
            max_connections=config.max_connections,
            debug_requests=config.debug_requests,
            debug_responses=config.debug_responses,
            debug_errors=config.debug_errors,
            transport=transport,
        )

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # --- public API

    async def call(self, method: str, params: Params = None) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await self._call_once(method, params)
        raise RuntimeError("RPC request failed without raising an exception.")

    async def call_many(self, calls: Sequence[Call]) -> List[Any]:
        if not calls:
            return []
        async for attempt in self._retrying():
            with attempt:
                return await self._call_many_once(calls)
        raise RuntimeError("RPC batch failed without raising an exception.")

    # --- internals

    def _make_request(self, method: str, params: Params) -> RpcRequest:
        if not isinstance(method, str) or not method.strip():
            raise ValueError("method must be a non-empty string.")
        if params is None:
            params = ()
        if isinstance(params, (str, bytes, Mapping)) or not isinstance(params, Sequence):
            raise ValueError("params must be an ordered sequence.")
        return RpcRequest(id=next(self._ids), method=method, params=tuple(params))

    async def _call_once(self, method: str, params: Params) -> Any:
        req = self._make_request(method, params)
        data = await self._post(req.to_dict(), method=method)
        if not isinstance(data, dict):
            raise self._report(ProtocolError(f"Expected a response object for {method}", method=method, payload=data))
        resp = RpcResponse.parse(data)
        if resp.id != req.id:
            raise self._report(
                ProtocolError(f"Response id {resp.id!r} does not match request id {req.id}", method=method, payload=data)
            )
        if resp.error is not None:
            raise self._report(classify_error_object(resp.error, method=method))
        return resp.result

    async def _call_many_once(self, calls: Sequence[Call]) -> List[Any]:
        reqs = [self._make_request(method, params) for method, params in calls]
        data = await self._post([r.to_dict() for r in reqs], method="batch")

        if isinstance(data, dict) and data.get("error") is not None:
            # Some nodes answer a whole batch with one error object.
            raise self._report(classify_error_object(data["error"], method="batch"))
        if not isinstance(data, list):
            raise self._report(ProtocolError("Batch response is not an array", method="batch", payload=data))

        by_id = {r.id: r for r in reqs}
        responses: Dict[Any, RpcResponse] = {}
        for item in data:
            resp = RpcResponse.parse(item)
            if resp.id not in by_id:
                raise self._report(ProtocolError(f"Unmatched response id {resp.id!r} in batch", method="batch", payload=data))
            if resp.id in responses:
                raise self._report(ProtocolError(f"Duplicate response id {resp.id!r} in batch", method="batch", payload=data))
            responses[resp.id] = resp

        out: List[Any] = []
        for req in reqs:
            resp = responses.get(req.id)
            if resp is None:
                out.append(self._report(ProtocolError(f"No response for id {req.id}", method=req.method)))
            elif resp.error is not None:
                out.append(self._report(classify_error_object(resp.error, method=req.method)))
            else:
                out.append(resp.result)
        return out

    async def _post(self, payload: Union[Dict[str, Any], List[Dict[str, Any]]], *, method: str) -> Any:
        body = json.dumps(payload, separators=(",", ":"))
        if self.debug_requests:
            logger.debug(json.dumps({"msg": "rpc_request", "url": self.url, "method": method, "payload": payload}))
        try:
            r = await asyncio.wait_for(self._http.post(self.url, content=body), timeout=self.timeout_sec)
        except (asyncio.TimeoutError, httpx.TransportError) as e:
            raise self._report(classify_transport_failure(e, method=method)) from e

        if r.status_code in RETRYABLE_HTTP_STATUS:
            raise self._report(classify_http_status(r.status_code, r.text, method=method))
        try:
            data = r.json()
        except ValueError as e:
            raise self._report(
                ProtocolError(f"Non-JSON response (HTTP {r.status_code})", method=method, payload=r.text[:256])
            ) from e
        if r.status_code >= 400 and not isinstance(data, (dict, list)):
            raise self._report(classify_http_status(r.status_code, r.text, method=method))
        if self.debug_responses:
            logger.debug(json.dumps({"msg": "rpc_response", "method": method, "status": r.status_code, "payload": data}))
        return data

    def _report(self, err: ChainRpcError) -> ChainRpcError:
        if self.debug_errors:
            logger.debug(
                json.dumps(
                    {
                        "msg": "rpc_error",
                        "method": err.method,
                        "kind": err.kind.value,
                        "type": type(err).__name__,
                        "retryable": err.retryable,
                        "error": str(err),
                    }
                )
            )
        return err

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_base_sec, max=self.backoff_max_sec),
            retry=retry_if_exception(is_retryable),
            before_sleep=self._before_sleep,
            reraise=True,
        )

    @staticmethod
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning("Retrying RPC after %r (attempt %d)", exc, state.attempt_number)
