from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from chainrpc.abi import decode_call_result, encode_calldata
from chainrpc.codec import (
    Address,
    BlockTag,
    Hash32,
    Uint256,
    decode_address,
    decode_data,
    decode_quantity,
    decode_uint256,
    encode,
    encode_block_tag,
    encode_data,
    encode_quantity,
)
from chainrpc.errors import DecodeError, ProtocolError
from chainrpc.models import Block, FeeHistory, Receipt, Transaction
from chainrpc.rpc import JsonRpcClient

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def parse_model(model: Type[M], raw: Any, *, method: str) -> M:
    if not isinstance(raw, dict):
        raise ProtocolError(f"{method} returned {type(raw).__name__}, expected an object", method=method, payload=raw)
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise DecodeError(f"{method} returned an invalid {model.__name__}: {e}", method=method) from e


def _decode(fn, raw: Any, *, method: str) -> Any:  # noqa: ANN001
    try:
        return fn(raw)
    except DecodeError as e:
        e.method = method
        raise


def _addr(address: Union[str, Address]) -> str:
    return str(Address(address))


def call_object(tx: Dict[str, Any]) -> Dict[str, Any]:
    """Encode an eth_call / eth_estimateGas object; native ints and bytes become wire text."""
    out: Dict[str, Any] = {}
    for k, v in tx.items():
        if v is None:
            continue
        if k in ("from", "to") and isinstance(v, str):
            out[k] = _addr(v)
        else:
            out[k] = encode(v)
    return out


class ChainReader:
    """Read-only chain queries. Every value returned has passed the wire codec."""

    def __init__(self, rpc: JsonRpcClient):
        self.rpc = rpc

    # --- network

    async def chain_id(self) -> int:
        return _decode(decode_quantity, await self.rpc.call("eth_chainId"), method="eth_chainId")

    async def net_version(self) -> str:
        return str(await self.rpc.call("net_version"))

    async def accounts(self) -> List[Address]:
        raw = await self.rpc.call("eth_accounts")
        if not isinstance(raw, list):
            raise ProtocolError("eth_accounts returned a non-array", method="eth_accounts", payload=raw)
        return [_decode(decode_address, a, method="eth_accounts") for a in raw]

    async def block_number(self) -> Uint256:
        return _decode(decode_uint256, await self.rpc.call("eth_blockNumber"), method="eth_blockNumber")

    # --- accounts

    async def get_balance(self, address: Union[str, Address], block: BlockTag = "latest") -> Uint256:
        raw = await self.rpc.call("eth_getBalance", [_addr(address), encode_block_tag(block)])
        return _decode(decode_uint256, raw, method="eth_getBalance")

    async def get_transaction_count(self, address: Union[str, Address], block: BlockTag = "latest") -> Uint256:
        raw = await self.rpc.call("eth_getTransactionCount", [_addr(address), encode_block_tag(block)])
        return _decode(decode_uint256, raw, method="eth_getTransactionCount")

    async def get_code(self, address: Union[str, Address], block: BlockTag = "latest") -> bytes:
        raw = await self.rpc.call("eth_getCode", [_addr(address), encode_block_tag(block)])
        return _decode(decode_data, raw, method="eth_getCode")

    async def get_storage_at(self, address: Union[str, Address], slot: int, block: BlockTag = "latest") -> bytes:
        raw = await self.rpc.call("eth_getStorageAt", [_addr(address), encode_quantity(slot), encode_block_tag(block)])
        return _decode(lambda v: decode_data(v, size=32), raw, method="eth_getStorageAt")

    # --- blocks and transactions

    async def get_block(self, block: BlockTag = "latest", *, full_txs: bool = False) -> Optional[Block]:
        raw = await self.rpc.call("eth_getBlockByNumber", [encode_block_tag(block), bool(full_txs)])
        if raw is None:
            return None
        return parse_model(Block, raw, method="eth_getBlockByNumber")

    async def get_block_by_hash(self, block_hash: str, *, full_txs: bool = False) -> Optional[Block]:
        raw = await self.rpc.call("eth_getBlockByHash", [str(Hash32(block_hash)), bool(full_txs)])
        if raw is None:
            return None
        return parse_model(Block, raw, method="eth_getBlockByHash")

    async def tagged_block_number(self, tag: str) -> Optional[int]:
        block = await self.get_block(tag)
        return None if block is None else block.number

    async def finalized_block_number(self) -> Optional[int]:
        return await self.tagged_block_number("finalized")

    async def safe_block_number(self) -> Optional[int]:
        return await self.tagged_block_number("safe")

    async def get_transaction_by_hash(self, tx_hash: str) -> Optional[Transaction]:
        raw = await self.rpc.call("eth_getTransactionByHash", [str(Hash32(tx_hash))])
        if raw is None:
            return None
        return parse_model(Transaction, raw, method="eth_getTransactionByHash")

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raw = await self.rpc.call("eth_getTransactionReceipt", [str(Hash32(tx_hash))])
        if raw is None:
            return None
        return parse_model(Receipt, raw, method="eth_getTransactionReceipt")

    # --- fees

    async def gas_price(self) -> Uint256:
        return _decode(decode_uint256, await self.rpc.call("eth_gasPrice"), method="eth_gasPrice")

    async def max_priority_fee(self) -> Uint256:
        raw = await self.rpc.call("eth_maxPriorityFeePerGas")
        return _decode(decode_uint256, raw, method="eth_maxPriorityFeePerGas")

    async def fee_history(self, block_count: int, newest: BlockTag = "latest", percentiles: Sequence[float] = ()) -> FeeHistory:
        raw = await self.rpc.call(
            "eth_feeHistory", [encode_quantity(block_count), encode_block_tag(newest), [float(p) for p in percentiles]]
        )
        return parse_model(FeeHistory, raw, method="eth_feeHistory")

    # --- execution

    async def call(self, tx: Dict[str, Any], block: BlockTag = "latest") -> bytes:
        raw = await self.rpc.call("eth_call", [call_object(tx), encode_block_tag(block)])
        return _decode(decode_data, raw, method="eth_call")

    async def estimate_gas(self, tx: Dict[str, Any]) -> Uint256:
        raw = await self.rpc.call("eth_estimateGas", [call_object(tx)])
        return _decode(decode_uint256, raw, method="eth_estimateGas")

    async def contract_call(
        self,
        contract: Union[str, Address],
        signature: str,
        arg_types: Sequence[str] = (),
        args: Sequence[Any] = (),
        out_types: Sequence[str] = ("uint256",),
        *,
        sender: Optional[str] = None,
        block: BlockTag = "latest",
    ) -> Any:
        data = encode_calldata(signature, arg_types, args)
        out = await self.call({"from": sender, "to": contract, "data": data}, block)
        values = decode_call_result(out, out_types)
        if len(values) == 1:
            return values[0]
        return values

    # --- test chains (ganache / hardhat / anvil)

    async def evm_snapshot(self) -> int:
        return _decode(decode_quantity, await self.rpc.call("evm_snapshot"), method="evm_snapshot")

    async def evm_revert(self, snapshot_id: int) -> bool:
        return bool(await self.rpc.call("evm_revert", [encode_quantity(snapshot_id)]))

    async def send_raw(self, raw_tx: bytes) -> Hash32:
        raw = await self.rpc.call("eth_sendRawTransaction", [encode_data(raw_tx)])
        try:
            return Hash32(raw)
        except DecodeError as e:
            e.method = "eth_sendRawTransaction"
            raise
