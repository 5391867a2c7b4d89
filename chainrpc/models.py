from __future__ import annotations

from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from chainrpc.codec import decode_address, decode_data, decode_hash, decode_quantity


def _quantity(v: Any) -> Any:
    return decode_quantity(v) if isinstance(v, str) else v


def _opt_quantity(v: Any) -> Any:
    return None if v is None else _quantity(v)


def _data(v: Any) -> Any:
    return decode_data(v) if isinstance(v, str) else v


def _opt_address(v: Any) -> Any:
    return None if v is None else str(decode_address(v))


def _hash(v: Any) -> Any:
    return str(decode_hash(v))


def _opt_hash(v: Any) -> Any:
    return None if v is None else _hash(v)


Quantity = Annotated[int, BeforeValidator(_quantity)]
OptQuantity = Annotated[Optional[int], BeforeValidator(_opt_quantity)]
Data = Annotated[bytes, BeforeValidator(_data)]
OptAddress = Annotated[Optional[str], BeforeValidator(_opt_address)]
Hash = Annotated[str, BeforeValidator(_hash)]
OptHash = Annotated[Optional[str], BeforeValidator(_opt_hash)]


class _Wire(BaseModel):
    # Nodes add client-specific fields; keep what we know, ignore the rest.
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class LogEntry(_Wire):
    address: OptAddress
    topics: List[Hash] = Field(default_factory=list)
    data: Data = b""
    block_number: Quantity = Field(alias="blockNumber")
    block_hash: OptHash = Field(default=None, alias="blockHash")
    transaction_hash: OptHash = Field(default=None, alias="transactionHash")
    transaction_index: OptQuantity = Field(default=None, alias="transactionIndex")
    log_index: Quantity = Field(alias="logIndex")
    removed: bool = False

    @property
    def sort_key(self) -> tuple:
        return (self.block_number, self.log_index)


class Transaction(_Wire):
    hash: Hash
    nonce: Quantity
    from_address: OptAddress = Field(default=None, alias="from")
    to: OptAddress = None
    value: Quantity = 0
    gas: OptQuantity = None
    gas_price: OptQuantity = Field(default=None, alias="gasPrice")
    max_fee_per_gas: OptQuantity = Field(default=None, alias="maxFeePerGas")
    max_priority_fee_per_gas: OptQuantity = Field(default=None, alias="maxPriorityFeePerGas")
    input: Data = b""
    block_number: OptQuantity = Field(default=None, alias="blockNumber")
    block_hash: OptHash = Field(default=None, alias="blockHash")
    transaction_index: OptQuantity = Field(default=None, alias="transactionIndex")
    type: OptQuantity = None
    chain_id: OptQuantity = Field(default=None, alias="chainId")


class Receipt(_Wire):
    transaction_hash: Hash = Field(alias="transactionHash")
    block_number: Quantity = Field(alias="blockNumber")
    block_hash: Hash = Field(alias="blockHash")
    transaction_index: OptQuantity = Field(default=None, alias="transactionIndex")
    from_address: OptAddress = Field(default=None, alias="from")
    to: OptAddress = None
    contract_address: OptAddress = Field(default=None, alias="contractAddress")
    gas_used: OptQuantity = Field(default=None, alias="gasUsed")
    cumulative_gas_used: OptQuantity = Field(default=None, alias="cumulativeGasUsed")
    effective_gas_price: OptQuantity = Field(default=None, alias="effectiveGasPrice")
    status: OptQuantity = None
    logs: List[LogEntry] = Field(default_factory=list)

    @property
    def succeeded(self) -> Optional[bool]:
        # Pre-Byzantium receipts carry no status field.
        return None if self.status is None else self.status == 1


class Block(_Wire):
    number: OptQuantity = None
    hash: OptHash = None
    parent_hash: OptHash = Field(default=None, alias="parentHash")
    timestamp: Quantity = 0
    gas_limit: OptQuantity = Field(default=None, alias="gasLimit")
    gas_used: OptQuantity = Field(default=None, alias="gasUsed")
    base_fee_per_gas: OptQuantity = Field(default=None, alias="baseFeePerGas")
    miner: OptAddress = None
    # Hashes, or full objects when requested with full transactions.
    transactions: List[Any] = Field(default_factory=list)


class FeeHistory(_Wire):
    oldest_block: Quantity = Field(alias="oldestBlock")
    base_fee_per_gas: List[Quantity] = Field(default_factory=list, alias="baseFeePerGas")
    gas_used_ratio: List[float] = Field(default_factory=list, alias="gasUsedRatio")
    reward: Optional[List[List[Quantity]]] = None
