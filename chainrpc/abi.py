from __future__ import annotations

from typing import Any, Sequence, Tuple, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from chainrpc.codec import Address, decode_data, encode_data
from chainrpc.errors import DecodeError


def _canonical(signature: str) -> str:
    return signature.replace(" ", "")


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256 over a signature such as ``transfer(address,uint256)``."""
    return keccak(text=_canonical(signature))[:4]


def encode_calldata(signature: str, arg_types: Sequence[str], args: Sequence[Any]) -> bytes:
    if len(arg_types) != len(args):
        raise ValueError(f"{signature} takes {len(arg_types)} arguments, got {len(args)}")
    body = abi_encode(list(arg_types), list(args)) if arg_types else b""
    return function_selector(signature) + body


def decode_call_result(output: Union[str, bytes], out_types: Sequence[str]) -> Tuple[Any, ...]:
    """
    ABI-decode eth_call return data. Empty data (an account without code)
    decodes to an empty tuple.
    """
    data = bytes(output) if isinstance(output, (bytes, bytearray)) else decode_data(output)
    if not data or not out_types:
        return ()
    try:
        return tuple(abi_decode(list(out_types), data))
    except DecodingError as e:
        raise DecodeError(f"Cannot decode call result as ({','.join(out_types)}): {e}") from e


def event_signature(signature: str) -> bytes:
    """topic0 of an event, e.g. ``Transfer(address,address,uint256)``."""
    return keccak(text=_canonical(signature))


def event_topic(signature: str) -> str:
    return encode_data(event_signature(signature))


def address_to_topic(address: Union[str, Address]) -> bytes:
    """An indexed address argument as it appears in a log topic: left-padded to 32 bytes."""
    return abi_encode(["address"], [str(Address(address))])
