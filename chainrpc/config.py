from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from chainrpc.env import env_flag, env_float, env_int, load_env_file

ENV_PREFIX = "CHAINRPC_"
DEFAULT_RPC_URL = "http://127.0.0.1:8545"

FinalityMode = Literal["depth", "finalized", "safe"]


class ClientConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str = DEFAULT_RPC_URL
    timeout_sec: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    backoff_base_sec: float = Field(default=0.25, ge=0)
    backoff_max_sec: float = Field(default=8.0, ge=0)
    max_connections: int = Field(default=10, ge=1)

    # Plain inclusion in "latest" is never final, so at least one block on top.
    confirmations: int = Field(default=2, ge=1)
    finality_mode: FinalityMode = "depth"

    max_log_block_span: int = Field(default=2000, ge=1)
    fee_history_blocks: int = Field(default=20, ge=1, le=1024)
    min_priority_fee_wei: int = Field(default=0, ge=0)

    debug_requests: bool = False
    debug_responses: bool = False
    debug_errors: bool = False


_INT_FIELDS = ("max_retries", "max_connections", "confirmations", "max_log_block_span", "fee_history_blocks", "min_priority_fee_wei")
_FLOAT_FIELDS = ("timeout_sec", "backoff_base_sec", "backoff_max_sec")
_FLAG_FIELDS = ("debug_requests", "debug_responses", "debug_errors")


def _from_env() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    url = os.getenv(ENV_PREFIX + "URL") or os.getenv("RPC_URL")
    if url:
        out["url"] = url
    for name in _INT_FIELDS:
        v = env_int(ENV_PREFIX + name.upper())
        if v is not None:
            out[name] = v
    for name in _FLOAT_FIELDS:
        v = env_float(ENV_PREFIX + name.upper())
        if v is not None:
            out[name] = v
    for name in _FLAG_FIELDS:
        v = env_flag(ENV_PREFIX + name.upper())
        if v is not None:
            out[name] = v
    mode = os.getenv(ENV_PREFIX + "FINALITY_MODE")
    if mode:
        out["finality_mode"] = mode.strip().lower()
    return out


def load_config(env_file: Optional[Path] = None, **overrides: Any) -> ClientConfig:
    if env_file is not None:
        load_env_file(env_file, override=False)
    values = _from_env()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ClientConfig(**values)
