from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from chainrpc.client import Web3
from chainrpc.config import DEFAULT_RPC_URL, ClientConfig, load_config
from chainrpc.env import load_env_file, read_env_file


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CHAINRPC_") or key == "RPC_URL":
            monkeypatch.delenv(key, raising=False)


def test_defaults():
    cfg = load_config()
    assert cfg.url == DEFAULT_RPC_URL
    assert cfg.confirmations == 2
    assert cfg.finality_mode == "depth"
    assert cfg.max_log_block_span == 2000
    assert not cfg.debug_requests


def test_environment_values(monkeypatch):
    monkeypatch.setenv("CHAINRPC_URL", "https://rpc.example.org")
    monkeypatch.setenv("CHAINRPC_TIMEOUT_SEC", "2.5")
    monkeypatch.setenv("CHAINRPC_CONFIRMATIONS", "12")
    monkeypatch.setenv("CHAINRPC_FINALITY_MODE", "Finalized")
    monkeypatch.setenv("CHAINRPC_DEBUG_ERRORS", "yes")
    cfg = load_config()
    assert cfg.url == "https://rpc.example.org"
    assert cfg.timeout_sec == 2.5
    assert cfg.confirmations == 12
    assert cfg.finality_mode == "finalized"
    assert cfg.debug_errors is True


def test_generic_rpc_url_and_overrides(monkeypatch):
    monkeypatch.setenv("RPC_URL", "http://fallback:8545")
    monkeypatch.setenv("CHAINRPC_MAX_RETRIES", "not-a-number")
    cfg = load_config(max_retries=0, confirmations=None)
    assert cfg.url == "http://fallback:8545"
    assert cfg.max_retries == 0
    assert cfg.confirmations == 2


def test_invalid_values_are_refused(monkeypatch):
    with pytest.raises(ValidationError):
        ClientConfig(confirmations=0)
    with pytest.raises(ValidationError):
        ClientConfig(finality_mode="eventually")
    with pytest.raises(ValidationError):
        ClientConfig(unknown_option=True)
    monkeypatch.setenv("CHAINRPC_MAX_LOG_BLOCK_SPAN", "0")
    with pytest.raises(ValidationError):
        load_config()


def test_env_file_does_not_override(tmp_path: Path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# node\n"
        "export CHAINRPC_URL='http://from-file:8545'\n"
        'CHAINRPC_CONFIRMATIONS="6"\n'
        "garbage line\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CHAINRPC_CONFIRMATIONS", "3")
    # load_env_file writes os.environ directly; register the key so monkeypatch restores it.
    monkeypatch.setenv("CHAINRPC_URL", "")
    monkeypatch.delenv("CHAINRPC_URL")
    cfg = load_config(env_file)
    assert cfg.url == "http://from-file:8545"
    assert cfg.confirmations == 3


def test_missing_env_file_is_ignored(tmp_path: Path):
    load_env_file(tmp_path / "absent.env")
    assert load_config(tmp_path / "absent.env").url == DEFAULT_RPC_URL


async def test_web3_wires_configuration():
    w3 = Web3(ClientConfig(confirmations=4, finality_mode="safe", max_log_block_span=50, fee_history_blocks=8))
    try:
        assert w3.tracker.confirmations == 4
        assert w3.tracker.finality_mode == "safe"
        assert w3.logs.max_block_span == 50
        assert w3.gas.lookback_blocks == 8
        assert w3.rpc.url == DEFAULT_RPC_URL
    finally:
        await w3.aclose()

    async with Web3(url="http://other:8545") as other:
        assert other.config.url == "http://other:8545"
        assert other.config.confirmations == 2


def test_read_env_file(tmp_path: Path):
    env_file = tmp_path / "node.env"
    env_file.write_text("A=1\n# B=2\nexport C = 'x y'\n=orphan\nD=\"q\n", encoding="utf-8")
    assert read_env_file(env_file) == {"A": "1", "C": "x y", "D": '"q'}
