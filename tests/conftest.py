"""
Shared pytest configuration and fixtures for the Press chain indexer tests.

Provides ABI fixture-log builders, a patched config loader and a throwaway log
directory used across the unit test suite.
"""

from __future__ import annotations

import os
import tempfile

# Log files from any logger not patched by a test land in a temp dir
os.environ.setdefault("INDEXER_LOG_DIR", tempfile.mkdtemp(prefix="indexer-logs-"))

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from eth_abi import encode  # noqa: E402

from core.event_decoder import EVENT_RULES  # noqa: E402
from shared.types import RawLog  # noqa: E402

# ---------------------------------------------------------------------------
# Sample values
# ---------------------------------------------------------------------------

SAMPLE_CONTRACT = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
SAMPLE_OWNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
SAMPLE_TOKEN = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
SAMPLE_OUTLET_ID = "0x" + "ab" * 32
SAMPLE_TX_HASH = "0x" + "11" * 32


# ---------------------------------------------------------------------------
# Topic helpers
# ---------------------------------------------------------------------------


def address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address.lower()[2:]


def uint_topic(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def bytes32_topic(value: str) -> str:
    return value.lower()


def build_raw_log(
    event_name: str,
    indexed: list[str],
    data_types: list[str] | None = None,
    data_values: list | None = None,
    block_number: int = 100,
    tx_hash: str = SAMPLE_TX_HASH,
    log_index: int = 0,
    address: str = SAMPLE_CONTRACT,
) -> RawLog:
    """RawLog for a registered event with ABI-encoded non-indexed data."""
    data = encode(data_types, data_values) if data_types else b""
    return RawLog(
        address=address,
        topics=(EVENT_RULES[event_name].topic0, *indexed),
        data=data,
        block_number=block_number,
        tx_hash=tx_hash,
        log_index=log_index,
    )


@pytest.fixture
def make_log():
    """Factory fixture: ``make_log("OutletCreated", [...], [...types], [...values])``."""
    return build_raw_log


# ---------------------------------------------------------------------------
# Config loader fixture (patched singleton)
# ---------------------------------------------------------------------------

STANDARD_TIMING_CONFIG = {"pipelines": {"poll_interval_seconds": 2, "idle_backoff_seconds": 3}}
STANDARD_RPC_CONFIG = {
    "http_url": "http://press-rpc:8545",
    "timeout_seconds": 10,
    "max_block_range": 5000,
}


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_rpc_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_timing_config.return_value = dict(STANDARD_TIMING_CONFIG)
    loader.get_rpc_config.return_value = dict(STANDARD_RPC_CONFIG)
    loader.get_rpc_url.return_value = STANDARD_RPC_CONFIG["http_url"]
    loader.get_app_config.return_value = {"logging": {"log_dir": "logs"}}
    return loader
