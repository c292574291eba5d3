"""
Pytest Configuration for Soulforge Backend Tests

Run all tests: python -m pytest tests/ -v
Run unit tests only: python -m pytest tests/ -v -m "not integration"
"""

import base64
import os
import sys
import time
from pathlib import Path

import pytest

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment
from dotenv import load_dotenv
load_dotenv(Path(__file__).parent.parent / ".env")


# =============================================================================
# FAKES
# =============================================================================

class FakeClock:
    """Manually advanced clock for TTL tests"""

    def __init__(self, now: float = None):
        self.now = time.time() if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeChainRPC:
    """In-memory stand-in for infrastructure.rpc.ChainRPC"""

    def __init__(self, network: str = "base-sepolia"):
        self.network = network
        self.receipts = {}
        self.block_timestamps = {}
        self.logs = []
        self.head = 0
        self.fail_get_logs_above = None  # span size that makes get_logs raise
        self.calls = {"receipt": 0, "timestamp": 0, "get_logs": []}
        self.receipt_error = None

    async def get_transaction_receipt(self, tx_hash):
        self.calls["receipt"] += 1
        if self.receipt_error:
            raise self.receipt_error
        return self.receipts.get(tx_hash)

    async def block_number(self):
        return self.head

    async def get_block_timestamp(self, block_number):
        self.calls["timestamp"] += 1
        return self.block_timestamps[block_number]

    async def get_logs(self, address, topics, from_block, to_block):
        self.calls["get_logs"].append((from_block, to_block))
        span = to_block - from_block + 1
        if self.fail_get_logs_above is not None and span > self.fail_get_logs_above:
            raise RuntimeError("query returned more than 10000 results")
        return [log for log in self.logs if from_block <= log["blockNumber"] <= to_block]


class FakeRPCRegistry:
    def __init__(self, rpc: FakeChainRPC):
        self.rpc = rpc

    def get(self, network):
        return self.rpc


# =============================================================================
# FIXTURES - Shared across all test files
# =============================================================================

@pytest.fixture
def test_addresses():
    """Standard test addresses (lowercase, as stored)"""
    return {
        "USDC": "0x036cbd53842c5426634e7929541ec2318f3dcf7e",
        "payer": "0xa30a689ec0f9d717c5ba1098455b031b868b720f",
        "creator": "0x742d35cc6634c0532925a3b844bc9e7595f8bbf5",
        "upstream": "0x5e047deb5eb22f4e4a7f2207087369468575e3ef",
    }


@pytest.fixture
def master_key():
    """Base64 AES-256 master key"""
    return base64.b64encode(os.urandom(32)).decode()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    from infrastructure.counter_store import MemoryCounterStore
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def fake_rpc():
    return FakeChainRPC()


@pytest.fixture
def rpc_registry(fake_rpc):
    return FakeRPCRegistry(fake_rpc)


@pytest.fixture
def payment_config(test_addresses):
    from infrastructure.config import PaymentConfig
    return PaymentConfig(
        network="base-sepolia",
        asset_contract=test_addresses["USDC"],
        eip712_name="USDC",
        eip712_version="2",
        mock_mode=True,
    )


# =============================================================================
# MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (use real services)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
