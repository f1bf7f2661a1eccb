"""Pytest configuration and fixtures."""

import os

import pytest

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["SIGNER_BACKEND"] = "mock"
os.environ["DEBUG"] = "true"

from signer_proxy.config import Settings
from signer_proxy.signing.base import clear_session_locks
from signer_proxy.signing.local import LocalKeyConnector
from signer_proxy.signing.signer import TransactionSigner
from signer_proxy.transaction.models import UnsignedTransaction

# Well-known development key (anvil/hardhat account 0)
TEST_PRIVATE_KEY = bytes.fromhex("ac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80")
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TEST_KEY_ID = "7"

OTHER_PRIVATE_KEY = bytes.fromhex("59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d")
OTHER_KEY_ID = "8"

RECIPIENT = bytes.fromhex("70997970c51812dc3a010c7d01b50e0d17dc79c8")


@pytest.fixture(autouse=True)
def clear_locks():
    """Clear session locks between tests."""
    clear_session_locks()
    yield
    clear_session_locks()


@pytest.fixture
def settings() -> Settings:
    """Settings for a mock-backed proxy with a default key."""
    return Settings(
        environment="test",
        signer_backend="mock",
        signing_key_id=TEST_KEY_ID,
        signing_timeout=5.0,
        upstream_rpc_url=None,
        _env_file=None,
    )


@pytest.fixture
def connector() -> LocalKeyConnector:
    """In-memory connector holding the test keys."""
    return LocalKeyConnector({TEST_KEY_ID: TEST_PRIVATE_KEY, OTHER_KEY_ID: OTHER_PRIVATE_KEY})


@pytest.fixture
async def signer(connector) -> TransactionSigner:
    """Signer for the test key."""
    return await TransactionSigner.create(connector, TEST_KEY_ID, timeout=5.0)


@pytest.fixture
def sepolia_tx() -> UnsignedTransaction:
    """Value transfer on OP Sepolia."""
    return UnsignedTransaction(
        chain_id=11155420,
        nonce=0,
        gas_price=0x1250B1,
        gas_limit=0x7B0C,
        to=RECIPIENT,
        value=0x2386F26FC10000,
        data=b"",
    )


@pytest.fixture
def sepolia_fields() -> dict:
    """eth_signTransaction params for sepolia_tx."""
    return {
        "chainId": "0xaa37dc",
        "nonce": "0x0",
        "gasPrice": "0x1250b1",
        "gas": "0x7b0c",
        "to": "0x" + RECIPIENT.hex(),
        "value": "0x2386f26fc10000",
        "data": "0x",
        "from": TEST_ADDRESS,
    }
