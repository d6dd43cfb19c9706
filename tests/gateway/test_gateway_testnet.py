"""Live testnet checks.

Read-only: nothing is deposited or minted.

Environment variables:

- ``JSON_RPC_SEPOLIA``: Ethereum Sepolia RPC
- ``JSON_RPC_ARC``: Arc testnet RPC
- ``GATEWAY_TEST_DEPOSITOR``: optional, an address with a unified balance
"""

import os

import pytest

from treasury_funding.gateway.attestation import AttestationClient
from treasury_funding.gateway.client import Web3ChainClient
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.registry import create_testnet_registry

JSON_RPC_SEPOLIA = os.environ.get("JSON_RPC_SEPOLIA")
JSON_RPC_ARC = os.environ.get("JSON_RPC_ARC")
GATEWAY_TEST_DEPOSITOR = os.environ.get("GATEWAY_TEST_DEPOSITOR", "0x0000000000000000000000000000000000000001")

pytestmark = pytest.mark.skipif(
    not (JSON_RPC_SEPOLIA and JSON_RPC_ARC),
    reason="Set JSON_RPC_SEPOLIA and JSON_RPC_ARC to run testnet tests",
)


@pytest.mark.network
@pytest.mark.parametrize("chain", ["sepolia", "arc"])
def test_chain_ids(chain):
    profile = create_testnet_registry().get(chain)
    client = Web3ChainClient.create(profile)
    assert client.web3.eth.chain_id == profile.chain_id
    assert client.get_block_number() > 0


@pytest.mark.network
def test_gateway_contracts_deployed():
    registry = create_testnet_registry()
    for name in ("sepolia", "arc"):
        profile = registry.get(name)
        client = Web3ChainClient.create(profile)
        assert client.web3.eth.get_code(profile.wallet_address) != b""
        assert client.web3.eth.get_code(profile.minter_address) != b""


@pytest.mark.network
def test_unified_balance():
    balances = AttestationClient(GatewayConfig.from_env()).fetch_unified_balance(GATEWAY_TEST_DEPOSITOR, [0])
    assert balances.get(0, 0) >= 0
