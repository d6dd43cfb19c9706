"""Configuration and helper functions."""

import datetime

from treasury_funding.abi import decode_address_bytes32, encode_address_bytes32, get_abi_by_filename
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.constants import DEFAULT_MAX_FEE, GATEWAY_API_TESTNET_URL
from treasury_funding.utils import format_usdc


def test_defaults():
    config = GatewayConfig()
    assert config.api_base_url == GATEWAY_API_TESTNET_URL
    assert config.max_fee == DEFAULT_MAX_FEE == 2_010000
    assert config.poll_interval == 2.0
    assert config.max_poll_attempts == 60


def test_from_env(monkeypatch):
    monkeypatch.setenv("GATEWAY_API_URL", "https://gateway.example/")
    monkeypatch.setenv("GATEWAY_MAX_FEE", "2.5")
    monkeypatch.setenv("GATEWAY_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("GATEWAY_MAX_POLL_ATTEMPTS", "10")
    monkeypatch.setenv("GATEWAY_RECEIPT_TIMEOUT", "90")
    config = GatewayConfig.from_env()
    assert config.api_base_url == "https://gateway.example"
    assert config.max_fee == 2_500000
    assert config.poll_interval == 0.5
    assert config.max_poll_attempts == 10
    assert config.receipt_timeout == datetime.timedelta(seconds=90)


def test_address_bytes32():
    address = "0x0077777d7EBA4688BDeF3E311b846F25870A19B9"
    encoded = encode_address_bytes32(address)
    assert len(encoded) == 32
    assert encoded[:12] == b"\x00" * 12
    assert decode_address_bytes32(encoded) == address


def test_bundled_abis():
    for fname in ("ERC20.json", "gateway/GatewayWallet.json", "gateway/GatewayMinter.json", "treasury/TreasuryVault.json"):
        assert get_abi_by_filename(fname)


def test_format_usdc():
    assert format_usdc(5_000000) == "5.000000"
    assert format_usdc(2_010000) == "2.010000"
    assert format_usdc(-1) == "-0.000001"
