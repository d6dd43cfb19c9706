"""Shared fixtures for Gateway treasury funding tests.

Chains are simulated with :py:class:`FakeChainClient`, the Gateway API
with a mocked :py:class:`requests.Session`.
"""

import dataclasses
import itertools
from unittest.mock import Mock

import pytest
import requests
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from treasury_funding.gateway.attestation import AttestationClient
from treasury_funding.gateway.client import ChainClient, ContractCall, SignedCall
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.coordinator import TransferCoordinator
from treasury_funding.gateway.errors import ChainUnavailable, TransactionReverted
from treasury_funding.gateway.registry import ChainProfile, ChainRegistry, create_testnet_registry
from treasury_funding.gateway.signing import HotWalletSigner
from treasury_funding.gateway.store import InMemoryJobStore
from treasury_funding.hotwallet import HotWallet

#: Treasury vault used in the tests
TREASURY_ADDRESS = HexAddress("0x1111111111111111111111111111111111111111")

_tx_counter = itertools.count(1)


class FakeChainClient(ChainClient):
    """In-process chain.

    - Transactions are included in the current block when broadcast, unless their function is held
    - Broadcasting a known transaction again is a no-op, like a real node
    - ``mine()`` advances the block height
    - Reverts are scripted per function name
    """

    def __init__(self, profile: ChainProfile, address: HexAddress, block_number: int = 1000):
        self.profile = profile
        self._address = Web3.to_checksum_address(address)
        self.block_number = block_number
        self.token_balances: dict[str, int] = {}
        self.native_balance = 10**18
        self.treasury_balance = 0

        #: Minted to our address on a successful gatewayMint
        self.mint_amount = 0

        #: Every call accepted by the node, in order
        self.sent: list[ContractCall] = []

        #: Every broadcast attempt by hash, repeats included
        self.broadcasts: list[HexBytes] = []

        self.signed: dict[bytes, ContractCall] = {}
        self.receipts: dict[bytes, dict] = {}
        self.revert_reasons: dict[bytes, str] = {}

        #: function name -> reason, revert already in gas estimation
        self.estimate_reverts: dict[str, str] = {}

        #: function name -> reason, included with status 0
        self.onchain_reverts: dict[str, str] = {}

        #: function name -> node error, broadcast refused before reaching the mempool
        self.refused_broadcasts: dict[str, str] = {}

        #: function names whose next broadcast is lost on the way to the node
        self.dropped_broadcasts: set[str] = set()

        #: function names whose next broadcast is accepted but the answer is lost
        self.lost_broadcast_answers: set[str] = set()

        #: function names whose receipts stay pending
        self.held: set[str] = set()
        self._held_receipts: dict[bytes, dict] = {}

        self.consumed_attestations: set[bytes] = set()
        self.receipt_reads = 0

    @property
    def address(self) -> HexAddress:
        return self._address

    def mine(self, blocks: int = 1):
        self.block_number += blocks

    def release(self):
        """Include held transactions."""
        self.receipts.update(self._held_receipts)
        self._held_receipts.clear()
        self.held.clear()

    def sent_functions(self) -> list[str]:
        return [c.function_name for c in self.sent]

    def get_block_number(self) -> int:
        return self.block_number

    def get_token_balance(self, owner) -> int:
        return self.token_balances.get(Web3.to_checksum_address(owner), 0)

    def get_native_balance(self, owner) -> int:
        return self.native_balance

    def call(self, call: ContractCall):
        if call.function_name == "balanceOf":
            return self.get_token_balance(call.args[0])
        if call.function_name == "getTotalBalance":
            return self.treasury_balance
        raise NotImplementedError(call.function_name)

    def _apply(self, call: ContractCall):
        name = call.function_name
        if name == "deposit":
            self.token_balances[self.address] -= call.args[1]
        elif name == "gatewayMint":
            self.consumed_attestations.add(call.args[0])
            self.token_balances[self.address] = self.get_token_balance(self.address) + self.mint_amount
        elif name == "depositToTreasury":
            self.token_balances[self.address] -= call.args[0]
            self.treasury_balance += call.args[0]

    def sign(self, call: ContractCall) -> SignedCall:
        name = call.function_name
        if name in self.estimate_reverts:
            raise TransactionReverted(self.estimate_reverts[name])
        if name == "gatewayMint" and call.args[0] in self.consumed_attestations:
            raise TransactionReverted("attestation already used")

        nonce = next(_tx_counter)
        raw_transaction = HexBytes(Web3.keccak(text=f"fake-raw-{nonce}"))
        tx_hash = HexBytes(Web3.keccak(raw_transaction))
        self.signed[bytes(tx_hash)] = call
        return SignedCall(call=call, tx_hash=tx_hash, raw_transaction=raw_transaction, nonce=nonce)

    def broadcast(self, tx_hash, raw_transaction) -> HexBytes:
        tx_hash = HexBytes(tx_hash)
        assert HexBytes(Web3.keccak(HexBytes(raw_transaction))) == tx_hash, "Raw transaction does not match its hash"
        self.broadcasts.append(tx_hash)

        key = bytes(tx_hash)
        if key in self.receipts or key in self._held_receipts:
            # Already known
            return tx_hash

        call = self.signed[key]
        name = call.function_name

        if name in self.dropped_broadcasts:
            self.dropped_broadcasts.discard(name)
            raise ChainUnavailable(f"broadcast {name} never reached the node")

        if name in self.refused_broadcasts:
            raise TransactionReverted(self.refused_broadcasts[name], tx_hash=tx_hash.to_0x_hex())

        self.sent.append(call)

        if name in self.onchain_reverts:
            status = 0
            self.revert_reasons[key] = self.onchain_reverts[name]
        else:
            status = 1
            self._apply(call)

        receipt = {"status": status, "blockNumber": self.block_number, "transactionHash": tx_hash}
        if name in self.held:
            self._held_receipts[key] = receipt
        else:
            self.receipts[key] = receipt

        if name in self.lost_broadcast_answers:
            self.lost_broadcast_answers.discard(name)
            raise ChainUnavailable(f"broadcast {name} accepted, answer lost")

        return tx_hash

    def get_receipt(self, tx_hash) -> dict | None:
        self.receipt_reads += 1
        return self.receipts.get(bytes(HexBytes(tx_hash)))

    def fetch_revert_reason(self, tx_hash) -> str:
        return self.revert_reasons.get(bytes(HexBytes(tx_hash)), "<unknown>")


def make_response(status_code: int, data=None, text: str | None = None) -> Mock:
    """Mock :py:class:`requests.Response`."""
    response = Mock()
    response.status_code = status_code
    response.json.return_value = data
    response.text = text if text is not None else str(data)
    return response


def make_attestation_body(transfer_id: str = "transfer-1") -> dict:
    return {
        "transferId": transfer_id,
        "attestation": "0x" + "ab" * 96,
        "signature": "0x" + "cd" * 65,
        "fees": {"total": "2.000005", "token": "USDC"},
        "expirationBlock": "9000000",
    }


@pytest.fixture()
def config() -> GatewayConfig:
    return GatewayConfig.create_test_config()


@pytest.fixture()
def registry() -> ChainRegistry:
    """Testnet chains, Sepolia needs 2 confirmations."""
    testnet = create_testnet_registry()
    profiles = [dataclasses.replace(p, required_confirmations=2) if p.name == "sepolia" else p for p in testnet]
    return ChainRegistry.from_profiles(profiles)


@pytest.fixture()
def wallet() -> HotWallet:
    return HotWallet.create_for_testing()


@pytest.fixture()
def signer(wallet) -> HotWalletSigner:
    return HotWalletSigner(wallet)


@pytest.fixture()
def sepolia_client(registry, wallet) -> FakeChainClient:
    client = FakeChainClient(registry.get("sepolia"), wallet.address)
    client.token_balances[wallet.address] = 100 * 10**6
    return client


@pytest.fixture()
def arc_client(registry, wallet) -> FakeChainClient:
    client = FakeChainClient(registry.get("arc"), wallet.address, block_number=50_000)
    client.mint_amount = 5 * 10**6
    return client


@pytest.fixture()
def session() -> Mock:
    """Gateway API session that accepts the intent and returns the attestation on the first poll."""
    session = Mock(spec=requests.Session)
    session.post.return_value = make_response(200, {"transferId": "transfer-1"})
    session.get.return_value = make_response(200, make_attestation_body())
    return session


@pytest.fixture()
def attestation_client(config, session) -> AttestationClient:
    return AttestationClient(config, session=session)


@pytest.fixture()
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture()
def coordinator(registry, arc_client, signer, attestation_client, store, config) -> TransferCoordinator:
    return TransferCoordinator(
        registry=registry,
        clients={"arc": arc_client},
        signer=signer,
        attestation_client=attestation_client,
        treasury_address=TREASURY_ADDRESS,
        store=store,
        config=config,
    )


@pytest.fixture()
def http_response():
    """Factory for mocked HTTP responses."""
    return make_response


@pytest.fixture()
def attestation_body():
    """Factory for Gateway API attestation payloads."""
    return make_attestation_body
