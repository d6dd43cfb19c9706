"""Gateway burn intents.

A burn intent authorises the Gateway service to spend part of the depositor's
unified balance and release it on the destination chain.

- :py:class:`TransferSpec` and :py:class:`BurnIntent` are the EIP-712 message
- :py:class:`IntentBuilder` fills them in from :py:class:`~treasury_funding.gateway.registry.ChainRegistry`
- :py:func:`build_typed_data` produces the full EIP-712 message for signing

The field names, their order and their types are verified by the GatewayWallet
and GatewayMinter contracts. Do not reorder :py:data:`TRANSFER_SPEC_TYPE`.

Example:

.. code-block:: python

    builder = IntentBuilder(create_testnet_registry(), GatewayConfig())
    intent = builder.build("sepolia", "arc", depositor=wallet.address, recipient=wallet.address, amount=5 * 10**6)
    typed_data = build_typed_data(intent)
"""

import logging
import secrets
from dataclasses import dataclass

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from treasury_funding.abi import ZERO_BYTES32, decode_address_bytes32, encode_address_bytes32
from treasury_funding.gateway.config import GatewayConfig
from treasury_funding.gateway.constants import EIP712_DOMAIN_NAME, EIP712_DOMAIN_VERSION, MAX_BLOCK_HEIGHT, TRANSFER_SPEC_VERSION
from treasury_funding.gateway.errors import InvalidAmount
from treasury_funding.gateway.registry import ChainRegistry
from treasury_funding.utils import format_usdc

logger = logging.getLogger(__name__)


#: EIP-712 domain type, Gateway uses name and version only
EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
]

#: ``TransferSpec`` struct, order matters
TRANSFER_SPEC_TYPE = [
    {"name": "version", "type": "uint32"},
    {"name": "sourceDomain", "type": "uint32"},
    {"name": "destinationDomain", "type": "uint32"},
    {"name": "sourceContract", "type": "bytes32"},
    {"name": "destinationContract", "type": "bytes32"},
    {"name": "sourceToken", "type": "bytes32"},
    {"name": "destinationToken", "type": "bytes32"},
    {"name": "sourceDepositor", "type": "bytes32"},
    {"name": "destinationRecipient", "type": "bytes32"},
    {"name": "sourceSigner", "type": "bytes32"},
    {"name": "destinationCaller", "type": "bytes32"},
    {"name": "value", "type": "uint256"},
    {"name": "salt", "type": "bytes32"},
    {"name": "hookData", "type": "bytes"},
]

#: ``BurnIntent`` struct, order matters
BURN_INTENT_TYPE = [
    {"name": "maxBlockHeight", "type": "uint256"},
    {"name": "maxFee", "type": "uint256"},
    {"name": "spec", "type": "TransferSpec"},
]

#: All EIP-712 types of a burn intent message
BURN_INTENT_TYPES = {
    "EIP712Domain": EIP712_DOMAIN_TYPE,
    "TransferSpec": TRANSFER_SPEC_TYPE,
    "BurnIntent": BURN_INTENT_TYPE,
}

_BYTES_FIELDS = {field["name"] for field in TRANSFER_SPEC_TYPE if field["type"].startswith("bytes")}


@dataclass(slots=True, frozen=True)
class TransferSpec:
    """What moves where.

    Addresses are kept as 32 bytes, left-padded for EVM chains.
    """

    version: int
    source_domain: int
    destination_domain: int
    source_contract: bytes
    destination_contract: bytes
    source_token: bytes
    destination_token: bytes
    source_depositor: bytes
    destination_recipient: bytes
    source_signer: bytes
    destination_caller: bytes
    value: int
    salt: bytes
    hook_data: bytes = b""

    def __post_init__(self):
        for name in ("source_contract", "destination_contract", "source_token", "destination_token", "source_depositor", "destination_recipient", "source_signer", "destination_caller", "salt"):
            value = getattr(self, name)
            assert type(value) == bytes and len(value) == 32, f"{name} must be 32 bytes, got {value!r}"

    def as_message(self) -> dict:
        """EIP-712 message part with native Python types."""
        return {
            "version": self.version,
            "sourceDomain": self.source_domain,
            "destinationDomain": self.destination_domain,
            "sourceContract": self.source_contract,
            "destinationContract": self.destination_contract,
            "sourceToken": self.source_token,
            "destinationToken": self.destination_token,
            "sourceDepositor": self.source_depositor,
            "destinationRecipient": self.destination_recipient,
            "sourceSigner": self.source_signer,
            "destinationCaller": self.destination_caller,
            "value": self.value,
            "salt": self.salt,
            "hookData": self.hook_data,
        }

    @staticmethod
    def from_message(data: dict) -> "TransferSpec":
        """Read :py:meth:`as_message` output or its JSON-friendly form."""

        def _bytes(name):
            value = data[name]
            return bytes(HexBytes(value))

        return TransferSpec(
            version=int(data["version"]),
            source_domain=int(data["sourceDomain"]),
            destination_domain=int(data["destinationDomain"]),
            source_contract=_bytes("sourceContract"),
            destination_contract=_bytes("destinationContract"),
            source_token=_bytes("sourceToken"),
            destination_token=_bytes("destinationToken"),
            source_depositor=_bytes("sourceDepositor"),
            destination_recipient=_bytes("destinationRecipient"),
            source_signer=_bytes("sourceSigner"),
            destination_caller=_bytes("destinationCaller"),
            value=int(data["value"]),
            salt=_bytes("salt"),
            hook_data=_bytes("hookData"),
        )


@dataclass(slots=True, frozen=True)
class BurnIntent:
    """Signed authorisation to spend the unified balance."""

    #: Intent is void after this destination block, ``2**256 - 1`` for no expiry
    max_block_height: int

    #: Largest fee we accept, raw USDC
    max_fee: int

    spec: TransferSpec

    def __repr__(self):
        return f"<BurnIntent {format_usdc(self.spec.value)} USDC domain {self.spec.source_domain} -> {self.spec.destination_domain} salt:{self.spec.salt.hex()[0:8]}>"

    @property
    def value(self) -> int:
        return self.spec.value

    @property
    def depositor(self) -> HexAddress:
        return decode_address_bytes32(self.spec.source_depositor)

    @property
    def recipient(self) -> HexAddress:
        return decode_address_bytes32(self.spec.destination_recipient)

    def as_message(self) -> dict:
        """EIP-712 message with native Python types, for signing."""
        return {
            "maxBlockHeight": self.max_block_height,
            "maxFee": self.max_fee,
            "spec": self.spec.as_message(),
        }

    def as_json_friendly_dict(self) -> dict:
        """Gateway API and storage format.

        Integers are decimal strings and bytes are 0x-prefixed hex.
        """
        spec = {}
        for name, value in self.spec.as_message().items():
            if name in _BYTES_FIELDS:
                spec[name] = "0x" + value.hex()
            else:
                spec[name] = str(value)
        return {
            "maxBlockHeight": str(self.max_block_height),
            "maxFee": str(self.max_fee),
            "spec": spec,
        }

    @staticmethod
    def from_dict(data: dict) -> "BurnIntent":
        """Reverse :py:meth:`as_json_friendly_dict`."""
        return BurnIntent(
            max_block_height=int(data["maxBlockHeight"]),
            max_fee=int(data["maxFee"]),
            spec=TransferSpec.from_message(data["spec"]),
        )


def build_typed_data(intent: BurnIntent) -> dict:
    """Full EIP-712 message of a burn intent.

    Can be passed to ``eth_account`` as ``sign_typed_data(full_message=...)``.
    """
    return {
        "types": BURN_INTENT_TYPES,
        "domain": {
            "name": EIP712_DOMAIN_NAME,
            "version": EIP712_DOMAIN_VERSION,
        },
        "primaryType": "BurnIntent",
        "message": intent.as_message(),
    }


class IntentBuilder:
    """Build burn intents between two registered chains."""

    def __init__(self, registry: ChainRegistry, config: GatewayConfig | None = None):
        self.registry = registry
        self.config = config or GatewayConfig()

    def build(
        self,
        source_chain: str,
        destination_chain: str,
        depositor: HexAddress | str,
        recipient: HexAddress | str,
        amount: int,
        max_fee: int | None = None,
        signer: HexAddress | str | None = None,
    ) -> BurnIntent:
        """Create a new burn intent with a fresh random salt.

        :param source_chain:
            Chain whose unified balance share is spent

        :param destination_chain:
            Chain where USDC is minted

        :param depositor:
            Owner of the unified balance

        :param recipient:
            Who receives the minted USDC on the destination chain

        :param amount:
            Raw USDC amount

        :param max_fee:
            Override :py:attr:`GatewayConfig.max_fee`

        :param signer:
            Key that signs the intent, defaults to ``depositor``

        :raise UnknownChain:
            Either chain is not in the registry.

        :raise InvalidAmount:
            Amount is not a positive integer.
        """
        source, destination = self.registry.validate_pair(source_chain, destination_chain)

        if type(amount) != int or amount <= 0:
            raise InvalidAmount(f"Transfer amount must be a positive integer in raw units, got {amount!r}")

        if max_fee is None:
            max_fee = self.config.max_fee

        if max_fee < 0:
            raise InvalidAmount(f"max_fee must not be negative: {max_fee}")

        source.validate_contracts()
        destination.validate_contracts()

        depositor = Web3.to_checksum_address(depositor)
        signer = Web3.to_checksum_address(signer) if signer else depositor

        spec = TransferSpec(
            version=TRANSFER_SPEC_VERSION,
            source_domain=source.domain_id,
            destination_domain=destination.domain_id,
            source_contract=encode_address_bytes32(source.wallet_address),
            destination_contract=encode_address_bytes32(destination.minter_address),
            source_token=encode_address_bytes32(source.token_address),
            destination_token=encode_address_bytes32(destination.token_address),
            source_depositor=encode_address_bytes32(depositor),
            destination_recipient=encode_address_bytes32(recipient),
            source_signer=encode_address_bytes32(signer),
            destination_caller=ZERO_BYTES32,
            value=amount,
            salt=secrets.token_bytes(32),
            hook_data=b"",
        )

        intent = BurnIntent(
            max_block_height=MAX_BLOCK_HEIGHT,
            max_fee=max_fee,
            spec=spec,
        )

        logger.info("Built %s, max fee %s USDC", intent, format_usdc(max_fee))
        return intent
