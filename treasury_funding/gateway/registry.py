"""Chain profiles for Gateway supported networks.

- :py:class:`ChainProfile` is the static per-chain configuration
- :py:class:`ChainRegistry` looks them up by name or Gateway domain id

Gateway uses its own domain numbering, not EVM chain ids.
Two profiles may never share a domain id.

Example:

.. code-block:: python

    registry = create_testnet_registry()
    sepolia = registry.get("sepolia")
    arc = registry.get_by_domain(26)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable

from eth_typing import HexAddress, HexStr
from eth_utils import is_address
from web3 import Web3

from treasury_funding.abi import ZERO_ADDRESS
from treasury_funding.gateway.constants import (
    DEFAULT_SOURCE_CONFIRMATIONS,
    DOMAIN_ARBITRUM,
    DOMAIN_ARC,
    DOMAIN_AVALANCHE,
    DOMAIN_BASE,
    DOMAIN_ETHEREUM,
    DOMAIN_POLYGON,
    GATEWAY_MINTER_ADDRESS,
    GATEWAY_WALLET_ADDRESS,
    USDC_DECIMALS,
)
from treasury_funding.gateway.errors import ConfigurationError, DuplicateDomain, MissingContractAddress, UnknownChain

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChainProfile:
    """Static network profile for one Gateway supported chain."""

    #: Short name used as the registry key, e.g. ``sepolia``
    name: str

    #: Human readable name, e.g. ``Ethereum Sepolia``
    display_name: str

    #: EVM chain id
    chain_id: int

    #: Gateway domain id
    domain_id: int

    #: USDC address on this chain
    token_address: HexAddress

    #: GatewayWallet address, where deposits go
    wallet_address: HexAddress

    #: GatewayMinter address, where attestations are redeemed
    minter_address: HexAddress

    #: JSON-RPC endpoints, the first one is used
    rpc_urls: tuple[str, ...]

    #: How many blocks a deposit must be buried under before it counts as final
    required_confirmations: int

    #: Block explorer base URL
    explorer_url: str

    #: Does this chain accept deposits into the unified balance
    is_source: bool = True

    #: Token decimals
    token_decimals: int = USDC_DECIMALS

    #: Where to get testnet tokens
    faucet_url: str | None = None

    def __post_init__(self):
        assert self.name == self.name.lower(), f"Chain name must be lowercase: {self.name}"
        assert self.required_confirmations >= 0, f"Bad confirmation count for {self.name}: {self.required_confirmations}"
        assert type(self.rpc_urls) == tuple, f"rpc_urls must be a tuple, got {type(self.rpc_urls)}"

    def __repr__(self):
        return f"<ChainProfile {self.name} domain:{self.domain_id} chain:{self.chain_id}>"

    @property
    def rpc_url(self) -> str:
        """Primary JSON-RPC URL."""
        assert self.rpc_urls, f"No RPC configured for {self.name}"
        return self.rpc_urls[0]

    def get_tx_link(self, tx_hash: str) -> str:
        """Block explorer link for a transaction."""
        if not tx_hash.startswith("0x"):
            tx_hash = f"0x{tx_hash}"
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"

    def get_address_link(self, address: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/address/{address}"

    def validate_contracts(self):
        """Fail fast if any contract address needed for a transfer is missing.

        :raise MissingContractAddress:
            If token, wallet or minter address is unset, malformed or zero.
        """
        for label, address in (
            ("token", self.token_address),
            ("GatewayWallet", self.wallet_address),
            ("GatewayMinter", self.minter_address),
        ):
            if not address or not is_address(address) or address.lower() == ZERO_ADDRESS:
                raise MissingContractAddress(f"{self.display_name}: {label} address not configured")


@dataclass(slots=True)
class ChainRegistry:
    """Lookup table of chain profiles.

    Construction fails with :py:class:`DuplicateDomain` if two profiles share
    a domain id, and with :py:class:`~treasury_funding.gateway.errors.ConfigurationError`
    if two profiles share a name.
    """

    profiles: dict[str, ChainProfile] = field(default_factory=dict)

    def __post_init__(self):
        self._validate()

    def __len__(self):
        return len(self.profiles)

    def __iter__(self):
        return iter(self.profiles.values())

    def __contains__(self, name: str) -> bool:
        return name.lower() in self.profiles

    @classmethod
    def from_profiles(cls, profiles: Iterable[ChainProfile]) -> "ChainRegistry":
        mapped = {}
        for profile in profiles:
            if profile.name in mapped:
                raise ConfigurationError(f"Chain {profile.name} listed twice")
            mapped[profile.name] = profile
        return cls(mapped)

    def _validate(self):
        seen: dict[int, str] = {}
        for name, profile in self.profiles.items():
            assert name == profile.name, f"Registry key {name} does not match profile {profile.name}"
            if profile.domain_id in seen:
                raise DuplicateDomain(f"Domain {profile.domain_id} used by both {seen[profile.domain_id]} and {profile.name}")
            seen[profile.domain_id] = profile.name

    def get(self, name: str) -> ChainProfile:
        """Get a chain profile by its short name.

        :raise UnknownChain:
            If the chain is not configured.
        """
        profile = self.profiles.get(name.lower())
        if profile is None:
            raise UnknownChain(f"Unknown chain: {name}. Supported chains: {', '.join(self.profiles.keys())}")
        return profile

    def get_by_domain(self, domain_id: int) -> ChainProfile:
        """Get a chain profile by its Gateway domain id.

        :raise UnknownChain:
            If no profile uses this domain.
        """
        for profile in self.profiles.values():
            if profile.domain_id == domain_id:
                return profile
        raise UnknownChain(f"Unknown Gateway domain: {domain_id}")

    def get_source_chains(self) -> list[ChainProfile]:
        """Chains that accept deposits into the unified balance."""
        return [p for p in self.profiles.values() if p.is_source]

    def validate_pair(self, source: str, destination: str) -> tuple[ChainProfile, ChainProfile]:
        """Check a source and destination chain combination.

        :return:
            Tuple (source profile, destination profile)

        :raise UnknownChain:
            If either chain is missing.
        """
        source_profile = self.get(source)
        destination_profile = self.get(destination)
        if source_profile.domain_id == destination_profile.domain_id:
            raise ConfigurationError(f"Source and destination chains must be different, got {source} twice")
        return source_profile, destination_profile


def _read_rpc_urls(name: str, default: str) -> tuple[str, ...]:
    """``JSON_RPC_SEPOLIA`` style override, space separated."""
    value = os.environ.get(f"JSON_RPC_{name.upper()}")
    if value:
        return tuple(value.split())
    return (default,)


def _read_confirmations(name: str, default: int) -> int:
    value = os.environ.get(f"GATEWAY_CONFIRMATIONS_{name.upper()}")
    if value:
        return int(value)
    return default


def _testnet_profile(
    name: str,
    display_name: str,
    chain_id: int,
    domain_id: int,
    token_address: str,
    rpc_url: str,
    explorer_url: str,
    confirmations: int = DEFAULT_SOURCE_CONFIRMATIONS,
    is_source: bool = True,
    faucet_url: str | None = "https://faucet.circle.com",
) -> ChainProfile:
    return ChainProfile(
        name=name,
        display_name=display_name,
        chain_id=chain_id,
        domain_id=domain_id,
        token_address=HexAddress(HexStr(Web3.to_checksum_address(token_address))),
        wallet_address=GATEWAY_WALLET_ADDRESS,
        minter_address=GATEWAY_MINTER_ADDRESS,
        rpc_urls=_read_rpc_urls(name, rpc_url),
        required_confirmations=_read_confirmations(name, confirmations),
        explorer_url=explorer_url,
        is_source=is_source,
        faucet_url=faucet_url,
    )


def create_testnet_registry() -> ChainRegistry:
    """Gateway testnet chains.

    - RPC endpoints can be overridden with ``JSON_RPC_<NAME>`` environment variables
    - Confirmation counts can be overridden with ``GATEWAY_CONFIRMATIONS_<NAME>``

    Arc testnet is the treasury destination and does not take deposits here.
    Arc has instant finality, so one confirmation is enough.
    """
    return ChainRegistry.from_profiles(
        [
            _testnet_profile(
                "sepolia",
                "Ethereum Sepolia",
                11155111,
                DOMAIN_ETHEREUM,
                "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
                "https://ethereum-sepolia-rpc.publicnode.com",
                "https://sepolia.etherscan.io",
            ),
            _testnet_profile(
                "avalanche",
                "Avalanche Fuji",
                43113,
                DOMAIN_AVALANCHE,
                "0x5425890298aed601595a70ab815c96711a31bc65",
                "https://api.avax-test.network/ext/bc/C/rpc",
                "https://testnet.snowtrace.io",
            ),
            _testnet_profile(
                "arbitrum",
                "Arbitrum Sepolia",
                421614,
                DOMAIN_ARBITRUM,
                "0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
                "https://sepolia-rollup.arbitrum.io/rpc",
                "https://sepolia.arbiscan.io",
            ),
            _testnet_profile(
                "base",
                "Base Sepolia",
                84532,
                DOMAIN_BASE,
                "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
                "https://sepolia-preconf.base.org",
                "https://sepolia.basescan.org",
            ),
            _testnet_profile(
                "polygon",
                "Polygon Amoy",
                80002,
                DOMAIN_POLYGON,
                "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582",
                "https://rpc-amoy.polygon.technology",
                "https://amoy.polygonscan.com",
                faucet_url="https://faucet.polygon.technology",
            ),
            _testnet_profile(
                "arc",
                "Arc Testnet",
                5042002,
                DOMAIN_ARC,
                "0x3600000000000000000000000000000000000000",
                "https://rpc.testnet.arc.network",
                "https://testnet.arcscan.app",
                confirmations=1,
                is_source=False,
            ),
        ]
    )
